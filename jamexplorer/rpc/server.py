from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from jamexplorer.common.errors import (
    InvalidEndpointError,
    InvalidRecordError,
    RPCError,
    SyncError,
)

logger = logging.getLogger(__name__)


PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
NOT_FOUND = -32001
SYNC_ERROR = -32002


def _success_response(id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": id, "result": result}


def _error_response(id: Any, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": id, "error": error}


def _sync_error_code(exc: SyncError) -> int:
    """JSON-RPC error code for a sync-layer failure raised by a handler."""
    if isinstance(exc, (InvalidEndpointError, InvalidRecordError)):
        return INVALID_PARAMS
    return SYNC_ERROR


class RPCServer:
    """JSON-RPC 2.0 server serving the explorer's read-only view."""

    def __init__(self) -> None:
        self.app = FastAPI(title="jam-explorer JSON-RPC", docs_url=None, redoc_url=None)
        self._methods: dict[str, Callable] = {}
        self._metrics_provider: Optional[Callable[[], dict[str, float | int]]] = None
        self._setup_routes()

    def set_metrics_provider(self, provider: Callable[[], dict[str, float | int]]) -> None:
        """Set metrics provider for Prometheus text exposition."""
        self._metrics_provider = provider

    def _setup_routes(self) -> None:
        @self.app.get("/metrics")
        async def handle_metrics() -> PlainTextResponse:
            lines: list[str] = []
            if self._metrics_provider is not None:
                try:
                    metrics = self._metrics_provider()
                    for key, value in metrics.items():
                        lines.append(f"{key} {value}")
                except Exception as exc:
                    logger.debug("metrics provider error: %s", exc)
            return PlainTextResponse("\n".join(lines) + ("\n" if lines else ""))

        @self.app.post("/")
        async def handle_rpc(request: Request) -> JSONResponse:
            try:
                body = await request.json()
            except Exception:
                return JSONResponse(_error_response(None, PARSE_ERROR, "Parse error"))

            if isinstance(body, list):
                if not body:
                    return JSONResponse(_error_response(None, INVALID_REQUEST, "Empty batch"))
                results = []
                for item in body:
                    result = await self._handle_single(item)
                    if result is not None:
                        results.append(result)
                return JSONResponse(results if results else None)

            result = await self._handle_single(body)
            if result is None:
                return JSONResponse(content=None, status_code=204)
            return JSONResponse(result)

    async def _handle_single(self, request: Any) -> Optional[dict]:
        if not isinstance(request, dict):
            return _error_response(None, INVALID_REQUEST, "Invalid request")

        jsonrpc = request.get("jsonrpc")
        method = request.get("method")
        params = request.get("params", [])
        req_id = request.get("id")

        if jsonrpc != "2.0":
            return _error_response(req_id, INVALID_REQUEST, "Invalid JSON-RPC version")

        if not isinstance(method, str):
            return _error_response(req_id, INVALID_REQUEST, "Invalid method")

        is_notification = "id" not in request

        handler = self._methods.get(method)
        if handler is None:
            if is_notification:
                return None
            return _error_response(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            if isinstance(params, list):
                result = await handler(*params) if _is_async(handler) else handler(*params)
            elif isinstance(params, dict):
                result = await handler(**params) if _is_async(handler) else handler(**params)
            else:
                return _error_response(req_id, INVALID_PARAMS, "Invalid params")
        except TypeError as e:
            logger.warning("RPC TypeError in %s: %s", method, e)
            return _error_response(req_id, INVALID_PARAMS, str(e))
        except RPCError as e:
            return _error_response(req_id, e.code, e.message, e.data)
        except SyncError as e:
            logger.debug("RPC %s failed: %s", method, e)
            return _error_response(req_id, _sync_error_code(e), str(e))
        except Exception as e:
            logger.exception("RPC internal error in %s", method)
            return _error_response(req_id, INTERNAL_ERROR, str(e))

        if is_notification:
            return None
        return _success_response(req_id, result)

    def register(self, name: str, handler: Callable) -> None:
        self._methods[name] = handler

    def method(self, name: str) -> Callable:
        def decorator(func: Callable) -> Callable:
            self._methods[name] = func
            return func

        return decorator


def _is_async(func: Callable) -> bool:
    return inspect.iscoroutinefunction(func)
