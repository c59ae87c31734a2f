"""WebSocket transport and JSON-RPC subscription protocol."""
