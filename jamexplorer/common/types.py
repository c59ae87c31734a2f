"""
Core data types: block records, reports and gap markers.

Block payloads are opaque JSON documents carried through unchanged. The only
structure interpreted here is the header hash key, the overview timestamp
used for ordering, and the location of work reports inside an extrinsic.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from eth_utils import encode_hex, is_hex, remove_0x_prefix

from jamexplorer.common.errors import InvalidRecordError


HASH_SIZE = 32
CREATED_AT = "createdAt"

# Keys under which a notification may carry the header hash
_HASH_KEYS = ("headerHash", "header_hash", "hash")
_RECORD_KEYS = {"headerHash", "block", "state", "overview"}


def now_ms() -> int:
    """Wall clock in milliseconds."""
    return int(time.time() * 1000)


def normalize_header_hash(value: Any) -> str:
    """Return a header hash as lowercase 0x-prefixed hex, or raise."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != HASH_SIZE:
            raise InvalidRecordError(f"Header hash must be {HASH_SIZE} bytes, got {len(value)}")
        return encode_hex(bytes(value))
    if not isinstance(value, str):
        raise InvalidRecordError(f"Header hash must be a hex string, got {type(value).__name__}")
    value = value.strip()
    if not value or not is_hex(value):
        raise InvalidRecordError(f"Header hash is not hex: {value!r}")
    body = remove_0x_prefix(value).lower()
    if not body or len(body) % 2:
        raise InvalidRecordError(f"Header hash must be whole bytes of hex: {value!r}")
    return "0x" + body


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _merge_fields(old: dict, new: dict) -> dict:
    """Key-wise merge: present keys win, None never clears."""
    merged = dict(old)
    for key, value in new.items():
        if value is not None:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Block record
# ---------------------------------------------------------------------------

@dataclass
class BlockRecord:
    """A block as persisted in the chain record store.

    Merge rule (see `merged`): `block` and `state` are replaced wholesale by
    a later non-None value and never cleared by None; `overview` and `extra`
    merge key by key under the same rule. The header hash is the immutable key.
    """
    header_hash: str
    block: Optional[dict] = None
    state: Any = None
    overview: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.header_hash = normalize_header_hash(self.header_hash)

    @property
    def created_at(self) -> Optional[float]:
        value = self.overview.get(CREATED_AT)
        return value if _is_timestamp(value) else None

    @property
    def has_state(self) -> bool:
        return self.state is not None

    def merged(self, update: BlockRecord) -> BlockRecord:
        """Return this record with `update` applied on top of it."""
        if update.header_hash != self.header_hash:
            raise ValueError(
                f"Cannot merge {update.header_hash} into {self.header_hash}"
            )
        return BlockRecord(
            header_hash=self.header_hash,
            block=update.block if update.block is not None else self.block,
            state=update.state if update.state is not None else self.state,
            overview=_merge_fields(self.overview, update.overview),
            extra=_merge_fields(self.extra, update.extra),
        )

    def reports(self) -> list[Report]:
        return extract_reports(self.block)

    def extrinsics(self) -> list[Extrinsic]:
        return extract_extrinsics(self.block)

    # -- constructors ------------------------------------------------------

    @classmethod
    def draft(cls, header_hash: Any, block: Optional[dict], created_at: Optional[float]) -> BlockRecord:
        """Record built from a new-block notification, before state is known."""
        overview = {CREATED_AT: created_at} if created_at is not None else {}
        return cls(header_hash=header_hash, block=block, overview=overview)

    @classmethod
    def with_state(cls, header_hash: Any, state: Any) -> BlockRecord:
        """Partial record carrying only fetched state."""
        return cls(header_hash=header_hash, state=state)

    @classmethod
    def from_notification(cls, payload: Any, created_at: Optional[float]) -> BlockRecord:
        """Build a draft record from a new-block notification payload.

        Accepts `{"headerHash": ..., "block": {...}}` or a bare block document
        that carries its own hash under one of the known hash keys.
        """
        if not isinstance(payload, dict):
            raise InvalidRecordError(f"Block notification must be an object, got {type(payload).__name__}")

        header_hash = None
        for key in _HASH_KEYS:
            if payload.get(key) is not None:
                header_hash = payload[key]
                break
        if header_hash is None:
            raise InvalidRecordError("Block notification carries no header hash")

        if "block" in payload:
            # An explicit null block carries no block update
            block = payload["block"]
        else:
            rest = {
                k: v for k, v in payload.items()
                if k not in _HASH_KEYS and k not in _RECORD_KEYS
            }
            block = rest or None
        if block is not None and not isinstance(block, dict):
            raise InvalidRecordError("Block payload must be an object")

        return cls.draft(header_hash, block, created_at)

    # -- JSON --------------------------------------------------------------

    def to_json(self) -> dict:
        data = dict(self.extra)
        data["headerHash"] = self.header_hash
        data["block"] = self.block
        if self.state is not None:
            data["state"] = self.state
        if self.overview:
            data["overview"] = dict(self.overview)
        return data

    @classmethod
    def from_json(cls, data: dict) -> BlockRecord:
        if not isinstance(data, dict) or "headerHash" not in data:
            raise InvalidRecordError("Stored record has no headerHash")
        overview = data.get("overview") or {}
        if not isinstance(overview, dict):
            raise InvalidRecordError("Record overview must be an object")
        return cls(
            header_hash=data["headerHash"],
            block=data.get("block"),
            state=data.get("state"),
            overview=dict(overview),
            extra={k: v for k, v in data.items() if k not in _RECORD_KEYS},
        )


def sort_records(records: Iterable[BlockRecord]) -> list[BlockRecord]:
    """Newest first by overview.createdAt; untimestamped records last.

    Ties (and the untimestamped tail) are ordered by header hash so the
    result is deterministic.
    """
    def key(record: BlockRecord) -> tuple:
        ts = record.created_at
        if ts is None:
            return (1, 0.0, record.header_hash)
        return (0, -ts, record.header_hash)

    return sorted(records, key=key)


# ---------------------------------------------------------------------------
# Work reports
# ---------------------------------------------------------------------------

@dataclass
class Report:
    """Read-only view of a work report inside a block's extrinsic."""
    core_index: Optional[int] = None
    authorizer_hash: Optional[str] = None
    auth_output: Optional[str] = None
    context: dict = field(default_factory=dict)
    package_spec: dict = field(default_factory=dict)
    results: list = field(default_factory=list)
    segment_root_lookup: list = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def work_package_hash(self) -> Optional[str]:
        return self.package_spec.get("hash")

    @classmethod
    def from_json(cls, data: dict) -> Report:
        return cls(
            core_index=data.get("core_index"),
            authorizer_hash=data.get("authorizer_hash"),
            auth_output=data.get("auth_output"),
            context=data.get("context") or {},
            package_spec=data.get("package_spec") or {},
            results=list(data.get("results") or []),
            segment_root_lookup=list(data.get("segment_root_lookup") or []),
            raw=data,
        )


def extract_reports(block: Optional[dict]) -> list[Report]:
    """Work reports of a block, from guarantees or a plain reports list."""
    if not isinstance(block, dict):
        return []
    extrinsic = block.get("extrinsic")
    if not isinstance(extrinsic, dict):
        return []

    reports = []
    for guarantee in extrinsic.get("guarantees") or []:
        if isinstance(guarantee, dict) and isinstance(guarantee.get("report"), dict):
            reports.append(Report.from_json(guarantee["report"]))
    for report in extrinsic.get("reports") or []:
        if isinstance(report, dict):
            reports.append(Report.from_json(report))
    return reports


# ---------------------------------------------------------------------------
# Extrinsics
# ---------------------------------------------------------------------------

EXTRINSIC_KINDS = ("tickets", "preimages", "guarantees", "assurances", "disputes")
DISPUTE_KINDS = ("verdicts", "culprits", "faults")


@dataclass
class Extrinsic:
    """One item of a block's extrinsic, tagged with its kind and position."""
    kind: str
    index: int
    raw: Any = None


def extract_extrinsics(block: Optional[dict]) -> list[Extrinsic]:
    """Flatten a block's extrinsic into items, in EXTRINSIC_KINDS order.

    Disputes are split into verdicts, culprits and faults, each reported
    under its own kind.
    """
    if not isinstance(block, dict):
        return []
    extrinsic = block.get("extrinsic")
    if not isinstance(extrinsic, dict):
        return []

    items = []
    for kind in EXTRINSIC_KINDS:
        value = extrinsic.get(kind)
        if kind == "disputes":
            if isinstance(value, dict):
                for sub in DISPUTE_KINDS:
                    entries = value.get(sub)
                    if isinstance(entries, list):
                        items.extend(Extrinsic(sub, i, item) for i, item in enumerate(entries))
            continue
        if isinstance(value, list):
            for i, item in enumerate(value):
                items.append(Extrinsic(kind, i, item))
    return items


# ---------------------------------------------------------------------------
# Gap markers
# ---------------------------------------------------------------------------

@dataclass
class GapMarker:
    """A resync after an unexpected disconnect; blocks in between may be missing."""
    endpoint: str
    disconnected_at: Optional[int]
    resynced_at: int

    def to_json(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "disconnectedAt": self.disconnected_at,
            "resyncedAt": self.resynced_at,
        }
