"""Append-only audit trail embedded in review documents.

Each record is compact JSON, URL-safe base64 encoded and wrapped in an HTML
comment, so the record survives any characters its fields contain (including
``-->``) and stays invisible when the markdown is rendered::

    <!-- conductor:audit:v1 eyJzY2hlbWEiOjEsInR5cGUiOiJ2ZXJkaWN0In0 -->
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

AUDIT_SCHEMA_VERSION = 1
AUDIT_MARKER = "conductor:audit:v1"
AUDIT_LINE_PATTERN = re.compile(rf"<!-- {re.escape(AUDIT_MARKER)} (\S*) -->")
_PAYLOAD_ALPHABET = re.compile(r"[A-Za-z0-9_-]*")


class AuditDecodeError(ValueError):
    """Raised when an embedded audit payload cannot be decoded."""


def _encode_payload(record: dict[str, Any]) -> str:
    serialized = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    return base64.urlsafe_b64encode(serialized.encode("utf-8")).decode("ascii").rstrip("=")


def _decode_payload(payload: str) -> dict[str, Any]:
    if _PAYLOAD_ALPHABET.fullmatch(payload) is None or len(payload) % 4 == 1:
        raise AuditDecodeError(f"Malformed audit payload: {payload[:40]}")
    padded = payload + "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        record = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise AuditDecodeError(f"Malformed audit payload: {payload[:40]}") from exc
    if not isinstance(record, dict):
        raise AuditDecodeError("Audit payload is not a JSON object.")
    return record


def build_audit_record(record_type: str, **fields: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "schema": AUDIT_SCHEMA_VERSION,
        "type": record_type,
        "at": datetime.now(UTC).replace(microsecond=0).isoformat(),
    }
    record.update({key: value for key, value in fields.items() if value is not None})
    return record


def format_audit_line(record: dict[str, Any]) -> str:
    return f"\n<!-- {AUDIT_MARKER} {_encode_payload(record)} -->\n"


def append_audit_record(file_path: Path, record: dict[str, Any]) -> None:
    """Append one record; earlier bytes of the file are never rewritten."""
    file_path.parent.mkdir(parents=True, exist_ok=True)
    line = format_audit_line(record)
    with file_path.open("a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()
        os.fsync(handle.fileno())


def decode_audit_records(text: str) -> list[dict[str, Any]]:
    return [_decode_payload(match.group(1)) for match in AUDIT_LINE_PATTERN.finditer(text)]


def read_audit_records(file_path: Path) -> list[dict[str, Any]]:
    if not file_path.exists():
        return []
    return decode_audit_records(file_path.read_text(encoding="utf-8"))
