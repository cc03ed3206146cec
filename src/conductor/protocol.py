"""Structured results returned by author and reviewer agents.

Raw agent payloads are validated here, once, into closed types. Anything that
does not validate raises ``ProtocolError`` and is treated by the loops as an
agent failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

AuthorResult = Literal["complete", "needs_human", "failed"]
Readiness = Literal["ready", "ready_with_corrections", "not_ready"]
ItemAction = Literal["auto_fix", "human_required"]
Priority = Literal["P0", "P1", "P2"]
VerdictKind = Literal["approved", "changes_requested", "error"]

AUTHOR_RESULTS: tuple[str, ...] = ("complete", "needs_human", "failed")
READINESS_VALUES: tuple[str, ...] = ("ready", "ready_with_corrections", "not_ready")
ITEM_ACTIONS: tuple[str, ...] = ("auto_fix", "human_required")
PRIORITIES: tuple[str, ...] = ("P0", "P1", "P2")

AUTHOR_STATUS_INSTRUCTIONS = (
    "When you finish, print a single line of JSON as your final output: "
    '{"result": "complete" | "needs_human" | "failed", "commit": "<hash>", '
    '"reason": "<required unless complete>", "notes": "<optional>"}'
)
REVIEWER_VERDICT_INSTRUCTIONS = (
    "When you finish, print a single line of JSON as your final output: "
    '{"readiness": "ready" | "ready_with_corrections" | "not_ready", '
    '"items": [{"id": "P0.1", "title": "...", "action": "auto_fix" | "human_required", '
    '"reason": "...", "priority": "P0" | "P1" | "P2"}], "summary": "<optional>"}'
)


class ProtocolError(ValueError):
    """Raised when an agent payload violates the structured output contract."""


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"'{key}' must be a string.")
    return value.strip() or None


def _required_str(payload: dict[str, Any], key: str, context: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"{context}: '{key}' is required.")
    return value.strip()


@dataclass(frozen=True, slots=True)
class AuthorStatus:
    result: AuthorResult
    commit: str | None = None
    reason: str | None = None
    notes: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.result == "complete"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"result": self.result}
        for key in ("commit", "reason", "notes"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class VerdictItem:
    id: str
    title: str
    action: ItemAction
    reason: str
    priority: Priority | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "action": self.action,
            "reason": self.reason,
        }
        if self.priority is not None:
            payload["priority"] = self.priority
        return payload


@dataclass(frozen=True, slots=True)
class ReviewerVerdict:
    readiness: Readiness
    items: tuple[VerdictItem, ...] = field(default_factory=tuple)
    summary: str | None = None

    @property
    def kind(self) -> VerdictKind:
        return "approved" if self.readiness == "ready" else "changes_requested"

    @property
    def human_required_items(self) -> list[VerdictItem]:
        return [item for item in self.items if item.action == "human_required"]

    @property
    def auto_fix_items(self) -> list[VerdictItem]:
        return [item for item in self.items if item.action == "auto_fix"]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "readiness": self.readiness,
            "items": [item.to_dict() for item in self.items],
        }
        if self.summary is not None:
            payload["summary"] = self.summary
        return payload


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    """Closed result of one reviewer invocation."""

    kind: VerdictKind
    verdict: ReviewerVerdict | None = None
    error: str | None = None

    @classmethod
    def from_verdict(cls, verdict: ReviewerVerdict) -> ReviewOutcome:
        return cls(kind=verdict.kind, verdict=verdict)

    @classmethod
    def failure(cls, error: str) -> ReviewOutcome:
        return cls(kind="error", error=error)


def parse_author_status(
    payload: Any,
    *,
    context: str = "author",
    require_commit: bool = False,
) -> AuthorStatus:
    if not isinstance(payload, dict):
        raise ProtocolError(f"{context}: structured status is missing.")
    result = payload.get("result")
    if result not in AUTHOR_RESULTS:
        raise ProtocolError(f"{context}: 'result' must be one of {', '.join(AUTHOR_RESULTS)}.")
    status = AuthorStatus(
        result=result,
        commit=_optional_str(payload, "commit"),
        reason=_optional_str(payload, "reason"),
        notes=_optional_str(payload, "notes"),
    )
    if status.result == "complete" and require_commit and not status.commit:
        raise ProtocolError(f"{context}: result is 'complete' but 'commit' is missing.")
    if status.result != "complete" and not status.reason:
        raise ProtocolError(f"{context}: result is '{status.result}' but 'reason' is missing.")
    return status


def _parse_item(raw: Any, context: str) -> VerdictItem:
    if not isinstance(raw, dict):
        raise ProtocolError(f"{context}: review items must be objects.")
    action = raw.get("action")
    item_id = _required_str(raw, "id", context)
    if action not in ITEM_ACTIONS:
        raise ProtocolError(f"{context}: item '{item_id}' has invalid 'action'.")
    priority = raw.get("priority")
    if priority is not None and priority not in PRIORITIES:
        raise ProtocolError(f"{context}: item '{item_id}' has invalid 'priority'.")
    return VerdictItem(
        id=item_id,
        title=_required_str(raw, "title", context),
        action=action,
        reason=_required_str(raw, "reason", context),
        priority=priority,
    )


def parse_reviewer_verdict(payload: Any, *, context: str = "reviewer") -> ReviewerVerdict:
    if not isinstance(payload, dict):
        raise ProtocolError(f"{context}: structured verdict is missing.")
    readiness = payload.get("readiness")
    if readiness not in READINESS_VALUES:
        raise ProtocolError(
            f"{context}: 'readiness' must be one of {', '.join(READINESS_VALUES)}."
        )
    raw_items = payload.get("items", [])
    if not isinstance(raw_items, list):
        raise ProtocolError(f"{context}: 'items' must be a list.")
    items = tuple(_parse_item(raw, context) for raw in raw_items)
    if readiness != "ready" and not items:
        raise ProtocolError(f"{context}: readiness is '{readiness}' but 'items' is empty.")
    return ReviewerVerdict(
        readiness=readiness,
        items=items,
        summary=_optional_str(payload, "summary"),
    )


def format_review_items(items: list[VerdictItem] | tuple[VerdictItem, ...]) -> str:
    lines: list[str] = []
    for item in items:
        priority = f"[{item.priority}] " if item.priority else ""
        lines.append(f"- {priority}{item.id} {item.title} ({item.action}): {item.reason}")
    return "\n".join(lines)
