"""Pydantic models for entities, resolved records and dispatch outcomes."""

from enum import Enum
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field


class Entity(BaseModel):
    """One CSV row to be created or updated in the remote catalog."""

    entity_type: str
    ref_id: str
    row_number: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    references: Dict[str, str] = Field(default_factory=dict)

    def reference(self, column: str) -> Optional[str]:
        """Get an unresolved foreign-key value, or None when blank."""
        value = self.references.get(column)
        if value is None:
            return None
        value = value.strip()
        return value or None


class ResolvedRecord(BaseModel):
    """An entity whose foreign keys are resolved and is ready to submit."""

    entity: Entity
    method: str
    path: str
    body: Dict[str, Any] = Field(default_factory=dict)
    resolved: Dict[str, int] = Field(default_factory=dict)

    @property
    def ref_id(self) -> str:
        return self.entity.ref_id


class SkipKind(str, Enum):
    LOOKUP_MISS = "lookup_miss"
    REMOTE_LOOKUP = "remote_lookup"
    INVALID = "invalid"


class SkippedRecord(BaseModel):
    """An entity that will not be submitted, with the reason why."""

    entity: Entity
    reason: str
    kind: SkipKind = SkipKind.LOOKUP_MISS

    @property
    def ref_id(self) -> str:
        return self.entity.ref_id


Resolution = Union[ResolvedRecord, SkippedRecord]


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    REMOTE_ERROR = "remote_error"
    TRANSPORT_ERROR = "transport_error"


class DispatchOutcome(BaseModel):
    """Result of submitting one resolved record."""

    ref_id: str
    kind: OutcomeKind
    row_number: Optional[int] = None
    status: Optional[int] = None
    body: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)
    message: Optional[str] = None
    attempts: int = 1

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def created_id(self) -> Optional[int]:
        """Id assigned by the remote API, when the response body carries one."""
        if not self.is_success or not isinstance(self.body, dict):
            return None
        for key in ("Id", "id"):
            value = self.body.get(key)
            if value is None:
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
        return None

    @property
    def detail(self) -> str:
        """Short human-readable description for failure reports."""
        if self.kind == OutcomeKind.TRANSPORT_ERROR:
            return self.message or "transport error"
        body = self.body if isinstance(self.body, str) else str(self.body)
        return f"HTTP {self.status}: {body}"


class Summary(BaseModel):
    """Counts for one load run."""

    total_rows: int = 0
    parse_errors: int = 0
    submitted: int = 0
    succeeded: int = 0
    skipped: int = 0
    remote_errors: int = 0
    transport_errors: int = 0
    not_attempted: int = 0

    @property
    def failed(self) -> int:
        return self.remote_errors + self.transport_errors
