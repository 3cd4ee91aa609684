"""
Value objects passed between the engine and its callers.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relayconf.utils.validation import FieldError


@dataclass(frozen=True)
class Editor:
    """The authenticated user performing an operation."""
    id: Optional[int]
    username: str


SYSTEM_EDITOR = Editor(id=None, username="system")


@dataclass(frozen=True)
class DiffEntry:
    key: str
    category: str
    old_value: Optional[str]
    new_value: Optional[str]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "key": self.key,
            "category": self.category,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }


@dataclass
class ValidationReport:
    ok: bool
    errors: List[FieldError] = field(default_factory=list)
    warnings: List[FieldError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class ApplyResult:
    success: bool
    message: str
    applied_count: int = 0
    version_number: Optional[int] = None


@dataclass
class RollbackResult:
    success: bool
    message: str
    version_number: Optional[int] = None


@dataclass
class VersionSummary:
    version_number: int
    status: str
    created_at: Any
    created_by: str
    applied_at: Any
    applied_by: Optional[str]
    notes: Optional[str]
