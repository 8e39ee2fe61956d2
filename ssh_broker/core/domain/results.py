"""
Uniform result envelope returned by every public manager operation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Current time as an ISO-8601 string."""
    return utc_now().isoformat()


@dataclass
class OperationResult:
    """
    Result of a manager operation.

    ``data`` is present on success, ``error`` on failure; ``warnings``
    collects non-fatal problems such as resources that could not be
    recovered.
    """

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=iso_now)

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None,
           warnings: Optional[List[str]] = None) -> 'OperationResult':
        return cls(success=True, data=data or {}, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: str, data: Optional[Dict[str, Any]] = None) -> 'OperationResult':
        return cls(success=False, error=error, data=data)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'success': self.success,
            'timestamp': self.timestamp,
        }
        if self.data is not None:
            result['data'] = self.data
        if self.error is not None:
            result['error'] = self.error
        if self.warnings:
            result['warnings'] = list(self.warnings)
        return result
