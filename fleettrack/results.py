"""
Per-trip results and their batch fold.

Every scan processes trips independently. Each trip produces a
``TripResult`` (success with a value, or failure with the captured
error) and the scan folds them into a ``BatchResult``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from .models import utcnow


T = TypeVar("T")


@dataclass
class TripResult(Generic[T]):
    """Outcome of processing one trip within a scan."""
    trip_id: str
    trip_code: str
    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def ok(cls, trip_id: str, trip_code: str, value: Optional[T] = None) -> "TripResult[T]":
        return cls(trip_id=trip_id, trip_code=trip_code, success=True, value=value)

    @classmethod
    def failed(cls, trip_id: str, trip_code: str, error: BaseException) -> "TripResult[T]":
        return cls(
            trip_id=trip_id,
            trip_code=trip_code,
            success=False,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
        )

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        return {
            "trip_id": self.trip_id,
            "trip_code": self.trip_code,
            "success": self.success,
            "value": value,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class BatchResult(Generic[T]):
    """Fold of per-trip results for one scan."""
    scan: str
    results: List[TripResult[T]] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    # Set when the whole scan was skipped (e.g. disabled by settings)
    skipped_reason: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def failures(self) -> List[TripResult[T]]:
        return [r for r in self.results if not r.success]

    def add(self, result: TripResult[T]) -> None:
        self.results.append(result)

    def finish(self) -> "BatchResult[T]":
        self.finished_at = utcnow()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "scan": self.scan,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_reason": self.skipped_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "results": [r.to_dict() for r in self.results],
        }
