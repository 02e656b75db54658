"""
Data types shared by the verification engine, the report and the job table.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Result(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# Classified failure reasons, as written to the report's error column
REASON_NOT_FOUND = "not found"
REASON_MULTIPLE_ACCOUNTS = "multiple accounts unresolved"
REASON_UPDATE_REQUIRED = "requires manual update"
REASON_QUOTA_EXCEEDED = "exceeds reasonable limit"
REASON_STOCK_EXHAUSTED = "stock exhausted"
REASON_SUBMIT_MISSING = "submit control missing"
REASON_CUSTOMER_INFO_MISSING = "customer info unavailable"


@dataclass
class OutcomeRecord:
    """Terminal outcome of one verification transaction."""

    identifier: str
    result: Result
    customer_name: str | None = None
    customer_category: str | None = None
    failure_reason: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if self.result is Result.SUCCESS and self.failure_reason:
            raise ValueError("A successful outcome cannot carry a failure reason")

    @property
    def is_success(self) -> bool:
        return self.result is Result.SUCCESS

    @classmethod
    def success(cls, identifier: str, name: str | None = None, category: str | None = None) -> "OutcomeRecord":
        return cls(identifier, Result.SUCCESS, customer_name=name, customer_category=category)

    @classmethod
    def failure(
        cls,
        identifier: str,
        reason: str,
        name: str | None = None,
        category: str | None = None,
    ) -> "OutcomeRecord":
        return cls(
            identifier,
            Result.FAILURE,
            customer_name=name,
            customer_category=category,
            failure_reason=reason,
        )


class EventKind(Enum):
    DISPATCH = "dispatch"
    OUTCOME = "outcome"


@dataclass(frozen=True)
class ProgressEvent:
    """
    Progress message from the engine to whoever owns the job state.

    DISPATCH: about to submit `current`; `processed` identifiers are resolved.
    OUTCOME:  `current` resolved to `record`; `processed` includes it.
    """

    kind: EventKind
    processed: int
    current: str
    record: OutcomeRecord | None = None


class StopReason(Enum):
    EXHAUSTED = "exhausted"              # every identifier was attempted
    SUCCESS_LIMIT = "success_limit"      # success count reached the limit
    STOCK_EXHAUSTED = "stock_exhausted"  # portal reported no stock left
    ERROR = "error"                      # unexpected exception, partial records


def normalize_success_limit(limit, total: int) -> int:
    """A missing, non-numeric or non-positive limit means 'all identifiers'."""
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return total
    return limit if limit > 0 else total
