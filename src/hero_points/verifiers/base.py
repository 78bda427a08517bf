from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar


EventT = TypeVar("EventT")


@dataclass(frozen=True)
class VerificationResult(Generic[EventT]):
    """
    Outcome of checking an inbound claim at one trust boundary.

    A valid result carries the normalized event the rest of the system
    works with; an invalid one carries a human-readable reason and must not
    lead to any ledger or payment write.
    """

    valid: bool
    event: Optional[EventT] = None
    failure_reason: Optional[str] = None

    @classmethod
    def ok(cls, event: EventT) -> "VerificationResult[EventT]":
        return cls(valid=True, event=event)

    @classmethod
    def rejected(cls, reason: str) -> "VerificationResult[EventT]":
        return cls(valid=False, failure_reason=reason)
