"""Structured outcome of an apply/teardown run."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .exceptions import PartialVerificationMismatch
from .model import CapabilityStatus, Protocol


class RuleStatus(Enum):
    APPLIED = "applied"
    ALREADY_PRESENT = "already-present"
    DELETED = "deleted"
    FAILED = "failed"


@dataclass(frozen=True)
class RuleOutcome:
    """What happened to one rule during reconciliation.

    ``reason`` is a short machine-friendly tag (``RuleTableExhausted``,
    ``DeleteFailed`` ...) and ``detail`` the device's own message.
    """

    port: int
    protocol: Protocol
    status: RuleStatus
    queue: Optional[int] = None
    rule_id: Optional[int] = None
    reason: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class VerificationVerdict:
    missing: FrozenSet[int] = frozenset()
    unexpected: FrozenSet[int] = frozenset()

    @property
    def matched(self) -> bool:
        return not self.missing and not self.unexpected

    def as_dict(self) -> Dict[str, Any]:
        return {
            "verdict": "match" if self.matched else "mismatch",
            "missing": sorted(self.missing),
            "unexpected": sorted(self.unexpected),
        }


@dataclass
class ReconciliationResult:
    """Mutable accumulator owned by the orchestrator for one call."""

    interface: str
    outcomes: List[RuleOutcome] = field(default_factory=list)
    verdict: Optional[VerificationVerdict] = None
    capabilities: Dict[str, CapabilityStatus] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def record(self, outcome: RuleOutcome) -> None:
        self.outcomes.append(outcome)

    def _count(self, status: RuleStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def added(self) -> int:
        return self._count(RuleStatus.APPLIED)

    @property
    def already_present(self) -> int:
        return self._count(RuleStatus.ALREADY_PRESENT)

    @property
    def deleted(self) -> int:
        return self._count(RuleStatus.DELETED)

    @property
    def failed(self) -> int:
        return self._count(RuleStatus.FAILED)

    def failures(self) -> List[RuleOutcome]:
        return [o for o in self.outcomes if o.status is RuleStatus.FAILED]

    def ports_with(self, status: RuleStatus) -> List[int]:
        return [o.port for o in self.outcomes if o.status is status]

    @property
    def all_already_present(self) -> bool:
        return bool(self.outcomes) and all(
            outcome.status is RuleStatus.ALREADY_PRESENT for outcome in self.outcomes
        )

    @property
    def ok(self) -> bool:
        return self.failed == 0 and (self.verdict is None or self.verdict.matched)

    def raise_for_verification(self) -> None:
        if self.verdict is not None and not self.verdict.matched:
            raise PartialVerificationMismatch(
                self.interface, self.verdict.missing, self.verdict.unexpected
            )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "counts": {
                "added": self.added,
                "already_present": self.already_present,
                "deleted": self.deleted,
                "failed": self.failed,
            },
            "rules": [
                {
                    "port": o.port,
                    "protocol": o.protocol.value,
                    "status": o.status.value,
                    "queue": o.queue,
                    "rule_id": o.rule_id,
                    "reason": o.reason,
                    "detail": o.detail,
                }
                for o in self.outcomes
            ],
            "capabilities": {k: v.value for k, v in self.capabilities.items()},
            "verification": self.verdict.as_dict() if self.verdict else None,
            "warnings": list(self.warnings),
        }
