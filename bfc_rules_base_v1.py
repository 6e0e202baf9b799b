"""
Beckn Flow Conformance (BFC) - Invariant Rule Base
Version: 1.0.0

Every cross-action invariant derives from InvariantRule. A rule evaluates
the current message against an optional prior snapshot and appends to the
ledger; it never raises and never mutates its inputs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence
from enum import Enum
import logging

from bfc_ledger_v1 import RuleOutcome, RuleResult, ValidationLedger
from bfc_metrics import record_rule_outcome
from bfc_payload_v1 import Payload
from bfc_profiles_v1 import DomainProfile, GENERIC_PROFILE

logger = logging.getLogger("BFC.Rules")

class RuleFamily(Enum):
    CONTEXT = "context"
    REFERENTIAL = "referential"
    FINANCIAL = "financial"
    LIFECYCLE = "lifecycle"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    INFORMATIONAL = "informational"

# ============================================
# RULE CONTEXT
# ============================================

@dataclass
class RuleContext:
    """Domain tables and action names a rule reports against."""
    profile: DomainProfile = GENERIC_PROFILE
    current_action: str = ""
    prior_action: Optional[str] = None

    @property
    def current(self) -> str:
        return self.current_action or "current"

    @property
    def prior(self) -> str:
        return self.prior_action or "prior"

    def for_prior(self, prior_action: Optional[str]) -> "RuleContext":
        return RuleContext(self.profile, self.current_action, prior_action)

# ============================================
# BASE INVARIANT RULE
# ============================================

class InvariantRule(ABC):
    """Base class for all cross-action invariants."""

    def __init__(
        self,
        id: str,
        statement: str,
        family: RuleFamily,
        criticality: Criticality = Criticality.IMPORTANT,
        requires_prior: bool = True
    ):
        self.id = id
        self.statement = statement
        self.family = family
        self.criticality = criticality
        self.requires_prior = requires_prior

    @abstractmethod
    def evaluate(self, current: Payload, prior: Optional[Dict[str, Any]], ctx: RuleContext) -> Iterable[RuleResult]:
        """Yield results. Yield nothing when the compared values are absent."""
        pass

    def check(
        self,
        current: Any,
        prior: Optional[Dict[str, Any]],
        ledger: ValidationLedger,
        ctx: Optional[RuleContext] = None
    ) -> List[RuleResult]:
        """Evaluate and append to the ledger. Never raises."""
        if not isinstance(current, Payload):
            current = Payload(current)
        ctx = ctx or RuleContext()

        if self.requires_prior and prior is None:
            logger.debug(f"SKIP {self.id}: no {ctx.prior} snapshot")
            return [RuleResult.skipped(self.id, f"no {ctx.prior} snapshot")]

        try:
            results = list(self.evaluate(current, prior, ctx))
        except Exception as e:
            logger.error(f"RULE {self.id} raised during evaluation; treated as skipped", exc_info=e)
            return [RuleResult.skipped(self.id, f"evaluation error: {e}")]

        for result in results:
            ledger.record(result)
            if result.outcome != RuleOutcome.SKIPPED:
                record_rule_outcome(
                    self.id,
                    self.family.value,
                    result.outcome.value,
                    self.criticality.value
                )
        return results

    def __call__(self, current, prior, ledger, ctx=None) -> List[RuleResult]:
        return self.check(current, prior, ledger, ctx)

    def passed(self, message: str, **details) -> RuleResult:
        return RuleResult.passed(self.id, f"[{self.id}] {message}", **details)

    def failed(self, message: str, **details) -> RuleResult:
        return RuleResult.failed(self.id, f"[{self.id}] {message}", **details)

    def __repr__(self):
        return f"{type(self).__name__}(id={self.id!r})"

# ============================================
# COMPOSITE RULE
# ============================================

class CompositeRule(InvariantRule):
    """Runs a fixed ordered list of member rules on the same inputs."""

    def __init__(self, id: str, statement: str, members: Sequence[InvariantRule], family: RuleFamily):
        super().__init__(
            id=id,
            statement=statement,
            family=family,
            requires_prior=all(m.requires_prior for m in members)
        )
        self.members = list(members)

    def evaluate(self, current, prior, ctx):
        for member in self.members:
            if member.requires_prior and prior is None:
                continue
            yield from member.evaluate(current, prior, ctx)

    def check(self, current, prior, ledger, ctx=None) -> List[RuleResult]:
        results: List[RuleResult] = []
        for member in self.members:
            results.extend(member.check(current, prior, ledger, ctx))
        return results

    def __repr__(self):
        return f"CompositeRule(id={self.id!r}, members={[m.id for m in self.members]})"
