"""
Beckn Flow Conformance (BFC) - Validation Ledger
Version: 1.0.0

The accumulator every invariant rule writes into, the per-rule result type,
and the exception hierarchy shared by the engine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List
from enum import Enum
import logging

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("BFC.Ledger")

def configure_logging(level: str = "INFO"):
    """Apply the configured level to every BFC logger."""
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    logging.getLogger("BFC").setLevel(numeric)

# ============================================
# EXCEPTIONS
# ============================================

class ConformanceError(Exception):
    """Base class for conformance engine errors."""
    pass

class UnknownRuleSetError(ConformanceError):
    """Raised when no rule set is registered for (domain, version, action)."""

    def __init__(self, domain: str, version: str, action: str):
        self.domain = domain
        self.version = version
        self.action = action
        super().__init__(
            f"No rules registered for domain={domain} version={version} action={action}"
        )

class ExtractionSpecError(ConformanceError):
    """Raised when an extraction spec document is malformed."""
    pass

class ActionStoreError(ConformanceError):
    """Raised when the action store cannot save or load a snapshot."""
    pass

class CircuitBreakerOpen(ActionStoreError):
    """Raised when the store circuit breaker is open."""
    pass

# ============================================
# RULE RESULTS
# ============================================

class RuleOutcome(Enum):
    SKIPPED = "skipped"
    PASSED = "passed"
    FAILED = "failed"

@dataclass
class RuleResult:
    """Outcome of one assertion made by a rule."""
    rule_id: str
    outcome: RuleOutcome
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def passed(cls, rule_id: str, message: str, **details) -> "RuleResult":
        return cls(rule_id, RuleOutcome.PASSED, message, details)

    @classmethod
    def failed(cls, rule_id: str, message: str, **details) -> "RuleResult":
        return cls(rule_id, RuleOutcome.FAILED, message, details)

    @classmethod
    def skipped(cls, rule_id: str, reason: str) -> "RuleResult":
        return cls(rule_id, RuleOutcome.SKIPPED, reason)

    @property
    def is_failure(self) -> bool:
        return self.outcome == RuleOutcome.FAILED

# ============================================
# VALIDATION LEDGER
# ============================================

class ValidationLedger:
    """
    Per-message accumulator of passed/failed assertions.

    `passed`, `failed` and `response` are the externally visible shape.
    `skipped`, `configuration_errors` and `store_errors` let callers tell
    "nothing could be checked" apart from "everything checked and passed".
    List append is the only mutation.
    """

    def __init__(self):
        self.passed: List[str] = []
        self.failed: List[str] = []
        self.response: Dict[str, Any] = {}
        self.skipped: List[str] = []
        self.configuration_errors: List[str] = []
        self.store_errors: List[str] = []

    def record(self, result: RuleResult):
        """Append a rule result; skipped results leave the ledger untouched."""
        if result.outcome == RuleOutcome.PASSED:
            self.passed.append(result.message)
        elif result.outcome == RuleOutcome.FAILED:
            self.failed.append(result.message)
            if result.details:
                self.response.setdefault(result.rule_id, []).append(result.details)
        logger.debug(f"{result.outcome.value.upper()} {result.rule_id}: {result.message}")

    def note_skipped(self, rule_id: str, reason: str):
        """Bookkeeping for bindings that could not be evaluated at all."""
        self.skipped.append(f"{rule_id}: {reason}")

    def note_configuration_error(self, message: str):
        self.configuration_errors.append(message)
        self.failed.append(message)

    def note_store_error(self, message: str):
        self.store_errors.append(message)

    def merge(self, other: "ValidationLedger"):
        """Fold another ledger (e.g. a schema check) into this one."""
        self.passed.extend(other.passed)
        self.failed.extend(other.failed)
        self.skipped.extend(other.skipped)
        self.configuration_errors.extend(other.configuration_errors)
        self.store_errors.extend(other.store_errors)
        for key, value in other.response.items():
            if isinstance(value, list) and isinstance(self.response.get(key), list):
                self.response[key].extend(value)
            else:
                self.response[key] = value

    @property
    def checked_count(self) -> int:
        return len(self.passed) + len(self.failed)

    @property
    def nothing_checked(self) -> bool:
        return self.checked_count == 0

    @property
    def is_valid(self) -> bool:
        return not self.failed

    def summary(self) -> Dict[str, int]:
        return {
            'passed': len(self.passed),
            'failed': len(self.failed),
            'skipped': len(self.skipped),
            'configuration_errors': len(self.configuration_errors),
            'store_errors': len(self.store_errors)
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': list(self.passed),
            'failed': list(self.failed),
            'response': dict(self.response),
            'skipped': list(self.skipped),
            'configuration_errors': list(self.configuration_errors),
            'store_errors': list(self.store_errors),
            'summary': self.summary()
        }

    def __repr__(self):
        s = self.summary()
        return f"ValidationLedger(passed={s['passed']}, failed={s['failed']}, skipped={s['skipped']})"
