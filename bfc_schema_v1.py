"""
Beckn Flow Conformance (BFC) - Schema Checks
Version: 1.0.0

Per-message structural checks that run ahead of the cross-action rules.
The engine treats every SchemaCheck as a black box returning its own
ValidationLedger, which is merged into the message ledger.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Sequence
import logging

from pydantic import BaseModel, Field, ValidationError

from bfc_ledger_v1 import RuleResult, ValidationLedger
from bfc_payload_v1 import Payload, is_present

logger = logging.getLogger("BFC.Schema")

# ============================================
# ENVELOPE MODELS
# ============================================

class BecknContext(BaseModel):
    domain: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    version: Optional[str] = None
    core_version: Optional[str] = None
    transaction_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)
    timestamp: str = Field(..., min_length=1)
    bap_id: str = Field(..., min_length=1)
    bap_uri: str = Field(..., min_length=1)
    bpp_id: Optional[str] = None
    bpp_uri: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    ttl: Optional[str] = None

    class Config:
        extra = "allow"
        json_schema_extra = {
            "example": {
                "domain": "ONDC:FIS10",
                "action": "select",
                "version": "2.1.0",
                "transaction_id": "7e2b2c36-1b7a-4d57-9f0e-8d2f1c0a9b11",
                "message_id": "b1d0a5f2-0c4e-4f60-a3b8-6c1f0e2d7a45",
                "timestamp": "2024-05-01T10:00:00.000Z",
                "bap_id": "buyer.example.com",
                "bap_uri": "https://buyer.example.com/beckn",
                "bpp_id": "seller.example.com",
                "bpp_uri": "https://seller.example.com/beckn"
            }
        }

class BecknEnvelope(BaseModel):
    context: BecknContext
    message: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "allow"

# ============================================
# SCHEMA CHECKS
# ============================================

class SchemaCheck(ABC):
    """Black-box per-message validator; returns its own ledger."""

    id: str = "schema"

    @abstractmethod
    def validate(self, domain: str, version: str, action: str, message: Any) -> ValidationLedger:
        pass

    def _fail(self, ledger: ValidationLedger, message: str, **details):
        ledger.record(RuleResult.failed(self.id, f"[{self.id}] {message}", **details))

    def _pass(self, ledger: ValidationLedger, message: str):
        ledger.record(RuleResult.passed(self.id, f"[{self.id}] {message}"))

class EnvelopeSchemaCheck(SchemaCheck):
    """
    Validates the {context, message} envelope.

    Required context fields are enforced by BecknContext. On top of that the
    declared action/domain/version must agree with how the engine was
    invoked, and every action after the broadcast search names the seller.
    """

    id = "schema_envelope"

    def __init__(self, broadcast_actions: Iterable[str] = ("search",)):
        self.broadcast_actions = frozenset(broadcast_actions)

    def validate(self, domain, version, action, message):
        ledger = ValidationLedger()
        try:
            envelope = BecknEnvelope.model_validate(message)
        except ValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error.get('loc', ()))
                self._fail(ledger, f"{location}: {error.get('msg')} in {action}", field=location)
            logger.info(f"Envelope of {action} rejected with {len(ledger.failed)} error(s)")
            return ledger

        context = envelope.context
        declared_version = context.version or context.core_version
        for name, declared, invoked in (
            ("action", context.action, action),
            ("domain", context.domain, domain),
            ("version", declared_version, version),
        ):
            if declared is None:
                continue
            if declared != invoked:
                self._fail(
                    ledger,
                    f"context.{name} is {declared}, expected {invoked}",
                    field=f"context.{name}", expected=invoked, current=declared
                )

        if action not in self.broadcast_actions:
            for name in ("bpp_id", "bpp_uri"):
                if not is_present(getattr(context, name)):
                    self._fail(ledger, f"context.{name} missing in {action}", field=f"context.{name}")

        if not ledger.failed:
            self._pass(ledger, f"envelope valid for {action}")
        return ledger

class RequiredPathsCheck(SchemaCheck):
    """Presence of dotted paths, e.g. 'message.order.provider.id'."""

    id = "schema_required_paths"

    def __init__(self, paths: Sequence[str]):
        self.paths = tuple(paths)

    def validate(self, domain, version, action, message):
        ledger = ValidationLedger()
        payload = Payload(message)
        missing = [path for path in self.paths if not is_present(payload.get(path))]
        for path in missing:
            self._fail(ledger, f"{path} missing in {action}", field=path)
        if self.paths and not missing:
            self._pass(ledger, f"required fields present in {action} ({len(self.paths)})")
        return ledger
