"""
Beckn Flow Conformance (BFC) - Conformance Engine
Version: 1.0.0

Orchestrates one inbound message:
1. Resolve the rule set for (domain, version, action)
2. Merge the schema check ledgers
3. Load each prior snapshot the bindings need (once per action)
4. Run the bindings in order into one ValidationLedger
5. Extract the message's own snapshot and save it for later actions

A ledger is always returned. Store and extraction failures are logged and
noted on the ledger; they never escape to the caller.
"""

from typing import Any, Dict, Optional
import logging
import time

from bfc_action_store_v1 import ActionStore, build_action_store
from bfc_config import ConformanceSettings
from bfc_extraction_v1 import ExtractionSpecLoader, extract
from bfc_ledger_v1 import (
    ExtractionSpecError,
    UnknownRuleSetError,
    ValidationLedger,
    configure_logging,
)
from bfc_metrics import (
    record_message_validated,
    record_unknown_rule_set,
)
from bfc_payload_v1 import Payload
from bfc_registry_v1 import DomainRegistry, build_default_registry
from bfc_rules_base_v1 import RuleContext

logger = logging.getLogger("BFC.Engine")

# ============================================
# ENGINE
# ============================================

class ConformanceEngine:
    """Runs registered rules for a message and persists its snapshot."""

    def __init__(
        self,
        registry: DomainRegistry,
        store: ActionStore,
        spec_loader: ExtractionSpecLoader
    ):
        self.registry = registry
        self.store = store
        self.spec_loader = spec_loader

    @classmethod
    def from_settings(cls, settings: ConformanceSettings) -> "ConformanceEngine":
        configure_logging(settings.log_level)
        return cls(
            registry=build_default_registry(),
            store=build_action_store(settings),
            spec_loader=ExtractionSpecLoader(settings.extraction_spec_dir)
        )

    async def _load_prior(
        self,
        ledger: ValidationLedger,
        session_id: str,
        flow_id: str,
        transaction_id: str,
        action: str
    ) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.load(session_id, flow_id, transaction_id, action)
        except Exception as e:
            logger.error(f"Loading {action} snapshot for {transaction_id} failed", exc_info=e)
            ledger.note_store_error(f"load {action}: {e}")
            return None

    async def run_validators(
        self,
        domain: str,
        version: str,
        action: str,
        current_message: Any,
        session_id: str,
        flow_id: str,
        transaction_id: str
    ) -> ValidationLedger:
        """Validate one message against its registered rule set."""
        start = time.time()
        ledger = ValidationLedger()
        ledger.response.update({'action': action, 'domain': domain, 'version': version})

        try:
            rule_set = self.registry.resolve(domain, version, action)
        except UnknownRuleSetError as e:
            logger.warning(str(e))
            ledger.note_configuration_error(
                f"Incorrect version or unsupported action: {domain} {version} {action}"
            )
            record_unknown_rule_set(domain, version, action)
            return ledger

        for check in rule_set.schema_checks:
            try:
                ledger.merge(check.validate(domain, version, action, current_message))
            except Exception as e:
                logger.error(f"Schema check {check.id} raised for {action}", exc_info=e)
                ledger.note_skipped(check.id, f"schema check error: {e}")

        payload = Payload(current_message)
        profile = rule_set.profile
        priors: Dict[str, Optional[Dict[str, Any]]] = {}
        for prior_action in rule_set.prior_actions():
            priors[prior_action] = await self._load_prior(
                ledger, session_id, flow_id, transaction_id, prior_action
            )

        for binding in rule_set.bindings:
            prior = priors.get(binding.prior_action) if binding.prior_action else None
            if binding.prior_action and prior is None:
                ledger.note_skipped(binding.rule.id, f"no {binding.prior_action} snapshot")
                continue
            ctx = RuleContext(profile, action, binding.prior_action)
            binding.rule.check(payload, prior, ledger, ctx)

        ledger.response['priors_available'] = {a: s is not None for a, s in priors.items()}

        duration = time.time() - start
        record_message_validated(domain, action, len(ledger.passed), len(ledger.failed), duration)
        logger.info(
            f"VALIDATED {action} txn={transaction_id}: "
            f"{len(ledger.passed)} passed, {len(ledger.failed)} failed, "
            f"{len(ledger.skipped)} skipped ({duration * 1000:.1f}ms)"
        )
        return ledger

    async def extract_and_save(
        self,
        domain: str,
        version: str,
        action: str,
        current_message: Any,
        session_id: str,
        flow_id: str,
        transaction_id: str
    ) -> Optional[Dict[str, Any]]:
        """Extract the message snapshot and save it; returns the snapshot or None."""
        try:
            spec = self.spec_loader.load(domain, version, action)
        except ExtractionSpecError as e:
            logger.error(f"Extraction spec for {domain} {version} {action} is invalid", exc_info=e)
            return None
        if spec is None:
            logger.info(f"No extraction spec for {domain} {version} {action}; nothing saved")
            return None

        snapshot = extract(current_message, spec)
        try:
            await self.store.save(session_id, flow_id, transaction_id, action, snapshot)
        except Exception as e:
            logger.error(f"Saving {action} snapshot for {transaction_id} failed", exc_info=e)
            return None
        logger.debug(f"SAVED {action} txn={transaction_id} ({len(snapshot)} fields)")
        return snapshot

    async def process_message(
        self,
        raw_message: Any,
        session_id: str,
        flow_id: str
    ) -> ValidationLedger:
        """Validate then persist one message; identifiers come from its context."""
        payload = Payload(raw_message)
        domain = payload.domain or ""
        version = payload.version or ""
        action = (payload.action or "").lower()
        transaction_id = payload.transaction_id or ""

        ledger = await self.run_validators(
            domain, version, action, raw_message, session_id, flow_id, transaction_id
        )
        snapshot = await self.extract_and_save(
            domain, version, action, raw_message, session_id, flow_id, transaction_id
        )
        ledger.response['snapshot_saved'] = snapshot is not None
        return ledger

    async def close(self):
        await self.store.close()

# ============================================
# DEFAULT ENGINE
# ============================================

_default_engine: Optional[ConformanceEngine] = None

def get_default_engine() -> ConformanceEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = ConformanceEngine.from_settings(ConformanceSettings.from_env())
    return _default_engine

def set_default_engine(engine: Optional[ConformanceEngine]):
    global _default_engine
    _default_engine = engine

async def run_validators(domain, version, action, current_message, session_id, flow_id, transaction_id) -> ValidationLedger:
    return await get_default_engine().run_validators(
        domain, version, action, current_message, session_id, flow_id, transaction_id
    )

async def extract_and_save(domain, version, action, current_message, session_id, flow_id, transaction_id) -> Optional[Dict[str, Any]]:
    return await get_default_engine().extract_and_save(
        domain, version, action, current_message, session_id, flow_id, transaction_id
    )
