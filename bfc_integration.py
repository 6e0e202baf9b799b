"""
Beckn Flow Conformance - Integration Surface
Re-exports engine, store and rule components for embedding services
"""

# Engine entry points
from bfc_engine_v1 import (
    ConformanceEngine,
    get_default_engine,
    set_default_engine,
    run_validators,
    extract_and_save,
    logger
)

# Ledger & exceptions
from bfc_ledger_v1 import (
    ValidationLedger,
    RuleResult,
    RuleOutcome,
    ConformanceError,
    UnknownRuleSetError,
    ExtractionSpecError,
    ActionStoreError,
    CircuitBreakerOpen,
    configure_logging
)

# Extraction & storage
from bfc_extraction_v1 import ExtractionSpec, ExtractionSpecLoader, extract
from bfc_action_store_v1 import (
    ActionStore,
    ActionRecord,
    InMemoryActionStore,
    RedisActionStore,
    build_action_store
)
from bfc_config import ConformanceSettings

# Registry & profiles
from bfc_registry_v1 import (
    DomainRegistry,
    ActionRuleSet,
    RuleBinding,
    build_default_registry
)
from bfc_profiles_v1 import DomainProfile, get_profile, GIFT_CARD_V210, HEALTH_INSURANCE_V201
from bfc_schema_v1 import SchemaCheck, EnvelopeSchemaCheck, RequiredPathsCheck

# Rule base
from bfc_rules_base_v1 import InvariantRule, CompositeRule, RuleContext, RuleFamily, Criticality

# Replay
from bfc_flow_replay_v1 import FlowReplayer, FlowReport, replay_file

__all__ = [
    # Engine
    'ConformanceEngine',
    'get_default_engine',
    'set_default_engine',
    'run_validators',
    'extract_and_save',

    # Ledger & exceptions
    'ValidationLedger',
    'RuleResult',
    'RuleOutcome',
    'ConformanceError',
    'UnknownRuleSetError',
    'ExtractionSpecError',
    'ActionStoreError',
    'CircuitBreakerOpen',
    'configure_logging',

    # Extraction & storage
    'ExtractionSpec',
    'ExtractionSpecLoader',
    'extract',
    'ActionStore',
    'ActionRecord',
    'InMemoryActionStore',
    'RedisActionStore',
    'build_action_store',
    'ConformanceSettings',

    # Registry
    'DomainRegistry',
    'ActionRuleSet',
    'RuleBinding',
    'build_default_registry',
    'DomainProfile',
    'get_profile',
    'GIFT_CARD_V210',
    'HEALTH_INSURANCE_V201',
    'SchemaCheck',
    'EnvelopeSchemaCheck',
    'RequiredPathsCheck',

    # Rules
    'InvariantRule',
    'CompositeRule',
    'RuleContext',
    'RuleFamily',
    'Criticality',

    # Replay
    'FlowReplayer',
    'FlowReport',
    'replay_file',

    # Logging
    'logger'
]
