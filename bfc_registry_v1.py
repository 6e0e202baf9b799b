"""
Beckn Flow Conformance (BFC) - Rule Composition & Domain Registry
Version: 1.0.0

Maps (domain, version, action) to an ordered list of rule bindings. Each
binding names the prior action whose snapshot the rule compares against
(None for rules that only look at the current message).

An unregistered key is a configuration error, surfaced as
UnknownRuleSetError, never an empty pass.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from bfc_ledger_v1 import UnknownRuleSetError
from bfc_profiles_v1 import DomainProfile, get_profile, GIFT_CARD_V210, HEALTH_INSURANCE_V201
from bfc_rules_base_v1 import InvariantRule
from bfc_rules_context_v1 import (
    DomainVersionLiteral,
    SellerAbsentAtSearch,
    context_consistency,
    MESSAGE_ID_MATCH,
    MESSAGE_ID_UNIQUE,
)
from bfc_rules_referential_v1 import (
    CatalogMembership,
    FulfillmentCountVsQuantity,
    FulfillmentIdsOnItems,
    ItemIdConsistency,
    ItemPriceConsistency,
    OfferIdConsistency,
    OrderIdConsistency,
    PaymentTermsConsistency,
    ProviderConsistency,
    QuoteTotalConsistency,
    ReceiverContactPersistence,
    SetMode,
    SettlementTermsConsistency,
    BillingConsistency,
    catalog_items,
    cross_action_consistency,
    quote_unchanged_after_update,
)
from bfc_rules_financial_v1 import (
    BreakupItemPriceIntegrity,
    BuyerFinderFeeArithmetic,
    ItemQuantityZeroOnCancel,
    PriceDecimalPrecision,
    QuoteBreakupSum,
    QuoteZeroedOnCancel,
    all_financials,
)
from bfc_rules_lifecycle_v1 import (
    AllFulfillmentsCancelled,
    CancelRequestFields,
    CancellationDetails,
    CreatedBeforeUpdated,
    FulfillmentStateProgression,
    OrderStatusTransition,
    OrderStatusValue,
    OrderTimestampsIntegrity,
    PaymentStatusProgression,
    UpdateTargetPresent,
)
from bfc_schema_v1 import EnvelopeSchemaCheck, RequiredPathsCheck, SchemaCheck

logger = logging.getLogger("BFC.Registry")

RegistryKey = Tuple[str, str, str]

# ============================================
# BINDINGS
# ============================================

@dataclass
class RuleBinding:
    """One rule invocation: the rule and the prior action it reads."""
    rule: InvariantRule
    prior_action: Optional[str] = None

@dataclass
class ActionRuleSet:
    """Everything run for one (domain, version, action)."""
    domain: str
    version: str
    action: str
    bindings: List[RuleBinding] = field(default_factory=list)
    schema_checks: List[SchemaCheck] = field(default_factory=list)

    @property
    def key(self) -> RegistryKey:
        return (self.domain, self.version, self.action)

    @property
    def profile(self) -> DomainProfile:
        return get_profile(self.domain, self.version)

    def prior_actions(self) -> List[str]:
        """Distinct prior actions in first-use order."""
        seen: List[str] = []
        for binding in self.bindings:
            if binding.prior_action and binding.prior_action not in seen:
                seen.append(binding.prior_action)
        return seen

# ============================================
# REGISTRY
# ============================================

class DomainRegistry:
    """(domain, version, action) -> ActionRuleSet."""

    def __init__(self):
        self._rule_sets: Dict[RegistryKey, ActionRuleSet] = {}

    def register(
        self,
        domain: str,
        version: str,
        action: str,
        bindings: Sequence[RuleBinding],
        schema_checks: Sequence[SchemaCheck] = ()
    ) -> ActionRuleSet:
        rule_set = ActionRuleSet(domain, version, action, list(bindings), list(schema_checks))
        if rule_set.key in self._rule_sets:
            logger.warning(f"Replacing rule set for {domain} {version} {action}")
        self._rule_sets[rule_set.key] = rule_set
        return rule_set

    def resolve(self, domain: str, version: str, action: str) -> ActionRuleSet:
        try:
            return self._rule_sets[(domain, version, action)]
        except KeyError:
            raise UnknownRuleSetError(domain, version, action) from None

    def has(self, domain: str, version: str, action: str) -> bool:
        return (domain, version, action) in self._rule_sets

    def keys(self) -> List[RegistryKey]:
        return sorted(self._rule_sets)

    def actions(self, domain: str, version: str) -> List[str]:
        return [a for d, v, a in self._rule_sets if d == domain and v == version]

    def __len__(self):
        return len(self._rule_sets)

def bind(prior_action: Optional[str], *rules: InvariantRule) -> List[RuleBinding]:
    return [RuleBinding(rule, prior_action) for rule in rules]

def _register_all(
    registry: DomainRegistry,
    profile: DomainProfile,
    call_map: Dict[str, List[RuleBinding]],
    schema_checks: Iterable[SchemaCheck],
    action_checks: Optional[Dict[str, List[SchemaCheck]]] = None
):
    checks = list(schema_checks)
    action_checks = action_checks or {}
    for action, bindings in call_map.items():
        registry.register(
            profile.domain, profile.version, action, bindings,
            checks + action_checks.get(action, [])
        )
    logger.info(f"Registered {len(call_map)} actions for {profile.domain} {profile.version} ({profile.label})")

# ============================================
# ONDC:FIS10 2.1.0 (GIFT CARDS)
# ============================================

def gift_card_call_map() -> Dict[str, List[RuleBinding]]:
    return {
        "search": bind(
            None,
            DomainVersionLiteral(),
            SellerAbsentAtSearch(),
        ),
        "on_search": bind(
            "search",
            context_consistency(MESSAGE_ID_MATCH),
        ),
        "select": bind(
            "on_search",
            context_consistency(MESSAGE_ID_UNIQUE),
            OfferIdConsistency(SetMode.MEMBERSHIP),
            CatalogMembership(),
        ),
        "on_select": (
            bind(
                "select",
                context_consistency(MESSAGE_ID_MATCH),
                cross_action_consistency(),
                QuoteTotalConsistency(),
            )
            + bind(
                None,
                all_financials(),
                FulfillmentCountVsQuantity(),
                FulfillmentIdsOnItems(),
            )
        ),
        "init": (
            bind(
                "on_select",
                context_consistency(MESSAGE_ID_UNIQUE),
                cross_action_consistency(),
            )
            + bind(None, FulfillmentIdsOnItems())
        ),
        "on_init": (
            bind(
                "init",
                context_consistency(MESSAGE_ID_MATCH),
                cross_action_consistency(),
            )
            + bind(
                None,
                all_financials(),
                FulfillmentIdsOnItems(),
            )
        ),
        "confirm": (
            bind(
                "on_init",
                context_consistency(MESSAGE_ID_UNIQUE),
                cross_action_consistency(),
                QuoteTotalConsistency(),
            )
            + bind(None, OrderStatusValue())
        ),
        "on_confirm": (
            bind(
                "confirm",
                context_consistency(MESSAGE_ID_MATCH),
                cross_action_consistency(),
                OrderIdConsistency(),
                FulfillmentStateProgression(),
                OrderTimestampsIntegrity(),
                PaymentStatusProgression(),
            )
            + bind(
                None,
                OrderStatusValue(),
                all_financials(),
                FulfillmentIdsOnItems(),
            )
        ),
        "status": bind(
            "on_confirm",
            context_consistency(MESSAGE_ID_UNIQUE),
            OrderIdConsistency(),
        ),
        "on_status": (
            bind(
                "status",
                context_consistency(MESSAGE_ID_MATCH),
            )
            + bind(
                "on_confirm",
                cross_action_consistency(),
                OrderIdConsistency(),
                OrderStatusTransition(),
                FulfillmentStateProgression(),
                ReceiverContactPersistence(),
                OrderTimestampsIntegrity(),
                PaymentStatusProgression(),
            )
            + bind(None, all_financials())
        ),
        "update": (
            bind(None, UpdateTargetPresent())
            + bind(
                "on_confirm",
                OrderIdConsistency(),
                context_consistency(MESSAGE_ID_UNIQUE),
            )
        ),
        "on_update": (
            bind(
                "update",
                context_consistency(MESSAGE_ID_MATCH),
            )
            + bind(
                "on_confirm",
                OrderIdConsistency(),
                quote_unchanged_after_update(),
                cross_action_consistency(),
                OrderTimestampsIntegrity(),
            )
            + bind(None, OrderStatusValue())
        ),
        "cancel": (
            bind("on_confirm", OrderIdConsistency())
            + bind(None, CancelRequestFields())
        ),
        "on_cancel": (
            bind(
                "cancel",
                context_consistency(MESSAGE_ID_MATCH),
            )
            + bind(
                "on_confirm",
                ProviderConsistency(),
                ItemIdConsistency(),
                BillingConsistency(),
                OrderIdConsistency(),
                OrderTimestampsIntegrity(),
            )
            + bind(
                None,
                OrderStatusValue(),
                CancellationDetails(),
                AllFulfillmentsCancelled(),
                QuoteZeroedOnCancel(),
                ItemQuantityZeroOnCancel(),
            )
        ),
    }

# ============================================
# ONDC:FIS13 2.0.1 (HEALTH INSURANCE)
# ============================================

def health_insurance_call_map() -> Dict[str, List[RuleBinding]]:
    return {
        "search": bind(None, DomainVersionLiteral()),
        "on_search": bind(
            "search",
            ItemIdConsistency(SetMode.CARRIED_FORWARD, source=catalog_items),
        ),
        "select": bind(
            "on_search",
            ProviderConsistency(),
            context_consistency(MESSAGE_ID_UNIQUE),
        ),
        "on_select": (
            bind(
                None,
                QuoteBreakupSum(),
                BuyerFinderFeeArithmetic(),
                BreakupItemPriceIntegrity(),
            )
            + bind(
                "select",
                ProviderConsistency(),
                ItemIdConsistency(SetMode.EXACT),
                context_consistency(MESSAGE_ID_MATCH),
            )
        ),
        "init": bind(
            "on_select",
            ProviderConsistency(),
            ItemIdConsistency(),
            PaymentTermsConsistency(fields=("collected_by",)),
            context_consistency(MESSAGE_ID_UNIQUE),
        ),
        "on_init": (
            bind(None, all_financials())
            + bind(
                "on_select",
                ProviderConsistency(),
                ItemIdConsistency(),
                QuoteTotalConsistency(),
                PaymentTermsConsistency(fields=("collected_by",)),
                SettlementTermsConsistency(),
                context_consistency(MESSAGE_ID_UNIQUE),
            )
            + bind(
                "init",
                ProviderConsistency(),
                ItemIdConsistency(),
            )
        ),
        "confirm": (
            bind(
                "on_init",
                ItemPriceConsistency(),
                QuoteTotalConsistency(),
                context_consistency(MESSAGE_ID_UNIQUE),
            )
            + bind(None, QuoteBreakupSum())
        ),
        "on_confirm": (
            bind(
                "confirm",
                ItemPriceConsistency(),
                QuoteTotalConsistency(),
                context_consistency(MESSAGE_ID_MATCH),
            )
            + bind(
                None,
                QuoteBreakupSum(),
                PriceDecimalPrecision(),
                CreatedBeforeUpdated(),
            )
        ),
        "status": bind(
            "on_confirm",
            OrderIdConsistency(),
            context_consistency(MESSAGE_ID_UNIQUE),
        ),
        "on_status": (
            bind(
                None,
                QuoteBreakupSum(),
                CreatedBeforeUpdated(),
            )
            + bind(
                "on_confirm",
                OrderStatusTransition(),
                FulfillmentStateProgression(),
                context_consistency(),
            )
        ),
        "update": (
            bind(None, UpdateTargetPresent())
            + bind(
                "on_confirm",
                OrderIdConsistency(),
                context_consistency(MESSAGE_ID_UNIQUE),
            )
        ),
        "on_update": (
            bind(None, CreatedBeforeUpdated())
            + bind(
                "on_confirm",
                OrderStatusTransition(),
                FulfillmentStateProgression(),
                context_consistency(),
            )
        ),
        "cancel": bind(
            "on_confirm",
            OrderIdConsistency(),
            context_consistency(MESSAGE_ID_UNIQUE),
        ),
        "on_cancel": (
            bind(
                "cancel",
                OrderIdConsistency(),
                context_consistency(MESSAGE_ID_MATCH),
            )
            + bind(
                "on_confirm",
                ProviderConsistency(),
                OrderStatusTransition(),
            )
            + bind(
                None,
                OrderStatusValue(),
                CancellationDetails(),
                AllFulfillmentsCancelled(),
                QuoteZeroedOnCancel(),
            )
        ),
    }

# ============================================
# DEFAULT REGISTRY
# ============================================

# Request fields whose absence makes the cross-action rules meaningless
REQUIRED_PATHS: Dict[str, Tuple[str, ...]] = {
    "status": ("message.order_id",),
    "cancel": ("message.order_id",),
    "update": ("message.update_target",),
}

def build_default_registry() -> DomainRegistry:
    """Registry with the shipped gift card and health insurance call maps."""
    registry = DomainRegistry()
    envelope = EnvelopeSchemaCheck()
    required = {action: [RequiredPathsCheck(paths)] for action, paths in REQUIRED_PATHS.items()}
    _register_all(registry, GIFT_CARD_V210, gift_card_call_map(), [envelope], required)
    _register_all(registry, HEALTH_INSURANCE_V201, health_insurance_call_map(), [envelope], required)
    return registry
