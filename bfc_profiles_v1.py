"""
Beckn Flow Conformance (BFC) - Domain Profiles
Version: 1.0.0

Versioned lookup tables per protocol domain: status machines, breakup row
labels, expected order status per action, cancellation codes. Adding a
domain/version is a new DomainProfile, not new rule code.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

# ============================================
# PROTOCOL ACTIONS
# ============================================

ACTIONS = (
    "search", "on_search",
    "select", "on_select",
    "init", "on_init",
    "confirm", "on_confirm",
    "status", "on_status",
    "track", "on_track",
    "update", "on_update",
    "cancel", "on_cancel",
)

def request_of(action: str) -> Optional[str]:
    """'on_select' -> 'select'; None for request actions."""
    if action.startswith("on_"):
        return action[3:]
    return None

BUYER_CANCEL_CODES = ("001", "002", "003", "004", "005")
SELLER_CANCEL_CODES = ("011", "012", "013", "014")

SETTLEMENT_TERMS_FIELDS = (
    "SETTLEMENT_WINDOW",
    "SETTLEMENT_BASIS",
    "DELAY_INTEREST",
    "MANDATORY_ARBITRATION",
)

BILLING_FIELDS = ("name", "email", "phone")

PARTICIPANT_FIELDS = ("bap_id", "bap_uri", "bpp_id", "bpp_uri")

# ============================================
# DOMAIN PROFILE
# ============================================

@dataclass(frozen=True)
class DomainProfile:
    """Lookup tables consulted by rules for one (domain, version)."""
    domain: str
    version: str
    label: str

    # Order status machine
    order_transitions: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    cancel_always_allowed: bool = True
    cancelled_status: str = "CANCELLED"

    # Fulfillment states: forward-or-equal along the sequence
    fulfillment_states: Tuple[str, ...] = ()
    fulfillment_terminal_states: FrozenSet[str] = frozenset()
    fulfillment_cancelled_state: str = "CANCELLED"

    # Quote breakup row classification (matched against title and title_type)
    item_breakup_labels: FrozenSet[str] = frozenset({"ITEM", "item"})
    offer_breakup_labels: FrozenSet[str] = frozenset({"OFFER", "offer"})
    item_rows_default_to_unit_quantity: bool = False

    expected_order_status: Dict[str, str] = field(default_factory=dict)
    cancel_reason_codes: FrozenSet[str] = frozenset(BUYER_CANCEL_CODES + SELLER_CANCEL_CODES)
    buyer_cancel_codes: FrozenSet[str] = frozenset(BUYER_CANCEL_CODES)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.domain, self.version)

    def is_known_order_status(self, status: str) -> bool:
        return status in self.order_transitions

    def allowed_order_targets(self, status: str) -> Tuple[str, ...]:
        return self.order_transitions.get(status, ())

    def fulfillment_rank(self, state: str) -> Optional[int]:
        try:
            return self.fulfillment_states.index(state)
        except ValueError:
            return None

# ============================================
# SHIPPED PROFILES
# ============================================

ORDER_TRANSITIONS = {
    "CREATED": ("ACCEPTED",),
    "ACCEPTED": ("IN_PROGRESS", "COMPLETED"),
    "IN_PROGRESS": ("COMPLETED",),
    "COMPLETED": (),
    "CANCELLED": (),
}

GENERIC_PROFILE = DomainProfile(
    domain="*",
    version="*",
    label="generic",
    order_transitions=ORDER_TRANSITIONS,
    fulfillment_states=("INITIATED", "PROCESSING", "PROCESSED", "GRANTED"),
    fulfillment_terminal_states=frozenset({"REJECTED", "CANCELLED"}),
)

GIFT_CARD_V210 = DomainProfile(
    domain="ONDC:FIS10",
    version="2.1.0",
    label="gift card",
    order_transitions=ORDER_TRANSITIONS,
    fulfillment_states=(
        "INITIATED", "PENDING", "PACKED", "AGENT_ASSIGNED",
        "ORDER_PICKED_UP", "OUT_FOR_DELIVERY", "COMPLETED",
    ),
    fulfillment_terminal_states=frozenset({"CANCELLED"}),
    expected_order_status={
        "confirm": "CREATED",
        "on_confirm": "ACCEPTED",
        "on_update": "IN_PROGRESS",
        "on_cancel": "CANCELLED",
    },
)

HEALTH_INSURANCE_V201 = DomainProfile(
    domain="ONDC:FIS13",
    version="2.0.1",
    label="health insurance",
    order_transitions={
        "ACTIVE": ("ACTIVE", "COMPLETE", "CANCELLATION_INITIATED", "CANCELLED"),
        "COMPLETE": ("COMPLETE",),
        "CANCELLATION_INITIATED": ("CANCELLATION_INITIATED", "CANCELLED"),
        "CANCELLED": ("CANCELLED",),
    },
    cancel_always_allowed=False,
    fulfillment_states=("INITIATED", "PROCESSING", "PROCESSED", "GRANTED"),
    fulfillment_terminal_states=frozenset({"REJECTED", "CANCELLED"}),
    item_breakup_labels=frozenset({"BASE_PRICE"}),
    item_rows_default_to_unit_quantity=True,
    expected_order_status={
        "on_cancel": "CANCELLED",
    },
)

PROFILES: Dict[Tuple[str, str], DomainProfile] = {
    p.key: p for p in (GIFT_CARD_V210, HEALTH_INSURANCE_V201)
}

def get_profile(domain: str, version: str) -> DomainProfile:
    """Profile for (domain, version), or the generic tables."""
    return PROFILES.get((domain, version), GENERIC_PROFILE)
