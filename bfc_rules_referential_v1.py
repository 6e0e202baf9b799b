"""
Beckn Flow Conformance (BFC) - Identity & Referential Invariants
Version: 1.0.0

Providers, items, offers, fulfillments, billing and payment terms declared
by one action must be honored by later actions of the same transaction.
Set comparisons are on unique ids; mismatches always name the ids involved.
"""

from typing import Any, Callable, List, Optional
from enum import Enum

from bfc_payload_v1 import (
    Payload,
    as_list,
    dig,
    entity_id,
    first_tag_value,
    format_number,
    ids_of,
    index_by_id,
    is_present,
    parse_number,
    round2,
    selected_quantity,
)
from bfc_profiles_v1 import BILLING_FIELDS, SETTLEMENT_TERMS_FIELDS
from bfc_rules_base_v1 import CompositeRule, Criticality, InvariantRule, RuleFamily

class SetMode(Enum):
    CARRIED_FORWARD = "carried_forward"  # prior ids must reappear; supersets are fine
    EXACT = "exact"                      # missing and extra ids both fail
    MEMBERSHIP = "membership"            # current ids must exist in the prior set

# ============================================
# CURRENT-MESSAGE ENTITY SOURCES
# ============================================

def order_items(current: Payload) -> List[Any]:
    return current.items()

def order_offers(current: Payload) -> List[Any]:
    return current.offers()

def order_fulfillments(current: Payload) -> List[Any]:
    return current.fulfillments()

def catalog_providers(current: Payload) -> List[Any]:
    return as_list(dig(current.message, 'catalog', 'providers'))

def catalog_items(current: Payload) -> List[Any]:
    items: List[Any] = []
    for provider in catalog_providers(current):
        items.extend(as_list(dig(provider, 'items')))
    return items

def item_unit_price(item: Any) -> Optional[float]:
    """item.price.value; tolerates snapshots that flattened price to a scalar."""
    value = dig(item, 'price', 'value')
    if value is None and not isinstance(dig(item, 'price'), dict):
        value = dig(item, 'price')
    return parse_number(value)

# ============================================
# PROVIDER
# ============================================

class ProviderConsistency(InvariantRule):
    """REF-001: the order stays with the same provider."""

    def __init__(self):
        super().__init__(
            id="ref_001_provider",
            statement="order.provider.id MUST equal the provider id of the prior action",
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        cur = entity_id(dig(current.order, 'provider'))
        before = entity_id(prior.get('provider'))
        if cur is None or before is None:
            return
        if cur == before:
            yield self.passed(f"provider.id consistent ({cur}): {ctx.current} matches {ctx.prior}")
        else:
            yield self.failed(
                f"provider.id mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                field="provider.id", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

# ============================================
# ID SETS
# ============================================

class IdSetConsistency(InvariantRule):
    """Set comparison of entity ids between the current message and a snapshot."""

    def __init__(
        self,
        id: str,
        entity: str,
        snapshot_key: str,
        source: Callable[[Payload], List[Any]],
        mode: SetMode = SetMode.CARRIED_FORWARD,
        skip_when_current_empty: bool = True,
        criticality: Criticality = Criticality.IMPORTANT
    ):
        super().__init__(
            id=id,
            statement=f"{entity} ids MUST be consistent with the prior action ({mode.value})",
            family=RuleFamily.REFERENTIAL,
            criticality=criticality
        )
        self.entity = entity
        self.snapshot_key = snapshot_key
        self.source = source
        self.mode = mode
        self.skip_when_current_empty = skip_when_current_empty

    def evaluate(self, current, prior, ctx):
        cur_ids = ids_of(self.source(current))
        prior_ids = ids_of(prior.get(self.snapshot_key))
        if not prior_ids:
            return
        if not cur_ids and self.skip_when_current_empty:
            return

        missing = [i for i in prior_ids if i not in cur_ids]
        extra = [i for i in cur_ids if i not in prior_ids]
        ok = True

        if self.mode in (SetMode.CARRIED_FORWARD, SetMode.EXACT) and missing:
            ok = False
            yield self.failed(
                f"{self.entity} ids from {ctx.prior} missing in {ctx.current}: {', '.join(missing)}",
                entity=self.entity, prior_action=ctx.prior, current_action=ctx.current,
                missing=missing
            )
        if self.mode in (SetMode.EXACT, SetMode.MEMBERSHIP) and extra:
            ok = False
            yield self.failed(
                f"{self.entity} ids in {ctx.current} not found in {ctx.prior}: {', '.join(extra)}",
                entity=self.entity, prior_action=ctx.prior, current_action=ctx.current,
                extra=extra
            )
        if ok:
            yield self.passed(
                f"{self.entity} ids consistent: {ctx.current} matches {ctx.prior} ({len(cur_ids)} ids)"
            )

class ItemIdConsistency(IdSetConsistency):
    """REF-002: item ids carried across actions."""

    def __init__(self, mode: SetMode = SetMode.CARRIED_FORWARD, source=order_items):
        super().__init__(
            id=f"ref_002_item_ids_{mode.value}",
            entity="item",
            snapshot_key="items",
            source=source,
            mode=mode
        )

class OfferIdConsistency(IdSetConsistency):
    """REF-003: applied offers are not silently dropped."""

    def __init__(self, mode: SetMode = SetMode.CARRIED_FORWARD):
        super().__init__(
            id=f"ref_003_offer_ids_{mode.value}",
            entity="offer",
            snapshot_key="offers",
            source=order_offers,
            mode=mode,
            skip_when_current_empty=False
        )

class FulfillmentIdConsistency(IdSetConsistency):
    """REF-004: fulfillment ids carried across actions."""

    def __init__(self, mode: SetMode = SetMode.CARRIED_FORWARD):
        super().__init__(
            id=f"ref_004_fulfillment_ids_{mode.value}",
            entity="fulfillment",
            snapshot_key="fulfillments",
            source=order_fulfillments,
            mode=mode
        )

class FulfillmentTypeConsistency(InvariantRule):
    """REF-005: a fulfillment keeps its type."""

    def __init__(self):
        super().__init__(
            id="ref_005_fulfillment_type",
            statement="fulfillment.type MUST not change for a fulfillment id present in both actions",
            family=RuleFamily.REFERENTIAL
        )

    def evaluate(self, current, prior, ctx):
        prior_by_id = index_by_id(prior.get('fulfillments'))
        compared = 0
        mismatched = False
        for fid, fulfillment in index_by_id(current.fulfillments()).items():
            before = dig(prior_by_id.get(fid), 'type')
            cur = dig(fulfillment, 'type')
            if not is_present(before) or not is_present(cur):
                continue
            compared += 1
            if cur != before:
                mismatched = True
                yield self.failed(
                    f"type mismatch for fulfillment {fid}: {ctx.prior}({before}) vs {ctx.current}({cur})",
                    fulfillment_id=fid, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )
        if compared and not mismatched:
            yield self.passed(f"fulfillment types consistent: {ctx.current} matches {ctx.prior}")

class CatalogMembership(InvariantRule):
    """REF-006: a selection only references what the catalog offered."""

    def __init__(self):
        super().__init__(
            id="ref_006_catalog_membership",
            statement="provider, items and fulfillments of a selection MUST exist in the catalog",
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        providers = [p for p in as_list(prior.get('providers')) if isinstance(p, dict)]
        if not providers:
            return
        provider_ids = ids_of(providers)
        selected_provider = entity_id(dig(current.order, 'provider'))

        scope = providers
        if selected_provider is not None:
            if selected_provider in provider_ids:
                yield self.passed(f"provider {selected_provider} exists in {ctx.prior}")
                scope = [p for p in providers if entity_id(p) == selected_provider]
            else:
                yield self.failed(
                    f"provider {selected_provider} not found in {ctx.prior}",
                    selected_provider=selected_provider, provider_ids=provider_ids
                )

        for entity, key, selected in (
            ("item", "items", ids_of(current.items())),
            ("fulfillment", "fulfillments", ids_of(current.fulfillments())),
        ):
            if not selected:
                continue
            offered: List[str] = []
            for provider in scope:
                offered.extend(i for i in ids_of(provider.get(key)) if i not in offered)
            if not offered:
                continue
            missing = [i for i in selected if i not in offered]
            if missing:
                yield self.failed(
                    f"selected {entity}s missing in {ctx.prior}: {', '.join(missing)}",
                    entity=entity, missing=missing, offered=offered
                )
            else:
                yield self.passed(f"all selected {entity}s exist in {ctx.prior}")

# ============================================
# PER-ITEM VALUES
# ============================================

class ItemQuantityConsistency(InvariantRule):
    """REF-007: selected quantity per item id is carried exactly."""

    def __init__(self):
        super().__init__(
            id="ref_007_item_quantity",
            statement="selected quantity MUST match the prior action for every item id present in both",
            family=RuleFamily.REFERENTIAL
        )

    def evaluate(self, current, prior, ctx):
        prior_by_id = index_by_id(prior.get('items'))
        compared = 0
        mismatched = False
        for iid, item in index_by_id(current.items()).items():
            if iid not in prior_by_id:
                continue
            cur = selected_quantity(item)
            before = selected_quantity(prior_by_id[iid])
            if cur is None or before is None:
                continue
            compared += 1
            if cur != before:
                mismatched = True
                yield self.failed(
                    f"quantity mismatch for item {iid}: {ctx.prior}({format_number(before)}) "
                    f"vs {ctx.current}({format_number(cur)})",
                    item_id=iid, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )
        if compared and not mismatched:
            yield self.passed(f"item quantities consistent: {ctx.current} matches {ctx.prior}")

class ItemPriceConsistency(InvariantRule):
    """REF-008: unit price per item id is carried exactly."""

    def __init__(self):
        super().__init__(
            id="ref_008_item_price",
            statement="item price MUST match the prior action for every item id present in both",
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        prior_by_id = index_by_id(prior.get('items'))
        compared = 0
        mismatched = False
        for iid, item in index_by_id(current.items()).items():
            if iid not in prior_by_id:
                continue
            cur = item_unit_price(item)
            before = item_unit_price(prior_by_id[iid])
            if cur is None or before is None:
                continue
            compared += 1
            if cur != before:
                mismatched = True
                yield self.failed(
                    f"price mismatch for item {iid}: {ctx.prior}({format_number(before)}) "
                    f"vs {ctx.current}({format_number(cur)})",
                    item_id=iid, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )
        if compared and not mismatched:
            yield self.passed(f"item prices consistent: {ctx.current} matches {ctx.prior}")

class FulfillmentCountVsQuantity(InvariantRule):
    """REF-009: informational; over-provisioned fulfillments are allowed."""

    def __init__(self):
        super().__init__(
            id="ref_009_fulfillment_count",
            statement="number of fulfillments is reported against total selected quantity",
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.INFORMATIONAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        total = sum(selected_quantity(i) or 0 for i in current.items())
        count = len(current.fulfillments())
        if total <= 0 or count == 0:
            return
        if count == total:
            yield self.passed(f"fulfillment count ({count}) matches total item quantity in {ctx.current}")
        else:
            yield self.passed(
                f"fulfillment count={count}, total qty={format_number(total)} in {ctx.current}"
            )

class FulfillmentIdsOnItems(InvariantRule):
    """REF-010: every order item points at its fulfillments."""

    def __init__(self):
        super().__init__(
            id="ref_010_item_fulfillment_ids",
            statement="every order item MUST carry a non-empty fulfillment_ids list",
            family=RuleFamily.REFERENTIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        items = [i for i in current.items() if isinstance(i, dict)]
        if not items:
            return
        missing = [entity_id(i) or "?" for i in items if not is_present(i.get('fulfillment_ids'))]
        if missing:
            yield self.failed(
                f"items missing fulfillment_ids in {ctx.current}: {', '.join(missing)}",
                missing=missing
            )
        else:
            yield self.passed(f"all items have fulfillment_ids in {ctx.current}")

# ============================================
# BILLING / PAYMENT / ORDER
# ============================================

class BillingConsistency(InvariantRule):
    """REF-011: billing name, email and phone persist."""

    def __init__(self, fields=BILLING_FIELDS):
        super().__init__(
            id="ref_011_billing",
            statement="billing name/email/phone MUST match the prior action when both declare them",
            family=RuleFamily.REFERENTIAL
        )
        self.fields = tuple(fields)

    def evaluate(self, current, prior, ctx):
        cur_billing = current.order.get('billing')
        prior_billing = prior.get('billing')
        if not isinstance(cur_billing, dict) or not isinstance(prior_billing, dict):
            return
        compared = 0
        mismatched = False
        for name in self.fields:
            cur = cur_billing.get(name)
            before = prior_billing.get(name)
            if not is_present(cur) or not is_present(before):
                continue
            compared += 1
            if str(cur) != str(before):
                mismatched = True
                yield self.failed(
                    f"billing.{name} mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                    field=f"billing.{name}", prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )
        if compared and not mismatched:
            yield self.passed(f"billing details consistent: {ctx.current} matches {ctx.prior}")

class PaymentTermsConsistency(InvariantRule):
    """REF-012: payment type and collecting party persist."""

    def __init__(self, fields=("type", "collected_by")):
        super().__init__(
            id="ref_012_payment_terms",
            statement="payment type and collected_by MUST match the prior action",
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.CRITICAL
        )
        self.fields = tuple(fields)

    def evaluate(self, current, prior, ctx):
        cur_payments = current.payments()
        prior_payments = as_list(prior.get('payments'))
        if not cur_payments or not prior_payments:
            return
        for name in self.fields:
            cur = dig(cur_payments[0], name)
            before = dig(prior_payments[0], name)
            if not is_present(cur) or not is_present(before):
                continue
            if cur == before:
                yield self.passed(f"payment {name} consistent ({cur}): {ctx.current} matches {ctx.prior}")
            else:
                yield self.failed(
                    f"payment {name} mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                    field=f"payment.{name}", prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )

class SettlementTermsConsistency(InvariantRule):
    """REF-013: SETTLEMENT_TERMS tag values persist."""

    def __init__(self, fields=SETTLEMENT_TERMS_FIELDS):
        super().__init__(
            id="ref_013_settlement_terms",
            statement="SETTLEMENT_TERMS values MUST match the prior action when both declare them",
            family=RuleFamily.REFERENTIAL
        )
        self.fields = tuple(fields)

    def evaluate(self, current, prior, ctx):
        cur_payments = current.payments()
        prior_payments = as_list(prior.get('payments'))
        if not cur_payments or not prior_payments:
            return
        for name in self.fields:
            cur = first_tag_value(cur_payments, "SETTLEMENT_TERMS", name)
            before = first_tag_value(prior_payments, "SETTLEMENT_TERMS", name)
            if cur is None or before is None:
                continue
            if cur == before:
                yield self.passed(f"{name} consistent ({cur}): {ctx.current} matches {ctx.prior}")
            else:
                yield self.failed(
                    f"{name} mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                    field=name, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )

class OrderIdConsistency(InvariantRule):
    """REF-014: the order id assigned at confirmation is stable."""

    def __init__(self):
        super().__init__(
            id="ref_014_order_id",
            statement="order id MUST equal the order id of the prior action",
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        cur = current.order_id
        before = entity_id(prior.get('order_id'))
        if cur is None or before is None:
            return
        if cur == before:
            yield self.passed(f"order_id consistent ({cur}): {ctx.current} matches {ctx.prior}")
        else:
            yield self.failed(
                f"order_id mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                field="order_id", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

class QuoteTotalConsistency(InvariantRule):
    """REF-015: the agreed quote total does not drift."""

    def __init__(self, id="ref_015_quote_total", statement="quote total MUST equal the quote total of the prior action"):
        super().__init__(
            id=id,
            statement=statement,
            family=RuleFamily.REFERENTIAL,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        cur = parse_number(dig(current.quote(), 'price', 'value'))
        before = parse_number(dig(prior.get('quote'), 'price', 'value'))
        if cur is None or before is None:
            return
        if round2(cur) == round2(before):
            yield self.passed(
                f"quote total consistent: {ctx.prior}({format_number(before)}) == {ctx.current}({format_number(cur)})"
            )
        else:
            yield self.failed(
                f"quote total mismatch: {ctx.prior}({format_number(before)}) vs {ctx.current}({format_number(cur)})",
                field="quote.price.value", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

def quote_unchanged_after_update() -> QuoteTotalConsistency:
    return QuoteTotalConsistency(
        id="ref_016_quote_unchanged_after_update",
        statement="a receiver update MUST NOT change the quote total"
    )

class ReceiverContactPersistence(InvariantRule):
    """REF-017: receiver contact on a fulfillment's first stop persists."""

    def __init__(self):
        super().__init__(
            id="ref_017_receiver_contact",
            statement="fulfillment stops[0].contact email/phone MUST match the prior action",
            family=RuleFamily.REFERENTIAL
        )

    def evaluate(self, current, prior, ctx):
        prior_by_id = index_by_id(prior.get('fulfillments'))
        for fid, fulfillment in index_by_id(current.fulfillments()).items():
            cur_contact = dig(fulfillment, 'stops', 0, 'contact')
            prior_contact = dig(prior_by_id.get(fid), 'stops', 0, 'contact')
            if not isinstance(cur_contact, dict) or not isinstance(prior_contact, dict):
                continue
            compared = [
                f for f in ("email", "phone")
                if is_present(cur_contact.get(f)) and is_present(prior_contact.get(f))
            ]
            if not compared:
                continue
            changed = [f for f in compared if cur_contact.get(f) != prior_contact.get(f)]
            if changed:
                yield self.failed(
                    f"receiver {'/'.join(changed)} changed for fulfillment {fid}: {ctx.prior} vs {ctx.current}",
                    fulfillment_id=fid, fields=changed
                )
            else:
                yield self.passed(f"receiver contact persists for fulfillment {fid}: {ctx.current} matches {ctx.prior}")

# ============================================
# COMPOSITES
# ============================================

def cross_action_consistency(item_mode: SetMode = SetMode.CARRIED_FORWARD) -> CompositeRule:
    """Provider, items, billing, fulfillments, payment terms and offers against one prior action."""
    return CompositeRule(
        id="ref_all_cross_action",
        statement="Order entities are consistent with the prior action",
        members=[
            ProviderConsistency(),
            ItemIdConsistency(item_mode),
            ItemPriceConsistency(),
            ItemQuantityConsistency(),
            BillingConsistency(),
            FulfillmentIdConsistency(),
            FulfillmentTypeConsistency(),
            PaymentTermsConsistency(),
            OfferIdConsistency(),
        ],
        family=RuleFamily.REFERENTIAL
    )
