"""
Beckn Flow Conformance (BFC) - Rule Test Suite
Version: 1.0.0

Coverage for the invariant rule library:
- Payload helpers (parsing, rounding, tags, ids)
- Ledger semantics (skip vs pass vs fail)
- Context, referential, financial and lifecycle families
- Skip-on-absence for every rule that needs a prior snapshot
"""

import copy
import pytest

from bfc_ledger_v1 import RuleOutcome, RuleResult, ValidationLedger
from bfc_payload_v1 import (
    Payload,
    decimal_places,
    format_number,
    get_tag_value,
    ids_of,
    parse_number,
    parse_timestamp,
    round2,
)
from bfc_profiles_v1 import GENERIC_PROFILE, GIFT_CARD_V210, HEALTH_INSURANCE_V201, get_profile
from bfc_rules_base_v1 import InvariantRule, RuleContext, RuleFamily
from bfc_rules_context_v1 import (
    DomainVersionLiteral,
    LocationConsistency,
    MessageIdMatch,
    MessageIdUniqueness,
    ParticipantConsistency,
    SellerAbsentAtSearch,
    TimestampOrdering,
    TransactionIdConsistency,
    context_consistency,
    MESSAGE_ID_MATCH,
    MESSAGE_ID_UNIQUE,
)
from bfc_rules_referential_v1 import (
    BillingConsistency,
    CatalogMembership,
    FulfillmentCountVsQuantity,
    FulfillmentIdConsistency,
    FulfillmentIdsOnItems,
    FulfillmentTypeConsistency,
    ItemIdConsistency,
    ItemPriceConsistency,
    ItemQuantityConsistency,
    OfferIdConsistency,
    OrderIdConsistency,
    PaymentTermsConsistency,
    ProviderConsistency,
    QuoteTotalConsistency,
    ReceiverContactPersistence,
    SetMode,
    SettlementTermsConsistency,
    cross_action_consistency,
    quote_unchanged_after_update,
)
from bfc_rules_financial_v1 import (
    BreakupItemPriceIntegrity,
    BuyerFinderFeeArithmetic,
    ItemQuantityZeroOnCancel,
    OfferBreakupNonPositive,
    PaymentAmountMatchesQuote,
    PriceDecimalPrecision,
    QuoteBreakupSum,
    QuoteCurrencyUniform,
    QuoteZeroedOnCancel,
    SettlementAmountConsistency,
    all_financials,
    within_tolerance,
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

# ============================================
# FIXTURES & BUILDERS
# ============================================

def make_context(action="on_select", **overrides):
    context = {
        "domain": "ONDC:FIS10",
        "version": "2.1.0",
        "action": action,
        "transaction_id": "txn-001",
        "message_id": "msg-001",
        "timestamp": "2024-05-01T10:00:00.000Z",
        "bap_id": "buyer.example.com",
        "bap_uri": "https://buyer.example.com/beckn",
        "bpp_id": "seller.example.com",
        "bpp_uri": "https://seller.example.com/beckn",
        "location": {"city": {"code": "std:080"}, "country": {"code": "IND"}}
    }
    context.update(overrides)
    return context

def make_message(action="on_select", order=None, message=None, **context_overrides):
    body = dict(message or {})
    if order is not None:
        body["order"] = order
    return {"context": make_context(action, **context_overrides), "message": body}

def prior_from_context(**overrides):
    """Snapshot shape produced by the shipped extraction specs."""
    context = make_context(**overrides)
    return {
        "transaction_id": context["transaction_id"],
        "message_id": context["message_id"],
        "timestamp": context["timestamp"],
        "bap_id": context["bap_id"],
        "bap_uri": context["bap_uri"],
        "bpp_id": context["bpp_id"],
        "bpp_uri": context["bpp_uri"],
        "location": context["location"]
    }

def item(item_id, price=None, qty=None, **extra):
    entity = {"id": item_id}
    if price is not None:
        entity["price"] = {"currency": "INR", "value": str(price)}
    if qty is not None:
        entity["quantity"] = {"selected": {"count": qty}}
    entity.update(extra)
    return entity

def tag(code, **values):
    return {
        "descriptor": {"code": code},
        "list": [{"descriptor": {"code": k}, "value": str(v)} for k, v in values.items()]
    }

def quote(total, rows=(), currency="INR"):
    return {
        "price": {"currency": currency, "value": str(total)},
        "breakup": [
            {"title": title, "price": {"currency": currency, "value": str(value)}}
            for title, value in rows
        ]
    }

def run(rule, current, prior=None, action="on_select", prior_action="select", profile=GENERIC_PROFILE):
    ledger = ValidationLedger()
    rule.check(current, prior, ledger, RuleContext(profile, action, prior_action))
    return ledger

# ============================================
# PAYLOAD HELPERS
# ============================================

class TestPayloadHelpers:
    """Parsing and formatting used by every rule."""

    @pytest.mark.parametrize("raw,expected", [
        ("12.50", 12.5),
        (" 7 ", 7.0),
        (3, 3.0),
        ("abc", None),
        ("", None),
        (None, None),
        (True, None),
        ("nan", None),
    ])
    def test_parse_number(self, raw, expected):
        assert parse_number(raw) == expected

    def test_round2_rounds_halves_up(self):
        assert round2(0.125) == 0.13
        assert round2(10.0) == 10.0

    @pytest.mark.parametrize("value,text", [(20.0, "20"), (50.5, "50.5"), (-0.0, "0"), (None, "None")])
    def test_format_number(self, value, text):
        assert format_number(value) == text

    def test_decimal_places(self):
        assert decimal_places("10.123") == 3
        assert decimal_places("10") == 0
        assert decimal_places("abc") is None

    def test_parse_timestamp_accepts_long_fractions(self):
        stamp = parse_timestamp("2024-05-01T10:00:00.123456789Z")
        assert stamp is not None
        assert stamp.microsecond == 123456
        assert parse_timestamp("not a time") is None

    def test_get_tag_value(self):
        tags = [tag("BUYER_FINDER_FEES", BUYER_FINDER_FEES_PERCENTAGE=10)]
        assert get_tag_value(tags, "BUYER_FINDER_FEES", "BUYER_FINDER_FEES_PERCENTAGE") == "10"
        assert get_tag_value(tags, "BUYER_FINDER_FEES", "MISSING") is None
        assert get_tag_value(None, "X", "Y") is None

    def test_ids_of_accepts_entities_and_ids(self):
        assert ids_of([{"id": "A"}, "B", {"id": "A"}, {"no": "id"}]) == ["A", "B"]

    def test_payload_order_id_falls_back_to_message(self):
        payload = Payload(make_message("cancel", message={"order_id": "O-1"}))
        assert payload.order_id == "O-1"
        assert Payload("garbage").items() == []

# ============================================
# LEDGER
# ============================================

class TestValidationLedger:
    """Pass/fail/skip bookkeeping."""

    def test_failed_details_are_echoed_in_response(self):
        ledger = ValidationLedger()
        ledger.record(RuleResult.failed("r1", "boom", field="x"))
        ledger.record(RuleResult.passed("r2", "ok"))
        assert ledger.failed == ["boom"]
        assert ledger.passed == ["ok"]
        assert ledger.response == {"r1": [{"field": "x"}]}
        assert not ledger.is_valid

    def test_skipped_result_leaves_ledger_untouched(self):
        ledger = ValidationLedger()
        ledger.record(RuleResult.skipped("r1", "no prior"))
        assert ledger.nothing_checked
        assert ledger.to_dict() == ValidationLedger().to_dict()

    def test_configuration_error_is_a_distinct_failure(self):
        ledger = ValidationLedger()
        ledger.note_configuration_error("unsupported action")
        assert ledger.failed == ["unsupported action"]
        assert ledger.configuration_errors == ["unsupported action"]

    def test_merge(self):
        a, b = ValidationLedger(), ValidationLedger()
        a.record(RuleResult.failed("r1", "first", n=1))
        b.record(RuleResult.failed("r1", "second", n=2))
        b.note_skipped("r2", "no snapshot")
        a.merge(b)
        assert a.failed == ["first", "second"]
        assert a.response["r1"] == [{"n": 1}, {"n": 2}]
        assert a.summary()["skipped"] == 1

# ============================================
# SKIP-ON-ABSENCE
# ============================================

RULES_REQUIRING_PRIOR = [
    TransactionIdConsistency(),
    MessageIdMatch(),
    MessageIdUniqueness(),
    ParticipantConsistency(),
    TimestampOrdering(),
    LocationConsistency(),
    context_consistency(MESSAGE_ID_MATCH),
    ProviderConsistency(),
    ItemIdConsistency(),
    ItemIdConsistency(SetMode.EXACT),
    OfferIdConsistency(),
    FulfillmentIdConsistency(),
    FulfillmentTypeConsistency(),
    CatalogMembership(),
    ItemQuantityConsistency(),
    ItemPriceConsistency(),
    BillingConsistency(),
    PaymentTermsConsistency(),
    SettlementTermsConsistency(),
    OrderIdConsistency(),
    QuoteTotalConsistency(),
    quote_unchanged_after_update(),
    ReceiverContactPersistence(),
    cross_action_consistency(),
    OrderStatusTransition(),
    FulfillmentStateProgression(),
    OrderTimestampsIntegrity(),
    PaymentStatusProgression(),
]

class TestSkipOnAbsence:
    """A rule that needs a prior snapshot must not touch the ledger without one."""

    @pytest.mark.parametrize("rule", RULES_REQUIRING_PRIOR, ids=lambda r: r.id)
    def test_ledger_unchanged_without_prior(self, rule):
        current = make_message(order={
            "id": "O-1",
            "status": "ACCEPTED",
            "provider": {"id": "P1"},
            "items": [item("i1", 100, 1)],
            "quote": quote(100, [("item", 100)])
        })
        ledger = ValidationLedger()
        ledger.record(RuleResult.passed("seed", "pre-existing entry"))
        before = copy.deepcopy(ledger.to_dict())

        results = rule.check(current, None, ledger, RuleContext(GENERIC_PROFILE, "on_select", "select"))

        assert ledger.to_dict() == before
        assert all(r.outcome == RuleOutcome.SKIPPED for r in results)

    def test_rule_exception_is_reported_as_skip(self):
        """A rule that blows up is skipped, never raised."""

        class Exploding(InvariantRule):
            def __init__(self):
                super().__init__("test_explode", "always raises", RuleFamily.CONTEXT, requires_prior=False)

            def evaluate(self, current, prior, ctx):
                raise RuntimeError("boom")
                yield

        ledger = ValidationLedger()
        results = Exploding().check(make_message(), None, ledger)
        assert results[0].outcome == RuleOutcome.SKIPPED
        assert ledger.nothing_checked

# ============================================
# CONTEXT FAMILY
# ============================================

class TestContextRules:
    """Context consistency between actions."""

    def test_transaction_id_mismatch_names_both_values(self):
        ledger = run(TransactionIdConsistency(), make_message(transaction_id="txn-002"), prior_from_context())
        assert len(ledger.failed) == 1
        assert "select(txn-001)" in ledger.failed[0]
        assert "on_select(txn-002)" in ledger.failed[0]

    def test_message_id_match_and_uniqueness_are_opposites(self):
        current = make_message(message_id="msg-001")
        prior = prior_from_context(message_id="msg-001")
        assert run(MessageIdMatch(), current, prior).failed == []
        assert len(run(MessageIdUniqueness(), current, prior).failed) == 1

    def test_domain_version_literal_uses_profile(self):
        current = make_message("search", domain="ONDC:FIS11")
        ledger = run(DomainVersionLiteral(), current, action="search", profile=GIFT_CARD_V210)
        assert len(ledger.failed) == 1
        assert "ONDC:FIS10" in ledger.failed[0]
        assert len(ledger.passed) == 1  # version matches

    def test_domain_version_literal_not_evaluated_for_generic_profile(self):
        ledger = run(DomainVersionLiteral(), make_message("search"), action="search")
        assert ledger.nothing_checked

    def test_seller_absent_in_search(self):
        ledger = run(SellerAbsentAtSearch(), make_message("search"), action="search")
        assert len(ledger.failed) == 1
        clean = make_message("search", bpp_id=None, bpp_uri=None)
        assert run(SellerAbsentAtSearch(), clean, action="search").failed == []

    def test_timestamp_must_not_go_backwards(self):
        prior = prior_from_context(timestamp="2024-05-01T10:00:05.000Z")
        ledger = run(TimestampOrdering(), make_message(timestamp="2024-05-01T10:00:00.000Z"), prior)
        assert len(ledger.failed) == 1

    def test_location_city_mismatch(self):
        prior = prior_from_context(location={"city": {"code": "std:011"}, "country": {"code": "IND"}})
        ledger = run(LocationConsistency(), make_message(), prior)
        assert len(ledger.failed) == 1
        assert "city" in ledger.failed[0]
        assert len(ledger.passed) == 1

    def test_participant_change_detected(self):
        ledger = run(ParticipantConsistency(), make_message(bpp_id="other.example.com"), prior_from_context())
        assert len(ledger.failed) == 1
        assert "bpp_id" in ledger.failed[0]

    def test_composite_runs_every_member(self):
        ledger = run(context_consistency(MESSAGE_ID_MATCH), make_message(), prior_from_context())
        assert ledger.failed == []
        assert any("message_id matches" in m for m in ledger.passed)
        assert any("transaction_id consistent" in m for m in ledger.passed)

    def test_composite_rejects_unknown_mode(self):
        with pytest.raises(ValueError):
            context_consistency("sometimes")

    def test_composite_unique_mode(self):
        rule = context_consistency(MESSAGE_ID_UNIQUE)
        ledger = run(rule, make_message(message_id="msg-002"), prior_from_context())
        assert any("message_id unique" in m for m in ledger.passed)

# ============================================
# REFERENTIAL FAMILY
# ============================================

class TestReferentialSets:
    """Set comparisons on ids, in both directions."""

    def test_missing_item_listed_exactly(self):
        prior = {"items": [{"id": "A"}, {"id": "B"}, {"id": "C"}]}
        current = make_message(order={"items": [{"id": "A"}, {"id": "B"}]})
        ledger = run(ItemIdConsistency(), current, prior)
        assert len(ledger.failed) == 1
        assert ledger.failed[0].endswith(": C")
        assert ledger.response["ref_002_item_ids_carried_forward"][0]["missing"] == ["C"]

    def test_superset_passes_when_carried_forward(self):
        prior = {"items": ["A", "B", "C"]}
        current = make_message(order={"items": [{"id": i} for i in "ABCD"]})
        ledger = run(ItemIdConsistency(), current, prior)
        assert ledger.failed == []
        assert len(ledger.passed) == 1

    def test_superset_fails_when_exact(self):
        prior = {"items": ["A", "B", "C"]}
        current = make_message(order={"items": [{"id": i} for i in "ABCD"]})
        ledger = run(ItemIdConsistency(SetMode.EXACT), current, prior)
        assert len(ledger.failed) == 1
        assert ledger.failed[0].endswith(": D")

    def test_membership_direction(self):
        prior = {"items": ["A", "B", "C"]}
        subset = make_message(order={"items": [{"id": "A"}]})
        outside = make_message(order={"items": [{"id": "A"}, {"id": "Z"}]})
        assert run(ItemIdConsistency(SetMode.MEMBERSHIP), subset, prior).failed == []
        ledger = run(ItemIdConsistency(SetMode.MEMBERSHIP), outside, prior)
        assert len(ledger.failed) == 1
        assert "Z" in ledger.failed[0]

    def test_dropped_offer_fails(self):
        prior = {"offers": [{"id": "O1"}]}
        ledger = run(OfferIdConsistency(), make_message(order={"items": []}), prior)
        assert len(ledger.failed) == 1
        assert "O1" in ledger.failed[0]

    def test_absent_prior_ids_not_evaluated(self):
        ledger = run(ItemIdConsistency(), make_message(order={"items": [{"id": "A"}]}), {"items": None})
        assert ledger.nothing_checked

    def test_catalog_membership(self):
        prior = {"providers": [
            {"id": "P1", "items": [{"id": "i1"}, {"id": "i2"}], "fulfillments": [{"id": "F1"}]},
            {"id": "P2", "items": [{"id": "i9"}]}
        ]}
        current = make_message("select", order={
            "provider": {"id": "P1"},
            "items": [{"id": "i1"}, {"id": "i9"}],
            "fulfillments": [{"id": "F1"}]
        })
        ledger = run(CatalogMembership(), current, prior, action="select", prior_action="on_search")
        assert len(ledger.failed) == 1
        assert "i9" in ledger.failed[0]
        assert len(ledger.passed) == 2  # provider, fulfillments

    def test_unknown_provider_in_selection(self):
        prior = {"providers": [{"id": "P1", "items": [{"id": "i1"}]}]}
        current = make_message("select", order={"provider": {"id": "PX"}})
        ledger = run(CatalogMembership(), current, prior, action="select", prior_action="on_search")
        assert len(ledger.failed) == 1
        assert "PX" in ledger.failed[0]

class TestReferentialValues:
    """Per-entity value persistence."""

    def test_item_price_mismatch_names_item_actions_and_values(self):
        prior = {"items": [item("i1", 100), item("i2", 20)]}
        current = make_message(order={"items": [item("i1", 100), item("i2", 25)]})
        ledger = run(ItemPriceConsistency(), current, prior)
        assert len(ledger.failed) == 1
        message = ledger.failed[0]
        for token in ("i2", "select(20)", "on_select(25)"):
            assert token in message

    def test_item_price_accepts_flattened_price(self):
        prior = {"items": [{"id": "i1", "price": 100}]}
        current = make_message(order={"items": [item("i1", "100.00")]})
        ledger = run(ItemPriceConsistency(), current, prior)
        assert ledger.failed == []
        assert len(ledger.passed) == 1

    def test_item_quantity_mismatch(self):
        prior = {"items": [item("i1", qty=2)]}
        current = make_message(order={"items": [item("i1", qty=3)]})
        ledger = run(ItemQuantityConsistency(), current, prior)
        assert len(ledger.failed) == 1
        assert "select(2)" in ledger.failed[0]

    def test_fulfillment_count_is_informational(self):
        current = make_message(order={
            "items": [item("i1", qty=3)],
            "fulfillments": [{"id": "F1"}]
        })
        ledger = run(FulfillmentCountVsQuantity(), current)
        assert ledger.failed == []
        assert len(ledger.passed) == 1

    def test_fulfillment_ids_presence(self):
        current = make_message(order={"items": [item("i1", fulfillment_ids=["F1"]), item("i2")]})
        ledger = run(FulfillmentIdsOnItems(), current)
        assert len(ledger.failed) == 1
        assert "i2" in ledger.failed[0]

    def test_fulfillment_type_change(self):
        prior = {"fulfillments": [{"id": "F1", "type": "DIGITAL"}]}
        current = make_message(order={"fulfillments": [{"id": "F1", "type": "PHYSICAL"}]})
        ledger = run(FulfillmentTypeConsistency(), current, prior)
        assert len(ledger.failed) == 1

    def test_billing_email_change(self):
        prior = {"billing": {"name": "Asha", "email": "a@example.com", "phone": "9999999999"}}
        current = make_message(order={"billing": {"name": "Asha", "email": "b@example.com"}})
        ledger = run(BillingConsistency(), current, prior)
        assert len(ledger.failed) == 1
        assert "billing.email" in ledger.failed[0]

    def test_payment_collected_by_change(self):
        prior = {"payments": [{"type": "PRE-ORDER", "collected_by": "BAP"}]}
        current = make_message(order={"payments": [{"type": "PRE-ORDER", "collected_by": "BPP"}]})
        ledger = run(PaymentTermsConsistency(), current, prior)
        assert len(ledger.failed) == 1
        assert len(ledger.passed) == 1

    def test_settlement_terms_change(self):
        prior = {"payments": [{"tags": [tag("SETTLEMENT_TERMS", SETTLEMENT_WINDOW="P1D", SETTLEMENT_BASIS="DELIVERY")]}]}
        current = make_message(order={"payments": [
            {"tags": [tag("SETTLEMENT_TERMS", SETTLEMENT_WINDOW="P2D", SETTLEMENT_BASIS="DELIVERY")]}
        ]})
        ledger = run(SettlementTermsConsistency(), current, prior)
        assert len(ledger.failed) == 1
        assert "SETTLEMENT_WINDOW" in ledger.failed[0]

    def test_order_id_from_cancel_request(self):
        current = make_message("cancel", message={"order_id": "O-2"})
        ledger = run(OrderIdConsistency(), current, {"order_id": "O-1"}, action="cancel", prior_action="on_confirm")
        assert len(ledger.failed) == 1

    def test_quote_unchanged_after_update(self):
        prior = {"quote": quote("120.00")}
        current = make_message("on_update", order={"quote": quote("120")})
        ledger = run(quote_unchanged_after_update(), current, prior, action="on_update", prior_action="on_confirm")
        assert ledger.failed == []
        changed = make_message("on_update", order={"quote": quote("130")})
        assert len(run(quote_unchanged_after_update(), changed, prior).failed) == 1

    def test_receiver_contact_change(self):
        prior = {"fulfillments": [{"id": "F1", "stops": [{"contact": {"email": "r@example.com", "phone": "1"}}]}]}
        current = make_message("on_status", order={
            "fulfillments": [{"id": "F1", "stops": [{"contact": {"email": "x@example.com", "phone": "1"}}]}]
        })
        ledger = run(ReceiverContactPersistence(), current, prior, action="on_status", prior_action="on_confirm")
        assert len(ledger.failed) == 1
        assert "email" in ledger.failed[0]

    def test_receiver_contact_without_shared_fields_checks_nothing(self):
        prior = {"fulfillments": [{"id": "F1", "stops": [{"contact": {"email": "r@example.com"}}]}]}
        current = make_message("on_status", order={
            "fulfillments": [{"id": "F1", "stops": [{"contact": {"phone": "9999999999"}}]}]
        })
        ledger = run(ReceiverContactPersistence(), current, prior, action="on_status", prior_action="on_confirm")
        assert ledger.passed == []
        assert ledger.failed == []
        assert ledger.checked_count == 0

# ============================================
# FINANCIAL FAMILY
# ============================================

class TestQuoteArithmetic:
    """Breakup sums, item rows and offers."""

    @pytest.mark.parametrize("total,rows,ok", [
        ("120.00", ["100", "20"], True),
        ("120.00", ["100", "19.99"], True),
        ("120.00", ["100", "19.98"], False),
        ("0.3", ["0.1", "0.2"], True),
        ("125.00", ["100", "20"], False),
    ])
    def test_breakup_sum(self, total, rows, ok):
        current = make_message(order={"quote": quote(total, [(f"row{i}", v) for i, v in enumerate(rows)])})
        ledger = run(QuoteBreakupSum(), current)
        assert (ledger.failed == []) is ok
        assert ledger.checked_count == 1

    def test_breakup_sum_failure_reports_both_values(self):
        current = make_message(order={"quote": quote("120", [("a", "100"), ("b", "19.50")])})
        ledger = run(QuoteBreakupSum(), current)
        assert "120" in ledger.failed[0]
        assert "119.5" in ledger.failed[0]

    def test_non_numeric_breakup_row_fails(self):
        current = make_message(order={"quote": quote("120", [("base", "100.00"), ("tax", "20,00")])})
        ledger = run(QuoteBreakupSum(), current)
        assert ledger.failed == ["[fin_001_breakup_sum] non-numeric breakup price in on_select: tax"]
        assert not any("!= breakup sum" in m for m in ledger.failed)
        assert ledger.passed == []

    @pytest.mark.parametrize("a,b,ok", [
        (100.0, 100.01, True),
        (100.0, 100.02, False),
        (10.0, 9.99, True),
        (10.0, 9.98, False),
    ])
    def test_tolerance_bounds(self, a, b, ok):
        assert within_tolerance(a, b) is ok
        assert within_tolerance(b, a) is ok

    @pytest.mark.parametrize("a,b", [(0.0, 0.015), (1.0, 1.015), (120.0, 119.985)])
    def test_tolerance_ignores_sign_of_half_cent_difference(self, a, b):
        assert within_tolerance(a, b) == within_tolerance(b, a)

    def test_item_row_equals_unit_price_times_quantity(self):
        order = {
            "items": [item("i1", 100, 2)],
            "quote": {"price": {"value": "200"}, "breakup": [
                {"@ondc/org/item_id": "i1", "@ondc/org/title_type": "item", "price": {"value": "200"}}
            ]}
        }
        assert run(BreakupItemPriceIntegrity(), make_message(order=order)).failed == []
        order["quote"]["breakup"][0]["price"]["value"] = "150"
        ledger = run(BreakupItemPriceIntegrity(), make_message(order=order))
        assert len(ledger.failed) == 1
        assert "200" in ledger.failed[0]

    def test_item_row_without_quantity(self):
        order = {
            "items": [item("i1", 500)],
            "quote": {"price": {"value": "500"}, "breakup": [
                {"title": "BASE_PRICE", "item": {"id": "i1"}, "price": {"value": "500"}}
            ]}
        }
        health = run(BreakupItemPriceIntegrity(), make_message(order=order), profile=HEALTH_INSURANCE_V201)
        assert len(health.passed) == 1
        generic = run(BreakupItemPriceIntegrity(), make_message(order=order))
        assert generic.nothing_checked

    def test_offer_row_must_not_be_positive(self):
        current = make_message(order={"quote": quote("90", [("item", "100"), ("offer", "10")])})
        ledger = run(OfferBreakupNonPositive(), current)
        assert len(ledger.failed) == 1

class TestPaymentArithmetic:
    """Payment amount, buyer-finder fee and settlement."""

    @pytest.mark.parametrize("amount,ok", [("120.00", True), ("120", True), ("119", False), ("abc", False)])
    def test_payment_amount_matches_quote(self, amount, ok):
        current = make_message(order={"quote": quote("120"), "payments": [{"params": {"amount": amount}}]})
        ledger = run(PaymentAmountMatchesQuote(), current)
        assert (ledger.failed == []) is ok

    @pytest.mark.parametrize("declared,ok", [("50.00", True), ("50", True), ("50.01", False)])
    def test_buyer_finder_fee_amount(self, declared, ok):
        payments = [{"tags": [tag(
            "BUYER_FINDER_FEES",
            BUYER_FINDER_FEES_PERCENTAGE="10",
            BUYER_FINDER_FEES_AMOUNT=declared
        )]}]
        current = make_message(order={"quote": quote("500.00"), "payments": payments})
        ledger = run(BuyerFinderFeeArithmetic(), current)
        assert (ledger.failed == []) is ok
        if not ok:
            assert "expected 50.00" in ledger.failed[0]
            assert ledger.response["fin_005_buyer_finder_fee"][0]["expected"] == 50.0

    @pytest.mark.parametrize("pct,ok", [("10", True), ("0", True), ("100", True), ("150", False)])
    def test_buyer_finder_fee_percentage_only(self, pct, ok):
        payments = [{"tags": [tag("BUYER_FINDER_FEES", BUYER_FINDER_FEES_PERCENTAGE=pct)]}]
        ledger = run(BuyerFinderFeeArithmetic(), make_message(order={"quote": quote("500"), "payments": payments}))
        assert (ledger.failed == []) is ok

    @pytest.mark.parametrize("collected_by,settlement,ok", [
        ("BAP", "450", True),
        ("BAP", "500", False),
        ("BPP", "500", True),
        ("BPP", "450", True),
        ("BPP", "400", False),
    ])
    def test_settlement_amount(self, collected_by, settlement, ok):
        payments = [{
            "collected_by": collected_by,
            "tags": [
                tag("BUYER_FINDER_FEES", BUYER_FINDER_FEES_PERCENTAGE="10"),
                tag("SETTLEMENT_TERMS", SETTLEMENT_AMOUNT=settlement)
            ]
        }]
        ledger = run(SettlementAmountConsistency(), make_message(order={"quote": quote("500"), "payments": payments}))
        assert (ledger.failed == []) is ok
        assert ledger.checked_count == 1

    def test_settlement_without_fee_collected_by_seller(self):
        payments = [{"collected_by": "BPP", "tags": [tag("SETTLEMENT_TERMS", SETTLEMENT_AMOUNT="450")]}]
        ledger = run(SettlementAmountConsistency(), make_message(order={"quote": quote("500"), "payments": payments}))
        assert len(ledger.failed) == 1

class TestCurrencyPrecisionAndCancel:
    """Currency, decimals and cancelled quotes."""

    def test_currency_must_be_uniform(self):
        q = quote("100", [("item", "100")])
        q["breakup"][0]["price"]["currency"] = "USD"
        ledger = run(QuoteCurrencyUniform(), make_message(order={"quote": q}))
        assert len(ledger.failed) == 1
        assert "USD" in ledger.failed[0]

    def test_decimal_precision(self):
        ledger = run(PriceDecimalPrecision(), make_message(order={"quote": quote("10.123", [("item", "10.123")])}))
        assert len(ledger.failed) == 1
        assert run(PriceDecimalPrecision(), make_message(order={"quote": quote("10.12")})).failed == []

    def test_quote_zeroed_on_cancel(self):
        zeroed = make_message("on_cancel", order={"quote": quote("0", [("item", "0"), ("offer", "0.00")])})
        assert run(QuoteZeroedOnCancel(), zeroed, action="on_cancel").failed == []
        live = make_message("on_cancel", order={"quote": quote("0", [("item", "100"), ("offer", "-100")])})
        ledger = run(QuoteZeroedOnCancel(), live, action="on_cancel")
        assert len(ledger.failed) == 1

    def test_item_quantity_zero_on_cancel(self):
        q = quote("0")
        q["breakup"] = [{"title": "item", "item": {"id": "i1", "quantity": {"selected": {"count": 1}}}, "price": {"value": "0"}}]
        ledger = run(ItemQuantityZeroOnCancel(), make_message("on_cancel", order={"quote": q}), action="on_cancel")
        assert len(ledger.failed) == 1
        assert "i1" in ledger.failed[0]

    def test_all_financials_composite(self):
        order = {
            "quote": quote("120.00", [("item", "100.00"), ("item", "20.00")]),
            "payments": [{"params": {"amount": "120.00"}, "collected_by": "BAP"}]
        }
        ledger = run(all_financials(), make_message(order=order))
        assert ledger.failed == []
        assert ledger.checked_count >= 3

# ============================================
# LIFECYCLE FAMILY
# ============================================

class TestOrderStatusMachine:
    """Order status transitions per profile."""

    @pytest.mark.parametrize("before,after,outcome", [
        ("ACCEPTED", "IN_PROGRESS", "pass"),
        ("IN_PROGRESS", "ACCEPTED", "fail"),
        ("CREATED", "ACCEPTED", "pass"),
        ("COMPLETED", "CANCELLED", "pass"),
        ("IN_PROGRESS", "CANCELLED", "pass"),
        ("COMPLETED", "IN_PROGRESS", "fail"),
        ("ON_HOLD", "ACCEPTED", "none"),
        ("ACCEPTED", "TELEPORTED", "none"),
    ])
    def test_generic_transitions(self, before, after, outcome):
        current = make_message("on_status", order={"status": after})
        ledger = run(OrderStatusTransition(), current, {"order_status": before}, action="on_status", prior_action="on_confirm")
        if outcome == "pass":
            assert len(ledger.passed) == 1 and ledger.failed == []
        elif outcome == "fail":
            assert len(ledger.failed) == 1 and ledger.passed == []
        else:
            assert ledger.nothing_checked

    def test_health_profile_does_not_blanket_allow_cancel(self):
        current = make_message("on_status", order={"status": "CANCELLED"})
        ok = run(OrderStatusTransition(), current, {"order_status": "ACTIVE"}, profile=HEALTH_INSURANCE_V201)
        assert ok.failed == []
        bad = run(OrderStatusTransition(), current, {"order_status": "COMPLETE"}, profile=HEALTH_INSURANCE_V201)
        assert len(bad.failed) == 1

    def test_expected_status_per_action(self):
        current = make_message("on_confirm", order={"status": "CREATED"})
        ledger = run(OrderStatusValue(), current, action="on_confirm", profile=GIFT_CARD_V210)
        assert ledger.failed == ["[lc_002_order_status_value] order.status should be ACCEPTED in on_confirm, got: CREATED"]
        assert run(OrderStatusValue(), current, action="on_status", profile=GIFT_CARD_V210).nothing_checked

class TestFulfillmentStateMachine:
    """Fulfillment progression with terminal states."""

    @pytest.mark.parametrize("before,after,outcome", [
        ("INITIATED", "PROCESSING", "pass"),
        ("PROCESSED", "PROCESSED", "pass"),
        ("PROCESSED", "PROCESSING", "fail"),
        ("PROCESSING", "REJECTED", "pass"),
        ("GRANTED", "CANCELLED", "pass"),
        ("CANCELLED", "PROCESSING", "fail"),
        ("UNKNOWN", "PROCESSED", "none"),
    ])
    def test_progression(self, before, after, outcome):
        state = lambda code: {"descriptor": {"code": code}}
        prior = {"fulfillments": [{"id": "F1", "state": state(before)}]}
        current = make_message("on_status", order={"fulfillments": [{"id": "F1", "state": state(after)}]})
        ledger = run(FulfillmentStateProgression(), current, prior, action="on_status", prior_action="on_confirm")
        if outcome == "pass":
            assert len(ledger.passed) == 1 and ledger.failed == []
        elif outcome == "fail":
            assert len(ledger.failed) == 1
        else:
            assert ledger.nothing_checked

    def test_all_fulfillments_cancelled(self):
        current = make_message("on_cancel", order={"fulfillments": [
            {"id": "F1", "state": {"descriptor": {"code": "CANCELLED"}}},
            {"id": "F2", "state": {"descriptor": {"code": "PENDING"}}}
        ]})
        ledger = run(AllFulfillmentsCancelled(), current, action="on_cancel")
        assert len(ledger.failed) == 1
        assert "F2(PENDING)" in ledger.failed[0]

class TestTimestampsAndPresence:
    """Order timestamps and presence assertions."""

    def test_created_at_immutable_and_updated_at_monotonic(self):
        prior = {"created_at": "2024-05-01T10:00:00.000Z", "updated_at": "2024-05-01T10:05:00.000Z"}
        current = make_message("on_status", order={
            "created_at": "2024-05-01T10:00:01.000Z",
            "updated_at": "2024-05-01T10:04:00.000Z"
        })
        ledger = run(OrderTimestampsIntegrity(), current, prior, action="on_status", prior_action="on_confirm")
        assert len(ledger.failed) == 2

    def test_created_before_updated(self):
        current = make_message("on_status", order={
            "created_at": "2024-05-01T11:00:00Z",
            "updated_at": "2024-05-01T10:00:00Z"
        })
        assert len(run(CreatedBeforeUpdated(), current).failed) == 1

    def test_payment_status_regression(self):
        prior = {"payments": [{"status": "PAID"}]}
        current = make_message("on_status", order={"payments": [{"status": "NOT-PAID"}]})
        assert len(run(PaymentStatusProgression(), current, prior).failed) == 1

    def test_cancellation_details(self):
        current = make_message("on_cancel", order={"cancellation": {"reason": {"id": "001"}}})
        ledger = run(CancellationDetails(), current, action="on_cancel")
        assert ledger.failed == ["[lc_008_cancellation_details] cancellation.cancelled_by missing in on_cancel"]
        assert len(ledger.passed) == 1

    def test_unknown_cancellation_reason(self):
        current = make_message("on_cancel", order={"cancellation": {"cancelled_by": "CONSUMER", "reason": {"id": "999"}}})
        ledger = run(CancellationDetails(), current, action="on_cancel")
        assert len(ledger.failed) == 1
        assert "999" in ledger.failed[0]

    def test_cancel_request_requires_buyer_reason(self):
        current = make_message("cancel", message={"order_id": "O-1", "cancellation_reason_id": "011"})
        ledger = run(CancelRequestFields(), current, action="cancel")
        assert len(ledger.passed) == 1
        assert len(ledger.failed) == 1

    def test_update_target_presence_is_the_assertion(self):
        ledger = run(UpdateTargetPresent(), make_message("update", order={"id": "O-1"}), action="update")
        assert ledger.failed == ["[lc_010_update_target] update_target missing in update"]
        present = make_message("update", message={"update_target": "fulfillments"})
        assert len(run(UpdateTargetPresent(), present, action="update").passed) == 1

# ============================================
# PROFILES
# ============================================

class TestProfiles:
    """Versioned lookup tables."""

    def test_unknown_domain_falls_back_to_generic(self):
        assert get_profile("ONDC:FIS99", "1.0.0") is GENERIC_PROFILE
        assert get_profile("ONDC:FIS10", "2.1.0") is GIFT_CARD_V210

    def test_generic_table_shape(self):
        assert GENERIC_PROFILE.allowed_order_targets("ACCEPTED") == ("IN_PROGRESS", "COMPLETED")
        assert GENERIC_PROFILE.allowed_order_targets("COMPLETED") == ()
        assert GENERIC_PROFILE.fulfillment_rank("PROCESSED") == 2
        assert GENERIC_PROFILE.fulfillment_rank("NOPE") is None

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
