"""
Beckn Flow Conformance (BFC) - Monetary Invariants
Version: 1.0.0

Quote arithmetic within a single message: breakup sums, item rows,
offers, payment amount, buyer-finder fee and settlement amount.

All money comparisons go through round2(); sums are accumulated as running
totals rounded after each addition so float drift never decides a verdict.
"""

from typing import Any, List, Optional

from bfc_payload_v1 import (
    breakup_currency,
    breakup_item_id,
    breakup_label,
    breakup_labels,
    breakup_price_raw,
    breakup_quantity,
    decimal_places,
    dig,
    get_tag_value,
    first_tag_value,
    format_number,
    index_by_id,
    is_present,
    parse_number,
    round2,
    selected_quantity,
)
from bfc_rules_base_v1 import CompositeRule, Criticality, InvariantRule, RuleFamily

TOLERANCE = 0.01

BFF_TAG = "BUYER_FINDER_FEES"
BFF_PERCENTAGE = "BUYER_FINDER_FEES_PERCENTAGE"
BFF_AMOUNT = "BUYER_FINDER_FEES_AMOUNT"
SETTLEMENT_TAG = "SETTLEMENT_TERMS"
SETTLEMENT_AMOUNT = "SETTLEMENT_AMOUNT"

def quote_total(current) -> Optional[float]:
    return parse_number(dig(current.quote(), 'price', 'value'))

def within_tolerance(a: float, b: float, tolerance: float = TOLERANCE) -> bool:
    """Compare rounded amounts; the epsilon absorbs float noise in the subtraction."""
    return abs(round2(a) - round2(b)) <= tolerance + 1e-9

def row_name(row: Any, index: int) -> str:
    return breakup_label(row) or f"breakup[{index}]"

# ============================================
# BREAKUP ARITHMETIC
# ============================================

class QuoteBreakupSum(InvariantRule):
    """FIN-001: quote total equals the sum of its breakup."""

    def __init__(self):
        super().__init__(
            id="fin_001_breakup_sum",
            statement="quote.price.value MUST equal the sum of quote.breakup (+/- 0.01)",
            family=RuleFamily.FINANCIAL,
            criticality=Criticality.CRITICAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        total = quote_total(current)
        rows = current.breakup()
        if total is None or not rows:
            return

        running = 0.0
        unparsable: List[str] = []
        for index, row in enumerate(rows):
            value = parse_number(breakup_price_raw(row))
            if value is None:
                unparsable.append(row_name(row, index))
                continue
            running = round2(running + value)

        if unparsable:
            yield self.failed(
                f"non-numeric breakup price in {ctx.current}: {', '.join(unparsable)}",
                rows=unparsable
            )
            return
        if within_tolerance(running, total):
            yield self.passed(
                f"quote total {format_number(total)} == breakup sum {format_number(running)} in {ctx.current}"
            )
        else:
            yield self.failed(
                f"quote total {format_number(total)} != breakup sum {format_number(running)} in {ctx.current}",
                field="quote.price.value", declared=total, computed=running
            )

class BreakupItemPriceIntegrity(InvariantRule):
    """FIN-002: an item row is unit price times selected quantity."""

    def __init__(self):
        super().__init__(
            id="fin_002_breakup_item_price",
            statement="breakup rows of item type MUST equal unit price x selected quantity",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        labels = ctx.profile.item_breakup_labels
        items = index_by_id(current.items())
        for index, row in enumerate(current.breakup()):
            if not any(label in labels for label in breakup_labels(row)):
                continue
            declared = parse_number(breakup_price_raw(row))
            item_id = breakup_item_id(row)
            order_item = items.get(item_id) if item_id else None

            unit = parse_number(dig(order_item, 'price', 'value'))
            if unit is None:
                unit = parse_number(dig(row, 'item', 'price', 'value'))
            qty = breakup_quantity(row)
            if qty is None:
                qty = selected_quantity(order_item)
            if qty is None and ctx.profile.item_rows_default_to_unit_quantity:
                qty = 1.0
            if declared is None or unit is None or qty is None:
                continue

            expected = round2(unit * qty)
            name = item_id or row_name(row, index)
            if round2(declared) == expected:
                yield self.passed(
                    f"item row {name}: {format_number(declared)} == "
                    f"{format_number(unit)} x {format_number(qty)} in {ctx.current}"
                )
            else:
                yield self.failed(
                    f"item row {name}: {format_number(declared)} != "
                    f"{format_number(unit)} x {format_number(qty)} = {format_number(expected)} in {ctx.current}",
                    item_id=item_id, declared=declared, unit_price=unit, quantity=qty, expected=expected
                )

class OfferBreakupNonPositive(InvariantRule):
    """FIN-003: an offer row reduces the total."""

    def __init__(self):
        super().__init__(
            id="fin_003_offer_non_positive",
            statement="breakup rows of offer type MUST be <= 0",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        labels = ctx.profile.offer_breakup_labels
        for index, row in enumerate(current.breakup()):
            if not any(label in labels for label in breakup_labels(row)):
                continue
            value = parse_number(breakup_price_raw(row))
            if value is None:
                continue
            name = breakup_item_id(row) or row_name(row, index)
            if value <= 0:
                yield self.passed(f"offer row {name} is {format_number(value)} (<= 0) in {ctx.current}")
            else:
                yield self.failed(
                    f"offer row {name} must be <= 0, got {format_number(value)} in {ctx.current}",
                    row=name, value=value
                )

# ============================================
# PAYMENT / FEES / SETTLEMENT
# ============================================

class PaymentAmountMatchesQuote(InvariantRule):
    """FIN-004: the buyer pays exactly the quote."""

    def __init__(self):
        super().__init__(
            id="fin_004_payment_amount",
            statement="payments[].params.amount MUST equal quote.price.value",
            family=RuleFamily.FINANCIAL,
            criticality=Criticality.CRITICAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        total = quote_total(current)
        if total is None:
            return
        for index, payment in enumerate(current.payments()):
            raw = dig(payment, 'params', 'amount')
            if not is_present(raw):
                continue
            amount = parse_number(raw)
            if amount is None:
                yield self.failed(
                    f"payment[{index}] params.amount is not numeric ({raw}) in {ctx.current}",
                    payment_index=index, amount=raw
                )
            elif round2(amount) == round2(total):
                yield self.passed(
                    f"payment[{index}] amount {format_number(amount)} == quote total in {ctx.current}"
                )
            else:
                yield self.failed(
                    f"payment[{index}] amount {format_number(amount)} != quote total "
                    f"{format_number(total)} in {ctx.current}",
                    payment_index=index, amount=amount, quote_total=total
                )

class BuyerFinderFeeArithmetic(InvariantRule):
    """FIN-005: declared BFF amount agrees with the declared percentage."""

    def __init__(self):
        super().__init__(
            id="fin_005_buyer_finder_fee",
            statement="BUYER_FINDER_FEES_AMOUNT MUST equal round2(percentage/100 x quote total)",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        payments = current.payments()
        pct = parse_number(first_tag_value(payments, BFF_TAG, BFF_PERCENTAGE))
        amount = parse_number(first_tag_value(payments, BFF_TAG, BFF_AMOUNT))
        if pct is None:
            return

        if amount is None:
            if 0 <= pct <= 100:
                yield self.passed(f"BFF percentage {format_number(pct)} within 0-100 in {ctx.current}")
            else:
                yield self.failed(
                    f"BFF percentage {format_number(pct)} outside 0-100 in {ctx.current}",
                    percentage=pct
                )
            return

        total = quote_total(current)
        if total is None:
            return
        expected = round2(pct / 100 * total)
        if round2(amount) == expected:
            yield self.passed(
                f"BFF amount {amount:.2f} == {format_number(pct)}% of {total:.2f} in {ctx.current}"
            )
        else:
            yield self.failed(
                f"BFF amount {amount:.2f} != expected {expected:.2f} "
                f"({format_number(pct)}% of {total:.2f}) in {ctx.current}",
                percentage=pct, declared=amount, expected=expected, quote_total=total
            )

def buyer_finder_fee(payment: Any, total: float, payments: List[Any]) -> float:
    """BFF amount for one payment: declared amount, else derived from the percentage."""
    tags = dig(payment, 'tags')
    amount = parse_number(get_tag_value(tags, BFF_TAG, BFF_AMOUNT))
    if amount is None:
        amount = parse_number(first_tag_value(payments, BFF_TAG, BFF_AMOUNT))
    if amount is not None:
        return round2(amount)
    pct = parse_number(get_tag_value(tags, BFF_TAG, BFF_PERCENTAGE))
    if pct is None:
        pct = parse_number(first_tag_value(payments, BFF_TAG, BFF_PERCENTAGE))
    if pct is not None:
        return round2(pct / 100 * total)
    return 0.0

class SettlementAmountConsistency(InvariantRule):
    """
    FIN-006: settlement amount follows from the collecting party.

    Collected by BAP: the BAP keeps its fee and settles total - BFF.
    Collected by BPP: either total or total - BFF is accepted, the protocol
    permits both settlement directions.
    """

    def __init__(self):
        super().__init__(
            id="fin_006_settlement_amount",
            statement="SETTLEMENT_AMOUNT MUST equal quote total minus BFF per the collecting party",
            family=RuleFamily.FINANCIAL,
            criticality=Criticality.CRITICAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        total = quote_total(current)
        if total is None:
            return
        payments = current.payments()
        for index, payment in enumerate(payments):
            settlement = parse_number(get_tag_value(dig(payment, 'tags'), SETTLEMENT_TAG, SETTLEMENT_AMOUNT))
            collected_by = dig(payment, 'collected_by')
            if settlement is None or collected_by not in ("BAP", "BPP"):
                continue

            bff = buyer_finder_fee(payment, total, payments)
            net = round2(total - bff)
            if collected_by == "BAP":
                accepted = [net]
            elif bff > 0:
                accepted = [round2(total), net]
            else:
                accepted = [round2(total)]

            shown = " or ".join(format_number(a) for a in accepted)
            if round2(settlement) in accepted:
                yield self.passed(
                    f"payment[{index}] settlement {format_number(settlement)} valid "
                    f"(collected_by={collected_by}, BFF={format_number(bff)}) in {ctx.current}"
                )
            else:
                yield self.failed(
                    f"payment[{index}] settlement {format_number(settlement)} != expected {shown} "
                    f"(collected_by={collected_by}, quote={format_number(total)}, BFF={format_number(bff)}) "
                    f"in {ctx.current}",
                    payment_index=index, declared=settlement, expected=accepted,
                    collected_by=collected_by, buyer_finder_fee=bff
                )

# ============================================
# CURRENCY & PRECISION
# ============================================

class QuoteCurrencyUniform(InvariantRule):
    """FIN-007: one currency per quote."""

    def __init__(self):
        super().__init__(
            id="fin_007_currency_uniform",
            statement="every breakup row MUST use the quote total currency",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        currency = dig(current.quote(), 'price', 'currency')
        rows = current.breakup()
        if not is_present(currency) or not rows:
            return
        mismatched = [
            f"{row_name(row, i)}({breakup_currency(row)})"
            for i, row in enumerate(rows)
            if is_present(breakup_currency(row)) and breakup_currency(row) != currency
        ]
        if mismatched:
            yield self.failed(
                f"breakup currency differs from quote currency {currency} in {ctx.current}: "
                f"{', '.join(mismatched)}",
                currency=currency, rows=mismatched
            )
        else:
            yield self.passed(f"quote currency {currency} uniform across breakup in {ctx.current}")

class PriceDecimalPrecision(InvariantRule):
    """FIN-008: amounts carry at most two decimals."""

    def __init__(self, max_places: int = 2):
        super().__init__(
            id="fin_008_decimal_precision",
            statement="quote, breakup and payment amounts MUST have at most 2 decimal places",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )
        self.max_places = max_places

    def evaluate(self, current, prior, ctx):
        amounts = [("quote.price.value", dig(current.quote(), 'price', 'value'))]
        for i, row in enumerate(current.breakup()):
            amounts.append((f"breakup {row_name(row, i)}", breakup_price_raw(row)))
        for i, payment in enumerate(current.payments()):
            amounts.append((f"payment[{i}].params.amount", dig(payment, 'params', 'amount')))

        offending = []
        checked = 0
        for name, raw in amounts:
            places = decimal_places(raw)
            if places is None:
                continue
            checked += 1
            if places > self.max_places:
                offending.append(f"{name}={raw}")
        if offending:
            yield self.failed(
                f"more than {self.max_places} decimal places in {ctx.current}: {', '.join(offending)}",
                values=offending
            )
        elif checked:
            yield self.passed(f"all amounts have <= {self.max_places} decimal places in {ctx.current}")

# ============================================
# CANCELLATION
# ============================================

class QuoteZeroedOnCancel(InvariantRule):
    """FIN-009: a cancelled order owes nothing."""

    def __init__(self):
        super().__init__(
            id="fin_009_quote_zeroed_on_cancel",
            statement="on cancellation quote total and every breakup row MUST be 0",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        total = quote_total(current)
        if total is None:
            return
        nonzero = []
        if round2(total) != 0:
            nonzero.append(f"quote.price.value={format_number(total)}")
        for i, row in enumerate(current.breakup()):
            value = parse_number(breakup_price_raw(row))
            if value is not None and round2(value) != 0:
                nonzero.append(f"{row_name(row, i)}={format_number(value)}")
        if nonzero:
            yield self.failed(
                f"quote not zeroed in {ctx.current}: {', '.join(nonzero)}",
                values=nonzero
            )
        else:
            yield self.passed(f"quote zeroed in {ctx.current}")

class ItemQuantityZeroOnCancel(InvariantRule):
    """FIN-010: breakup items of a cancelled order carry quantity 0."""

    def __init__(self):
        super().__init__(
            id="fin_010_item_quantity_zero_on_cancel",
            statement="on cancellation breakup item quantities MUST be 0",
            family=RuleFamily.FINANCIAL,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        nonzero = []
        checked = 0
        for i, row in enumerate(current.breakup()):
            qty = breakup_quantity(row)
            if qty is None:
                continue
            checked += 1
            if qty != 0:
                nonzero.append(f"{breakup_item_id(row) or row_name(row, i)}={format_number(qty)}")
        if nonzero:
            yield self.failed(
                f"breakup item quantities not zero in {ctx.current}: {', '.join(nonzero)}",
                values=nonzero
            )
        elif checked:
            yield self.passed(f"breakup item quantities zeroed in {ctx.current}")

# ============================================
# COMPOSITES
# ============================================

def all_financials() -> CompositeRule:
    return CompositeRule(
        id="fin_all",
        statement="Quote, payment and settlement arithmetic of the current action",
        members=[
            QuoteBreakupSum(),
            BreakupItemPriceIntegrity(),
            OfferBreakupNonPositive(),
            PaymentAmountMatchesQuote(),
            BuyerFinderFeeArithmetic(),
            SettlementAmountConsistency(),
            QuoteCurrencyUniform(),
            PriceDecimalPrecision(),
        ],
        family=RuleFamily.FINANCIAL
    )
