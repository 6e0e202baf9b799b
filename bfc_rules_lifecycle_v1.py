"""
Beckn Flow Conformance (BFC) - Lifecycle Invariants
Version: 1.0.0

Order status and fulfillment state as finite-state machines, order
timestamps, and the presence assertions of cancel/update exchanges.

Transition tables come from the DomainProfile. A transition touching a
state the profile does not know is not evaluated.
"""

from bfc_payload_v1 import (
    dig,
    entity_id,
    fulfillment_state,
    index_by_id,
    as_list,
    is_present,
    parse_timestamp,
)
from bfc_rules_base_v1 import Criticality, InvariantRule, RuleFamily

PAYMENT_STATUS_ORDER = ("NOT-PAID", "PAID")

# ============================================
# ORDER STATUS
# ============================================

class OrderStatusTransition(InvariantRule):
    """LC-001: order status moves along the profile's transition table."""

    def __init__(self):
        super().__init__(
            id="lc_001_order_transition",
            statement="order.status MUST be a legal transition from the prior order status",
            family=RuleFamily.LIFECYCLE,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        profile = ctx.profile
        cur = current.order.get('status')
        before = prior.get('order_status')
        if not is_present(cur) or not is_present(before):
            return
        if not profile.is_known_order_status(before) or not profile.is_known_order_status(cur):
            return

        if cur == profile.cancelled_status and profile.cancel_always_allowed:
            yield self.passed(f"order transition: {before} -> {cur} in {ctx.current}")
        elif cur in profile.allowed_order_targets(before):
            yield self.passed(f"valid order transition: {before} -> {cur} in {ctx.current}")
        else:
            yield self.failed(
                f"invalid order transition: {ctx.prior}({before}) -> {ctx.current}({cur})",
                field="order.status", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur,
                allowed=list(profile.allowed_order_targets(before))
            )

class OrderStatusValue(InvariantRule):
    """LC-002: some actions pin the order status to a literal."""

    def __init__(self):
        super().__init__(
            id="lc_002_order_status_value",
            statement="order.status MUST equal the value the profile expects for this action",
            family=RuleFamily.LIFECYCLE,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        expected = ctx.profile.expected_order_status.get(ctx.current_action)
        status = current.order.get('status')
        if expected is None or not is_present(status):
            return
        if status == expected:
            yield self.passed(f"order.status={status} as expected in {ctx.current}")
        else:
            yield self.failed(
                f"order.status should be {expected} in {ctx.current}, got: {status}",
                field="order.status", expected=expected, current=status
            )

# ============================================
# FULFILLMENT STATE
# ============================================

class FulfillmentStateProgression(InvariantRule):
    """
    LC-003: fulfillment state moves forward or stays put.

    Reaching a terminal state is legal from anywhere. Leaving a terminal
    state for a different non-terminal one is a violation.
    """

    def __init__(self):
        super().__init__(
            id="lc_003_fulfillment_progression",
            statement="fulfillment state MUST NOT regress along the profile's state sequence",
            family=RuleFamily.LIFECYCLE
        )

    def evaluate(self, current, prior, ctx):
        profile = ctx.profile
        terminal = profile.fulfillment_terminal_states
        prior_by_id = index_by_id(prior.get('fulfillments'))

        for fid, fulfillment in index_by_id(current.fulfillments()).items():
            cur = fulfillment_state(fulfillment)
            before = fulfillment_state(prior_by_id.get(fid))
            if cur is None or before is None:
                continue

            if cur in terminal:
                yield self.passed(f"fulfillment {fid}: {before} -> {cur} (terminal) in {ctx.current}")
                continue
            if before in terminal:
                yield self.failed(
                    f"fulfillment {fid} left terminal state: {ctx.prior}({before}) -> {ctx.current}({cur})",
                    fulfillment_id=fid, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )
                continue

            cur_rank = profile.fulfillment_rank(cur)
            prior_rank = profile.fulfillment_rank(before)
            if cur_rank is None or prior_rank is None:
                continue
            if cur_rank >= prior_rank:
                yield self.passed(f"fulfillment {fid} state progression valid: {before} -> {cur}")
            else:
                yield self.failed(
                    f"fulfillment {fid} state regression: {ctx.prior}({before}) -> {ctx.current}({cur})",
                    fulfillment_id=fid, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )

class AllFulfillmentsCancelled(InvariantRule):
    """LC-004: a cancelled order has no live fulfillment."""

    def __init__(self):
        super().__init__(
            id="lc_004_fulfillments_cancelled",
            statement="every fulfillment state MUST be the cancelled state on cancellation",
            family=RuleFamily.LIFECYCLE,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        cancelled = ctx.profile.fulfillment_cancelled_state
        states = {}
        for index, fulfillment in enumerate(current.fulfillments()):
            state = fulfillment_state(fulfillment)
            if state is not None:
                states[entity_id(fulfillment) or f"fulfillments[{index}]"] = state
        if not states:
            return
        live = [f"{fid}({state})" for fid, state in states.items() if state != cancelled]
        if live:
            yield self.failed(
                f"fulfillments not {cancelled} in {ctx.current}: {', '.join(live)}",
                fulfillments=live
            )
        else:
            yield self.passed(f"all fulfillments {cancelled} in {ctx.current}")

# ============================================
# TIMESTAMPS
# ============================================

class OrderTimestampsIntegrity(InvariantRule):
    """LC-005: created_at is immutable, updated_at never decreases."""

    def __init__(self):
        super().__init__(
            id="lc_005_order_timestamps",
            statement="order.created_at MUST be unchanged and order.updated_at non-decreasing",
            family=RuleFamily.LIFECYCLE
        )

    def evaluate(self, current, prior, ctx):
        cur_created = current.order.get('created_at')
        prior_created = prior.get('created_at')
        if is_present(cur_created) and is_present(prior_created):
            if cur_created == prior_created:
                yield self.passed(f"created_at immutable: {ctx.current} matches {ctx.prior}")
            else:
                yield self.failed(
                    f"created_at changed: {ctx.prior}({prior_created}) vs {ctx.current}({cur_created})",
                    field="created_at", prior_action=ctx.prior, current_action=ctx.current,
                    prior=prior_created, current=cur_created
                )

        cur_raw = current.order.get('updated_at')
        prior_raw = prior.get('updated_at')
        cur_updated = parse_timestamp(cur_raw)
        prior_updated = parse_timestamp(prior_raw)
        if cur_updated is None or prior_updated is None:
            return
        if cur_updated >= prior_updated:
            yield self.passed(f"updated_at non-decreasing: {ctx.current} >= {ctx.prior}")
        else:
            yield self.failed(
                f"updated_at decreased: {ctx.current}({cur_raw}) < {ctx.prior}({prior_raw})",
                field="updated_at", prior_action=ctx.prior, current_action=ctx.current,
                prior=prior_raw, current=cur_raw
            )

class CreatedBeforeUpdated(InvariantRule):
    """LC-006: an order is never updated before it was created."""

    def __init__(self):
        super().__init__(
            id="lc_006_created_before_updated",
            statement="order.created_at MUST be <= order.updated_at",
            family=RuleFamily.LIFECYCLE,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        created_raw = current.order.get('created_at')
        updated_raw = current.order.get('updated_at')
        created = parse_timestamp(created_raw)
        updated = parse_timestamp(updated_raw)
        if created is None or updated is None:
            return
        if created <= updated:
            yield self.passed(f"created_at <= updated_at in {ctx.current}")
        else:
            yield self.failed(
                f"created_at ({created_raw}) is after updated_at ({updated_raw}) in {ctx.current}",
                created_at=created_raw, updated_at=updated_raw
            )

# ============================================
# PAYMENT STATUS
# ============================================

class PaymentStatusProgression(InvariantRule):
    """LC-007: a paid order does not become unpaid."""

    def __init__(self):
        super().__init__(
            id="lc_007_payment_status",
            statement="payment status MUST NOT regress from PAID to NOT-PAID",
            family=RuleFamily.LIFECYCLE
        )

    def evaluate(self, current, prior, ctx):
        cur_payments = current.payments()
        prior_payments = as_list(prior.get('payments'))
        if not cur_payments or not prior_payments:
            return
        cur = dig(cur_payments[0], 'status')
        before = dig(prior_payments[0], 'status')
        if cur not in PAYMENT_STATUS_ORDER or before not in PAYMENT_STATUS_ORDER:
            return
        if PAYMENT_STATUS_ORDER.index(cur) >= PAYMENT_STATUS_ORDER.index(before):
            yield self.passed(f"payment status: {ctx.prior}({before}) -> {ctx.current}({cur})")
        else:
            yield self.failed(
                f"payment status regressed: {ctx.prior}({before}) -> {ctx.current}({cur})",
                field="payment.status", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

# ============================================
# CANCEL / UPDATE PRESENCE ASSERTIONS
# ============================================

class CancellationDetails(InvariantRule):
    """LC-008: on_cancel says who cancelled and why."""

    def __init__(self):
        super().__init__(
            id="lc_008_cancellation_details",
            statement="order.cancellation MUST carry cancelled_by and a known reason.id",
            family=RuleFamily.LIFECYCLE,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        cancellation = current.order.get('cancellation')
        cancelled_by = dig(cancellation, 'cancelled_by')
        reason = dig(cancellation, 'reason', 'id')

        if is_present(cancelled_by):
            yield self.passed(f"cancelled_by present: {cancelled_by}")
        else:
            yield self.failed(f"cancellation.cancelled_by missing in {ctx.current}", field="cancellation.cancelled_by")

        if not is_present(reason):
            yield self.failed(f"cancellation reason.id missing in {ctx.current}", field="cancellation.reason.id")
        elif str(reason) in ctx.profile.cancel_reason_codes:
            yield self.passed(f"cancellation reason.id present: {reason}")
        else:
            yield self.failed(
                f"cancellation reason.id {reason} is not a known reason code in {ctx.current}",
                field="cancellation.reason.id", current=reason
            )

class CancelRequestFields(InvariantRule):
    """LC-009: cancel names the order and a buyer reason code."""

    def __init__(self):
        super().__init__(
            id="lc_009_cancel_request",
            statement="cancel MUST carry order_id and a known cancellation_reason_id",
            family=RuleFamily.LIFECYCLE,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        order_id = current.order_id
        reason = current.message.get('cancellation_reason_id')

        if order_id is not None:
            yield self.passed(f"order_id present in {ctx.current}: {order_id}")
        else:
            yield self.failed(f"order_id missing in {ctx.current}", field="order_id")

        if not is_present(reason):
            yield self.failed(f"cancellation_reason_id missing in {ctx.current}", field="cancellation_reason_id")
        elif str(reason) in ctx.profile.buyer_cancel_codes:
            yield self.passed(f"cancellation_reason_id {reason} is a buyer reason code")
        else:
            yield self.failed(
                f"cancellation_reason_id {reason} is not a buyer reason code "
                f"({', '.join(sorted(ctx.profile.buyer_cancel_codes))})",
                field="cancellation_reason_id", current=reason
            )

class UpdateTargetPresent(InvariantRule):
    """LC-010: an update names what it updates."""

    def __init__(self):
        super().__init__(
            id="lc_010_update_target",
            statement="update MUST carry update_target",
            family=RuleFamily.LIFECYCLE,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        target = current.message.get('update_target')
        if is_present(target):
            yield self.passed(f"update_target present: {target}")
        else:
            yield self.failed(f"update_target missing in {ctx.current}", field="update_target")
