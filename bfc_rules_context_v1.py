"""
Beckn Flow Conformance (BFC) - Context Invariants
Version: 1.0.0

Consistency of the beckn `context` block across actions of one
transaction: ids, participants, timestamps, location, domain/version.
"""

from typing import Optional

from bfc_payload_v1 import dig, is_present, parse_timestamp
from bfc_profiles_v1 import PARTICIPANT_FIELDS
from bfc_rules_base_v1 import CompositeRule, Criticality, InvariantRule, RuleFamily

# ============================================
# IDENTIFIERS
# ============================================

class TransactionIdConsistency(InvariantRule):
    """CTX-001: transaction_id is shared by every action of the flow."""

    def __init__(self):
        super().__init__(
            id="ctx_001_transaction_id",
            statement="context.transaction_id MUST equal the transaction_id of the prior action",
            family=RuleFamily.CONTEXT,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        cur = current.transaction_id
        before = prior.get('transaction_id')
        if not is_present(cur) or not is_present(before):
            return
        if cur == before:
            yield self.passed(f"transaction_id consistent: {ctx.current} matches {ctx.prior}")
        else:
            yield self.failed(
                f"transaction_id mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                field="transaction_id", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

class MessageIdMatch(InvariantRule):
    """CTX-002: a callback reuses the message_id of its request."""

    def __init__(self):
        super().__init__(
            id="ctx_002_message_id_match",
            statement="context.message_id of a callback MUST equal that of its request",
            family=RuleFamily.CONTEXT,
            criticality=Criticality.CRITICAL
        )

    def evaluate(self, current, prior, ctx):
        cur = current.message_id
        before = prior.get('message_id')
        if not is_present(cur) or not is_present(before):
            return
        if cur == before:
            yield self.passed(f"message_id matches: {ctx.current} <-> {ctx.prior}")
        else:
            yield self.failed(
                f"message_id mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                field="message_id", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

class MessageIdUniqueness(InvariantRule):
    """CTX-003: different request/response pairs never share a message_id."""

    def __init__(self):
        super().__init__(
            id="ctx_003_message_id_unique",
            statement="context.message_id MUST differ from the message_id of an earlier pair",
            family=RuleFamily.CONTEXT
        )

    def evaluate(self, current, prior, ctx):
        cur = current.message_id
        before = prior.get('message_id')
        if not is_present(cur) or not is_present(before):
            return
        if cur != before:
            yield self.passed(f"message_id unique: {ctx.current} != {ctx.prior}")
        else:
            yield self.failed(
                f"message_id NOT unique: {ctx.current} reuses {ctx.prior} message_id ({cur})",
                field="message_id", prior_action=ctx.prior, current_action=ctx.current,
                prior=before, current=cur
            )

# ============================================
# DOMAIN / VERSION / PARTICIPANTS
# ============================================

class DomainVersionLiteral(InvariantRule):
    """CTX-004: context.domain and context.version are the profile literals."""

    def __init__(self):
        super().__init__(
            id="ctx_004_domain_version",
            statement="context.domain and context.version MUST equal the protocol profile literals",
            family=RuleFamily.CONTEXT,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        profile = ctx.profile
        if profile.domain == "*":
            return
        for name, expected, actual in (
            ("domain", profile.domain, current.domain),
            ("version", profile.version, current.version),
        ):
            if not is_present(actual):
                continue
            if actual == expected:
                yield self.passed(f"{name}={expected} in {ctx.current}")
            else:
                yield self.failed(
                    f"{name} should be {expected} in {ctx.current}, got: {actual}",
                    field=name, expected=expected, current=actual
                )

class ParticipantConsistency(InvariantRule):
    """CTX-005: bap/bpp id and uri do not change mid-flow."""

    def __init__(self, fields=PARTICIPANT_FIELDS):
        super().__init__(
            id="ctx_005_participants",
            statement="bap_id, bap_uri, bpp_id, bpp_uri MUST match the prior action when both declare them",
            family=RuleFamily.CONTEXT,
            criticality=Criticality.CRITICAL
        )
        self.fields = tuple(fields)

    def evaluate(self, current, prior, ctx):
        for name in self.fields:
            cur = current.context.get(name)
            before = prior.get(name)
            if not is_present(cur) or not is_present(before):
                continue
            if cur == before:
                yield self.passed(f"{name} consistent: {ctx.current} matches {ctx.prior}")
            else:
                yield self.failed(
                    f"{name} mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                    field=name, prior_action=ctx.prior, current_action=ctx.current,
                    prior=before, current=cur
                )

class SellerAbsentAtSearch(InvariantRule):
    """CTX-006: a broadcast search names no seller platform."""

    def __init__(self):
        super().__init__(
            id="ctx_006_bpp_absent_in_search",
            statement="bpp_id and bpp_uri MUST be absent from the first step of the flow",
            family=RuleFamily.CONTEXT,
            requires_prior=False
        )

    def evaluate(self, current, prior, ctx):
        declared = [f for f in ("bpp_id", "bpp_uri") if is_present(current.context.get(f))]
        if not declared:
            yield self.passed(f"bpp_id/bpp_uri absent in {ctx.current}")
        else:
            yield self.failed(
                f"{'/'.join(declared)} should be absent in {ctx.current}",
                fields=declared
            )

# ============================================
# TIME & PLACE
# ============================================

class TimestampOrdering(InvariantRule):
    """CTX-007: context.timestamp never goes backwards within a flow."""

    def __init__(self):
        super().__init__(
            id="ctx_007_timestamp_order",
            statement="context.timestamp MUST be >= the timestamp of the prior action",
            family=RuleFamily.CONTEXT
        )

    def evaluate(self, current, prior, ctx):
        cur_raw = current.context.get('timestamp')
        prior_raw = prior.get('timestamp')
        cur = parse_timestamp(cur_raw)
        before = parse_timestamp(prior_raw)
        if cur is None or before is None:
            return
        if cur >= before:
            yield self.passed(f"timestamp ordering: {ctx.current} >= {ctx.prior}")
        else:
            yield self.failed(
                f"timestamp ordering violated: {ctx.current}({cur_raw}) < {ctx.prior}({prior_raw})",
                field="timestamp", prior_action=ctx.prior, current_action=ctx.current,
                prior=prior_raw, current=cur_raw
            )

class LocationConsistency(InvariantRule):
    """CTX-008: city and country codes match the prior action."""

    def __init__(self):
        super().__init__(
            id="ctx_008_location",
            statement="context.location city.code and country.code MUST match the prior action",
            family=RuleFamily.CONTEXT
        )

    def evaluate(self, current, prior, ctx):
        cur_loc = current.context.get('location')
        prior_loc = prior.get('location')
        if not isinstance(cur_loc, dict) or not isinstance(prior_loc, dict):
            return
        for part in ("city", "country"):
            cur = dig(cur_loc, part, 'code')
            before = dig(prior_loc, part, 'code')
            if not is_present(cur) or not is_present(before):
                continue
            if cur == before:
                yield self.passed(f"location.{part}.code consistent ({cur}): {ctx.current} matches {ctx.prior}")
            else:
                yield self.failed(
                    f"location.{part}.code mismatch: {ctx.prior}({before}) vs {ctx.current}({cur})",
                    field=f"location.{part}.code", prior_action=ctx.prior,
                    current_action=ctx.current, prior=before, current=cur
                )

# ============================================
# COMPOSITES
# ============================================

MESSAGE_ID_MATCH = "match"
MESSAGE_ID_UNIQUE = "unique"

def context_consistency(message_id_mode: Optional[str] = None) -> CompositeRule:
    """
    All pairwise context checks against one prior action.

    message_id_mode selects the call-site semantics: MESSAGE_ID_MATCH for a
    request/callback pair, MESSAGE_ID_UNIQUE across pairs, None to skip it.
    """
    members = [
        TransactionIdConsistency(),
        ParticipantConsistency(),
        TimestampOrdering(),
        LocationConsistency(),
    ]
    if message_id_mode == MESSAGE_ID_MATCH:
        members.insert(1, MessageIdMatch())
    elif message_id_mode == MESSAGE_ID_UNIQUE:
        members.insert(1, MessageIdUniqueness())
    elif message_id_mode is not None:
        raise ValueError(f"unknown message_id mode: {message_id_mode}")
    return CompositeRule(
        id=f"ctx_all_{message_id_mode or 'plain'}",
        statement="Context of the current action is consistent with the prior action",
        members=members,
        family=RuleFamily.CONTEXT
    )
