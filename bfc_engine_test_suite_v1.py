"""
Beckn Flow Conformance (BFC) - Engine Test Suite
Version: 1.0.0

Coverage for everything around the rules:
- Extraction engine and spec loading
- Action store backends (memory, redis) and the circuit breaker
- Settings, metrics, registry and schema checks
- End-to-end flows through ConformanceEngine and the replay CLI
"""

import asyncio
import copy
import json
import pytest

from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from bfc_action_store_v1 import (
    ActionRecord,
    ActionStore,
    CircuitBreaker,
    CircuitState,
    InMemoryActionStore,
    RedisActionStore,
    build_action_store,
    snapshot_key,
)
from bfc_config import ConformanceSettings, DEFAULT_SPEC_DIR
from bfc_engine_v1 import (
    ConformanceEngine,
    set_default_engine,
    run_validators as default_run_validators,
    extract_and_save as default_extract_and_save,
)
from bfc_extraction_v1 import ExtractionSpec, ExtractionSpecLoader, extract, domain_key
from bfc_flow_replay_v1 import FlowReplayer, load_payloads, main, replay_file
from bfc_ledger_v1 import (
    ActionStoreError,
    CircuitBreakerOpen,
    ExtractionSpecError,
    UnknownRuleSetError,
)
from bfc_metrics import metrics_registry
from bfc_registry_v1 import DomainRegistry, bind, build_default_registry
from bfc_rules_lifecycle_v1 import UpdateTargetPresent
from bfc_schema_v1 import EnvelopeSchemaCheck, RequiredPathsCheck

FIS10 = ("ONDC:FIS10", "2.1.0")
FIS13 = ("ONDC:FIS13", "2.0.1")

def run_async(coro):
    return asyncio.run(coro)

def sample(name, **labels):
    return metrics_registry.get_sample_value(name, labels) or 0.0

# ============================================
# FLOW BUILDERS
# ============================================

def context(action, message_id, second, seller=True, domain=FIS10, txn="txn-e2e"):
    ctx = {
        "domain": domain[0],
        "version": domain[1],
        "action": action,
        "transaction_id": txn,
        "message_id": message_id,
        "timestamp": f"2024-05-01T10:00:{second:02d}.000Z",
        "bap_id": "buyer.example.com",
        "bap_uri": "https://buyer.example.com/beckn",
        "location": {"city": {"code": "std:080"}, "country": {"code": "IND"}}
    }
    if seller:
        ctx["bpp_id"] = "seller.example.com"
        ctx["bpp_uri"] = "https://seller.example.com/beckn"
    return ctx

def priced_item(item_id, price):
    return {
        "id": item_id,
        "price": {"currency": "INR", "value": f"{price}.00"},
        "quantity": {"selected": {"count": 1}},
        "fulfillment_ids": ["F1"]
    }

def order(prices):
    total = sum(prices.values())
    return {
        "provider": {"id": "P1"},
        "items": [priced_item(i, p) for i, p in prices.items()],
        "fulfillments": [{"id": "F1", "type": "DIGITAL"}],
        "quote": {
            "price": {"currency": "INR", "value": f"{total}.00"},
            "breakup": [
                {
                    "@ondc/org/item_id": i,
                    "@ondc/org/title_type": "item",
                    "price": {"currency": "INR", "value": f"{p}.00"}
                }
                for i, p in prices.items()
            ]
        }
    }

def gift_card_flow():
    """search -> on_search -> select -> on_select, with a repriced item in on_select."""
    catalog = {"providers": [{
        "id": "P1",
        "items": [priced_item("i1", 100), priced_item("i2", 20)],
        "fulfillments": [{"id": "F1", "type": "DIGITAL"}]
    }]}
    return [
        {"context": context("search", "msg-1", 0, seller=False), "message": {"intent": {}}},
        {"context": context("on_search", "msg-1", 1), "message": {"catalog": catalog}},
        {"context": context("select", "msg-2", 2), "message": {"order": order({"i1": 100, "i2": 20})}},
        {"context": context("on_select", "msg-2", 3), "message": {"order": order({"i1": 100, "i2": 25})}},
    ]

def policy_order(premium="9000.00", status="ACTIVE", state="GRANTED", updated_second=5):
    """A health insurance policy order priced by a single BASE_PRICE row."""
    return {
        "id": "POL-1",
        "status": status,
        "provider": {"id": "INS-1"},
        "items": [{"id": "PLAN-1", "price": {"currency": "INR", "value": "9000.00"}}],
        "fulfillments": [{"id": "F1", "state": {"descriptor": {"code": state}}}],
        "quote": {
            "price": {"currency": "INR", "value": premium},
            "breakup": [{"title": "BASE_PRICE", "price": {"currency": "INR", "value": premium}}]
        },
        "created_at": "2024-05-01T10:00:05.000Z",
        "updated_at": f"2024-05-01T10:00:{updated_second:02d}.000Z"
    }

def health_insurance_flow():
    """confirm -> on_confirm -> status -> on_status -> cancel -> on_cancel."""
    confirm_order = policy_order()
    for name in ("id", "status", "created_at", "updated_at"):
        del confirm_order[name]
    del confirm_order["fulfillments"][0]["state"]
    cancelled = policy_order(premium="0.00", status="CANCELLED", state="CANCELLED", updated_second=9)
    cancelled["cancellation"] = {"cancelled_by": "CONSUMER", "reason": {"id": "001"}}
    return [
        {"context": context("confirm", "msg-5", 4, domain=FIS13), "message": {"order": confirm_order}},
        {"context": context("on_confirm", "msg-5", 5, domain=FIS13), "message": {"order": policy_order()}},
        {"context": context("status", "msg-6", 6, domain=FIS13), "message": {"order_id": "POL-1"}},
        {"context": context("on_status", "msg-6", 7, domain=FIS13), "message": {"order": policy_order(updated_second=7)}},
        {
            "context": context("cancel", "msg-7", 8, domain=FIS13),
            "message": {"order_id": "POL-1", "cancellation_reason_id": "001"}
        },
        {"context": context("on_cancel", "msg-7", 9, domain=FIS13), "message": {"order": cancelled}},
    ]

PRICE_FAILURE = "[ref_008_item_price] price mismatch for item i2: select(20) vs on_select(25)"
QUOTE_FAILURE = "[ref_015_quote_total] quote total mismatch: select(120) vs on_select(125)"

def make_engine(store=None, spec_dir=DEFAULT_SPEC_DIR):
    return ConformanceEngine(
        registry=build_default_registry(),
        store=store or InMemoryActionStore(),
        spec_loader=ExtractionSpecLoader(spec_dir)
    )

# ============================================
# MOCK BACKENDS
# ============================================

class MockRedis:
    """Async stand-in for redis.asyncio.Redis (set/get/aclose)."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.calls = 0
        self.closed = False

    async def set(self, key, value, ex=None):
        self.calls += 1
        self.data[key] = value
        self.expiry[key] = ex

    async def get(self, key):
        self.calls += 1
        return self.data.get(key)

    async def aclose(self):
        self.closed = True

class DownRedis(MockRedis):
    async def set(self, key, value, ex=None):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def get(self, key):
        self.calls += 1
        raise RedisConnectionError("connection refused")

class FailingStore(ActionStore):
    """Every operation fails like an unreachable backend."""

    async def save(self, session_id, flow_id, transaction_id, action, snapshot):
        raise ActionStoreError("store down")

    async def load_record(self, session_id, flow_id, transaction_id, action):
        raise ActionStoreError("store down")

# ============================================
# EXTRACTION ENGINE
# ============================================

class TestExtraction:
    """Path evaluation semantics."""

    MESSAGE = {
        "context": {"transaction_id": "T1"},
        "message": {"order": {"items": [{"id": "i1"}, {"id": "i2"}], "provider": {"id": "P1"}}}
    }

    def test_match_cardinality(self):
        spec = ExtractionSpec.from_mapping({
            "txn": "$.context.transaction_id",
            "item_ids": "$.message.order.items[*].id",
            "items": "$.message.order.items",
            "absent": "$.message.order.billing"
        })
        snapshot = extract(self.MESSAGE, spec)
        assert snapshot["txn"] == "T1"
        assert snapshot["item_ids"] == ["i1", "i2"]
        assert snapshot["items"] == [{"id": "i1"}, {"id": "i2"}]
        assert snapshot["absent"] is None

    def test_idempotent_and_input_untouched(self):
        spec = ExtractionSpec.from_mapping({"provider": "$.message.order.provider"})
        before = copy.deepcopy(self.MESSAGE)
        assert extract(self.MESSAGE, spec) == extract(self.MESSAGE, spec)
        assert self.MESSAGE == before

    def test_bad_path_yields_none_for_that_field_only(self):
        spec = ExtractionSpec.from_mapping(
            {"broken": "$.message[?(", "txn": "$.context.transaction_id"},
            action="select"
        )
        errors_before = sample("bfc_extraction_errors_total", action="select")
        snapshot = extract(self.MESSAGE, spec)
        assert snapshot == {"broken": None, "txn": "T1"}
        assert sample("bfc_extraction_errors_total", action="select") == errors_before + 1

    def test_non_string_path_is_a_spec_error(self):
        with pytest.raises(ExtractionSpecError):
            ExtractionSpec.from_mapping({"quote": 42})

    def test_domain_key(self):
        assert domain_key("ONDC:FIS10") == "fis10"
        assert domain_key("retail") == "retail"

class TestExtractionSpecLoader:
    """YAML specs on disk."""

    def write(self, tmp_path, text, action="select"):
        folder = tmp_path / "fis10" / "2.1.0"
        folder.mkdir(parents=True, exist_ok=True)
        (folder / f"{action}.yaml").write_text(text, encoding="utf-8")

    def test_load_nested_save_data(self, tmp_path):
        self.write(tmp_path, "save-data:\n  txn: $.context.transaction_id\n")
        loader = ExtractionSpecLoader(tmp_path)
        spec = loader.load(*FIS10, "select")
        assert spec.as_dict() == {"txn": "$.context.transaction_id"}
        assert loader.load(*FIS10, "SELECT") is spec
        assert loader.available_actions(*FIS10) == ["select"]

    def test_missing_spec_is_none(self, tmp_path):
        assert ExtractionSpecLoader(tmp_path).load(*FIS10, "init") is None

    def test_invalid_yaml_raises(self, tmp_path):
        self.write(tmp_path, "save-data: [unclosed\n")
        with pytest.raises(ExtractionSpecError):
            ExtractionSpecLoader(tmp_path).load(*FIS10, "select")

    def test_undecodable_spec_raises(self, tmp_path):
        folder = tmp_path / "fis10" / "2.1.0"
        folder.mkdir(parents=True)
        (folder / "select.yaml").write_bytes(b"\xff\xfe")
        with pytest.raises(ExtractionSpecError):
            ExtractionSpecLoader(tmp_path).load(*FIS10, "select")

    @pytest.mark.parametrize("domain,version,action", [
        ("ONDC:FIS10", "../../etc", "select"),
        ("ONDC:FIS10", "2.1.0\\..", "select"),
        ("ONDC:../fis10", "2.1.0", "select"),
        ("ONDC:FIS10", "2.1.0", "../select"),
    ])
    def test_path_traversal_rejected(self, tmp_path, domain, version, action):
        loader = ExtractionSpecLoader(tmp_path / "specs")
        with pytest.raises(ExtractionSpecError):
            loader.load(domain, version, action)

    def test_non_mapping_document_raises(self, tmp_path):
        self.write(tmp_path, "save-data:\n  - $.context.transaction_id\n")
        with pytest.raises(ExtractionSpecError):
            ExtractionSpecLoader(tmp_path).load(*FIS10, "select")

    def test_every_registered_action_ships_a_spec(self):
        loader = ExtractionSpecLoader(DEFAULT_SPEC_DIR)
        for domain, version, action in build_default_registry().keys():
            spec = loader.load(domain, version, action)
            assert spec is not None, f"{domain} {version} {action}"
            assert "transaction_id" in spec.as_dict()

# ============================================
# ACTION STORE
# ============================================

class TestInMemoryStore:
    """Last-write-wins semantics and the per-flow log."""

    def test_last_write_wins(self):
        store = InMemoryActionStore()

        async def scenario():
            await store.save("s1", "f1", "T1", "select", {"v": 1})
            await store.save("s1", "f1", "T1", "select", {"v": 2})
            return await store.load("s1", "f1", "T1", "select"), await store.load("s1", "f1", "T1", "init")

        latest, missing = run_async(scenario())
        assert latest == {"v": 2}
        assert missing is None
        assert [r.snapshot for r in store.flow_log("s1", "f1", "T1")] == [{"v": 1}, {"v": 2}]

    def test_keys_are_scoped_by_session_and_flow(self):
        store = InMemoryActionStore()
        run_async(store.save("s1", "f1", "T1", "select", {"v": 1}))
        assert run_async(store.load("s2", "f1", "T1", "select")) is None
        assert snapshot_key("s1", "f1", "T1", "SELECT", prefix="bfc") == "bfc:s1:f1:T1:select"

    def test_bare_snapshot_json_is_accepted(self):
        record = ActionRecord.from_json('{"transaction_id": "T1"}')
        assert record.snapshot == {"transaction_id": "T1"}

class TestRedisStore:
    """RedisActionStore against an async mock client."""

    def test_save_and_load_with_ttl(self):
        client = MockRedis()
        store = RedisActionStore(client, key_prefix="bfc", ttl_seconds=600)
        run_async(store.save("s1", "f1", "T1", "select", {"items": ["i1"]}))
        key = "bfc:s1:f1:T1:select"
        assert client.expiry[key] == 600
        assert json.loads(client.data[key])["snapshot"] == {"items": ["i1"]}
        assert run_async(store.load("s1", "f1", "T1", "select")) == {"items": ["i1"]}
        assert run_async(store.load("s1", "f1", "T1", "init")) is None

    def test_zero_ttl_means_no_expiry(self):
        client = MockRedis()
        run_async(RedisActionStore(client, ttl_seconds=0).save("s1", "f1", "T1", "select", {}))
        assert list(client.expiry.values()) == [None]

    def test_bytes_values_are_decoded(self):
        client = MockRedis()
        store = RedisActionStore(client)
        client.data["bfc:s1:f1:T1:select"] = ActionRecord("select", {"a": 1}).to_json().encode("utf-8")
        assert run_async(store.load("s1", "f1", "T1", "select")) == {"a": 1}

    def test_corrupt_value_raises_store_error(self):
        client = MockRedis()
        client.data["bfc:s1:f1:T1:select"] = "{not json"
        with pytest.raises(ActionStoreError):
            run_async(RedisActionStore(client).load("s1", "f1", "T1", "select"))

    def test_backend_errors_are_wrapped_then_circuit_opens(self):
        client = DownRedis()
        store = RedisActionStore(client, circuit_breaker=CircuitBreaker(failure_threshold=2, recovery_timeout=60))
        for _ in range(2):
            with pytest.raises(ActionStoreError) as excinfo:
                run_async(store.save("s1", "f1", "T1", "select", {}))
            assert not isinstance(excinfo.value, CircuitBreakerOpen)
        assert store.circuit_breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpen):
            run_async(store.load("s1", "f1", "T1", "select"))
        assert client.calls == 2

    def test_half_open_success_closes_circuit(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.0)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.can_attempt()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_close_uses_aclose(self):
        client = MockRedis()
        run_async(RedisActionStore(client).close())
        assert client.closed

# ============================================
# SETTINGS
# ============================================

class TestSettings:
    """BFC_* environment configuration."""

    def test_defaults(self):
        settings = ConformanceSettings.from_env({})
        assert settings.store_backend == "memory"
        assert settings.ttl == 3600
        assert isinstance(build_action_store(settings), InMemoryActionStore)

    def test_from_env(self):
        settings = ConformanceSettings.from_env({
            "BFC_STORE_BACKEND": "redis",
            "BFC_REDIS_PORT": "6380",
            "BFC_REDIS_SSL": "yes",
            "BFC_LOG_LEVEL": "debug",
            "BFC_SNAPSHOT_TTL_SECONDS": "0"
        })
        assert settings.redis_port == 6380
        assert settings.redis_ssl is True
        assert settings.log_level == "DEBUG"
        assert settings.ttl is None
        store = build_action_store(settings)
        assert isinstance(store, RedisActionStore)
        assert store.ttl_seconds is None

    @pytest.mark.parametrize("variable,value", [
        ("BFC_STORE_BACKEND", "mongo"),
        ("BFC_REDIS_PORT", "70000"),
        ("BFC_LOG_LEVEL", "chatty"),
    ])
    def test_invalid_values_rejected(self, variable, value):
        with pytest.raises(ValidationError):
            ConformanceSettings.from_env({variable: value})

# ============================================
# REGISTRY & SCHEMA CHECKS
# ============================================

class TestRegistry:
    """(domain, version, action) resolution."""

    def test_shipped_keys(self):
        registry = build_default_registry()
        assert len(registry) == 28
        for action in ("status", "update", "cancel", "on_cancel"):
            assert registry.has(*FIS10, action)
            assert registry.has(*FIS13, action)
        for key in registry.keys():
            rule_set = registry.resolve(*key)
            assert any(isinstance(c, EnvelopeSchemaCheck) for c in rule_set.schema_checks)

    @pytest.mark.parametrize("domain", [FIS10, FIS13])
    @pytest.mark.parametrize("action,paths", [
        ("status", ("message.order_id",)),
        ("cancel", ("message.order_id",)),
        ("update", ("message.update_target",)),
        ("select", None),
    ])
    def test_required_paths_bound_per_action(self, domain, action, paths):
        rule_set = build_default_registry().resolve(*domain, action)
        bound = [c.paths for c in rule_set.schema_checks if isinstance(c, RequiredPathsCheck)]
        assert bound == ([paths] if paths else [])

    def test_health_insurance_cancel_callback_rules(self):
        rule_set = build_default_registry().resolve(*FIS13, "on_cancel")
        assert rule_set.prior_actions() == ["cancel", "on_confirm"]
        ids = [b.rule.id for b in rule_set.bindings]
        for rule_id in (
            "lc_002_order_status_value",
            "lc_008_cancellation_details",
            "lc_004_fulfillments_cancelled",
            "fin_009_quote_zeroed_on_cancel",
            "ctx_all_match",
        ):
            assert rule_id in ids

    def test_unknown_key_is_an_error(self):
        with pytest.raises(UnknownRuleSetError) as excinfo:
            build_default_registry().resolve("ONDC:FIS10", "9.9.9", "select")
        assert excinfo.value.version == "9.9.9"

    def test_prior_actions_in_first_use_order(self):
        rule_set = build_default_registry().resolve(*FIS10, "on_status")
        assert rule_set.prior_actions() == ["status", "on_confirm"]
        assert rule_set.profile.label == "gift card"

    def test_register_replaces(self):
        registry = DomainRegistry()
        registry.register("X", "1", "update", bind(None, UpdateTargetPresent()))
        registry.register("X", "1", "update", [])
        assert registry.resolve("X", "1", "update").bindings == []
        assert registry.actions("X", "1") == ["update"]

class TestSchemaChecks:
    """Envelope and required-path checks."""

    def test_valid_envelope(self):
        message = {"context": context("select", "m1", 0), "message": {}}
        ledger = EnvelopeSchemaCheck().validate(*FIS10, "select", message)
        assert ledger.failed == []
        assert ledger.passed == ["[schema_envelope] envelope valid for select"]

    def test_missing_required_field(self):
        ctx = context("select", "m1", 0)
        del ctx["transaction_id"]
        ledger = EnvelopeSchemaCheck().validate(*FIS10, "select", {"context": ctx, "message": {}})
        assert len(ledger.failed) == 1
        assert "context.transaction_id" in ledger.failed[0]

    def test_declared_action_must_match_invocation(self):
        message = {"context": context("init", "m1", 0), "message": {}}
        ledger = EnvelopeSchemaCheck().validate(*FIS10, "select", message)
        assert ledger.failed == ["[schema_envelope] context.action is init, expected select"]

    def test_seller_required_after_search(self):
        search = {"context": context("search", "m1", 0, seller=False), "message": {}}
        select = {"context": context("select", "m1", 0, seller=False), "message": {}}
        assert EnvelopeSchemaCheck().validate(*FIS10, "search", search).failed == []
        assert len(EnvelopeSchemaCheck().validate(*FIS10, "select", select).failed) == 2

    def test_required_paths(self):
        check = RequiredPathsCheck(["message.order.provider.id", "context.transaction_id"])
        ledger = check.validate(*FIS10, "select", {"context": {"transaction_id": "T"}, "message": {}})
        assert ledger.failed == ["[schema_required_paths] message.order.provider.id missing in select"]

# ============================================
# ENGINE
# ============================================

class TestConformanceEngine:
    """Full message processing."""

    def process_flow(self, engine, payloads):
        async def scenario():
            return [await engine.process_message(p, "s1", "f1") for p in payloads]
        return run_async(scenario())

    def test_gift_card_flow_reports_repricing(self):
        store = InMemoryActionStore()
        search, on_search, select, on_select = self.process_flow(make_engine(store), gift_card_flow())

        for ledger in (search, on_search, select):
            assert ledger.failed == []
            assert ledger.passed
        assert on_select.failed == [PRICE_FAILURE, QUOTE_FAILURE]
        assert on_select.response["ref_008_item_price"][0]["item_id"] == "i2"
        assert on_select.response["priors_available"] == {"select": True}
        assert on_select.response["snapshot_saved"] is True

        saved = run_async(store.load("s1", "f1", "txn-e2e", "on_select"))
        assert saved["quote"]["price"]["value"] == "125.00"

    def test_verdict_metrics(self):
        before = sample("bfc_messages_validated_total", domain="ONDC:FIS10", action="on_select", verdict="invalid")
        self.process_flow(make_engine(), gift_card_flow())
        after = sample("bfc_messages_validated_total", domain="ONDC:FIS10", action="on_select", verdict="invalid")
        assert after == before + 1

    def test_missing_prior_skips_without_failing(self):
        on_select = gift_card_flow()[3]
        ledger = self.process_flow(make_engine(), [on_select])[0]
        assert ledger.failed == []
        assert any(m.startswith("[fin_001_breakup_sum]") for m in ledger.passed)
        assert "ref_all_cross_action: no select snapshot" in ledger.skipped
        assert ledger.response["priors_available"] == {"select": False}

    def test_unknown_key_is_a_configuration_error(self):
        message = {"context": context("select", "m1", 0, domain=("ONDC:FIS99", "1.0.0")), "message": {}}
        before = sample("bfc_unknown_rule_sets_total", domain="ONDC:FIS99", version="1.0.0", action="select")
        ledger = self.process_flow(make_engine(), [message])[0]
        assert ledger.configuration_errors == ["Incorrect version or unsupported action: ONDC:FIS99 1.0.0 select"]
        assert ledger.failed == ledger.configuration_errors
        assert ledger.passed == []
        assert sample("bfc_unknown_rule_sets_total", domain="ONDC:FIS99", version="1.0.0", action="select") == before + 1

    def test_snapshot_saved_even_without_rule_set(self, tmp_path):
        folder = tmp_path / "fis13" / "9.0.0"
        folder.mkdir(parents=True)
        (folder / "on_cancel.yaml").write_text("save-data:\n  order_id: $.message.order.id\n", encoding="utf-8")
        store = InMemoryActionStore()
        message = {
            "context": context("on_cancel", "m1", 0, domain=("ONDC:FIS13", "9.0.0")),
            "message": {"order": {"id": "O-1"}}
        }
        ledger = self.process_flow(make_engine(store, spec_dir=tmp_path), [message])[0]
        assert ledger.configuration_errors == ["Incorrect version or unsupported action: ONDC:FIS13 9.0.0 on_cancel"]
        assert ledger.response["snapshot_saved"] is True
        assert run_async(store.load("s1", "f1", "txn-e2e", "on_cancel")) == {"order_id": "O-1"}

    def test_health_insurance_flow_is_clean(self):
        store = InMemoryActionStore()
        ledgers = self.process_flow(make_engine(store), health_insurance_flow())
        for ledger in ledgers:
            assert ledger.configuration_errors == []
            assert ledger.failed == []
            assert ledger.response["snapshot_saved"] is True

        status, on_cancel = ledgers[2], ledgers[5]
        assert "[ref_014_order_id] order_id consistent (POL-1): status matches on_confirm" in status.passed
        assert "[schema_required_paths] required fields present in status (1)" in status.passed
        assert on_cancel.response["priors_available"] == {"cancel": True, "on_confirm": True}
        for expected in (
            "[lc_002_order_status_value] order.status=CANCELLED as expected in on_cancel",
            "[lc_004_fulfillments_cancelled] all fulfillments CANCELLED in on_cancel",
            "[fin_009_quote_zeroed_on_cancel] quote zeroed in on_cancel",
            "[lc_001_order_transition] valid order transition: ACTIVE -> CANCELLED in on_cancel",
        ):
            assert expected in on_cancel.passed
        saved = run_async(store.load("s1", "f1", "txn-e2e", "on_cancel"))
        assert saved["cancellation"]["reason"]["id"] == "001"

    def test_health_insurance_cancel_callback_catches_live_policy(self):
        flow = health_insurance_flow()
        on_cancel = flow[5]
        on_cancel["message"]["order"] = policy_order(status="ACTIVE", updated_second=9)
        on_cancel["message"]["order"]["cancellation"] = {"cancelled_by": "CONSUMER", "reason": {"id": "001"}}
        ledger = self.process_flow(make_engine(), flow)[5]
        assert ledger.failed == [
            "[lc_002_order_status_value] order.status should be CANCELLED in on_cancel, got: ACTIVE",
            "[lc_004_fulfillments_cancelled] fulfillments not CANCELLED in on_cancel: F1(GRANTED)",
            "[fin_009_quote_zeroed_on_cancel] quote not zeroed in on_cancel: "
            "quote.price.value=9000, BASE_PRICE=9000",
        ]

    def test_health_insurance_confirm_quote_drift(self):
        flow = health_insurance_flow()[:2]
        flow[1]["message"]["order"] = policy_order(premium="9500.00")
        on_confirm = self.process_flow(make_engine(), flow)[1]
        assert on_confirm.failed == [
            "[ref_015_quote_total] quote total mismatch: confirm(9000) vs on_confirm(9500)"
        ]

    def test_update_without_target_fails_both_checks(self):
        message = {"context": context("update", "msg-8", 10, domain=FIS13), "message": {"order": {"id": "POL-1"}}}
        ledger = self.process_flow(make_engine(), [message])[0]
        assert ledger.failed == [
            "[schema_required_paths] message.update_target missing in update",
            "[lc_010_update_target] update_target missing in update",
        ]
        assert "ref_014_order_id: no on_confirm snapshot" in ledger.skipped

    def test_unreadable_spec_still_yields_ledger(self, tmp_path):
        folder = tmp_path / "fis10" / "2.1.0"
        folder.mkdir(parents=True)
        (folder / "select.yaml").write_bytes(b"\xff\xfe")
        ledger = self.process_flow(make_engine(spec_dir=tmp_path), [gift_card_flow()[2]])[0]
        assert ledger.failed == []
        assert ledger.response["snapshot_saved"] is False

    def test_traversal_version_is_not_saved(self):
        message = {"context": context("select", "m1", 0, domain=("ONDC:FIS10", "../../etc")), "message": {}}
        ledger = self.process_flow(make_engine(), [message])[0]
        assert ledger.configuration_errors
        assert ledger.response["snapshot_saved"] is False

    def test_store_failures_are_isolated(self):
        engine = make_engine(FailingStore())
        ledger = self.process_flow(engine, [gift_card_flow()[3]])[0]
        assert ledger.store_errors == ["load select: store down"]
        assert ledger.response["snapshot_saved"] is False
        assert "[schema_envelope] envelope valid for on_select" in ledger.passed

    def test_default_engine_entry_points(self):
        engine = make_engine()
        set_default_engine(engine)
        try:
            select = gift_card_flow()[2]

            async def scenario():
                ledger = await default_run_validators(*FIS10, "select", select, "s1", "f1", "txn-e2e")
                snapshot = await default_extract_and_save(*FIS10, "select", select, "s1", "f1", "txn-e2e")
                return ledger, snapshot

            ledger, snapshot = run_async(scenario())
            assert ledger.response["action"] == "select"
            assert snapshot["provider"] == {"id": "P1"}
            assert run_async(engine.store.load("s1", "f1", "txn-e2e", "select")) == snapshot
        finally:
            set_default_engine(None)

# ============================================
# REPLAY
# ============================================

class TestFlowReplay:
    """Replaying logged flows."""

    def test_replay_report(self):
        report = run_async(FlowReplayer(make_engine()).replay(gift_card_flow(), "s1", "f1"))
        assert [s.action for s in report.steps] == ["search", "on_search", "select", "on_select"]
        assert report.failed_actions == ["on_select"]
        assert report.total_failed == 2
        assert not report.is_valid
        assert report.to_dict()["totals"]["steps"] == 4

    def test_replay_file(self, tmp_path):
        path = tmp_path / "flow.json"
        path.write_text(json.dumps({"payloads": gift_card_flow()[:3]}), encoding="utf-8")
        assert len(load_payloads(path)) == 3
        report = run_async(replay_file(path, engine=make_engine()))
        assert report.is_valid
        assert report.session_id.startswith("replay-")

    def test_load_payloads_rejects_scalars(self, tmp_path):
        path = tmp_path / "flow.json"
        path.write_text("42", encoding="utf-8")
        with pytest.raises(ValueError):
            load_payloads(path)

    def test_cli_exit_code(self, tmp_path, capsys):
        path = tmp_path / "flow.json"
        path.write_text(json.dumps(gift_card_flow()), encoding="utf-8")
        set_default_engine(make_engine())
        try:
            assert main([str(path), "--session", "cli", "--flow", "f1"]) == 1
        finally:
            set_default_engine(None)
        out = capsys.readouterr().out
        assert "on_select" in out
        assert PRICE_FAILURE in out

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
