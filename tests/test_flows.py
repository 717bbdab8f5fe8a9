"""Tests for flow loading and the per-tenant flow cache."""
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from actions.registry import ActionName
from flows import FlowCache, FlowConfigError, FlowValidationError, load_flow, tenant_dir


class TestLoadFlow:
    def test_loads_and_validates(self, config_root):
        flow = load_flow("broker", config_root)
        assert flow.version == "1"
        assert flow.default_state == "MENU"
        assert set(flow.states) == {"MENU", "PRICING", "CONTACT", "DONE"}
        assert flow.states["MENU"].list_ui.sections[0].rows[0].id == "A"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FlowConfigError, match="Cannot read"):
            load_flow("ghost", tmp_path)

    def test_undecodable_file(self, tmp_path):
        (tmp_path / "latin").mkdir()
        (tmp_path / "latin" / "flow.json").write_bytes(b"\xff\xfe not utf8")
        with pytest.raises(FlowConfigError, match="Cannot read"):
            load_flow("latin", tmp_path)

    def test_invalid_json(self, tmp_path):
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "flow.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(FlowConfigError, match="Invalid JSON"):
            load_flow("broken", tmp_path)

    def test_document_must_be_object(self, tmp_path):
        (tmp_path / "arr").mkdir()
        (tmp_path / "arr" / "flow.json").write_text("[]", encoding="utf-8")
        with pytest.raises(FlowConfigError, match="JSON object"):
            load_flow("arr", tmp_path)

    def test_schema_mismatch(self, tmp_path):
        (tmp_path / "bad").mkdir()
        (tmp_path / "bad" / "flow.json").write_text(
            json.dumps({"states": {"MENU": {"on_select_next": ["not", "a", "map"]}}}), encoding="utf-8",
        )
        with pytest.raises(FlowConfigError, match="does not match the schema"):
            load_flow("bad", tmp_path)

    def test_defects_fail_closed(self, config_root, broker_flow_doc):
        broker_flow_doc["states"]["MENU"]["list"]["header"] = "x" * 61
        (config_root / "broker" / "flow.json").write_text(json.dumps(broker_flow_doc), encoding="utf-8")
        with pytest.raises(FlowValidationError) as exc:
            load_flow("broker", config_root)
        assert exc.value.tenant == "broker"
        assert "state=MENU" in exc.value.defects[0]

    def test_unregistered_action_rejected(self, config_root):
        with pytest.raises(FlowValidationError, match="action not registered"):
            load_flow("broker", config_root, known_actions={"get_calendar_slots"})

    def test_registered_action_accepted(self, config_root):
        flow = load_flow("broker", config_root, known_actions={"mock_crm_lookup"})
        assert flow.action_names == {"mock_crm_lookup"}

    @pytest.mark.parametrize("tenant", ["", ".", "..", "../etc", "a/b", "a\\b"])
    def test_unsafe_tenant_names(self, tmp_path, tenant):
        with pytest.raises(FlowConfigError, match="Invalid tenant"):
            tenant_dir(tmp_path, tenant)


class CountingLoader:
    def __init__(self, flow, fail_times: int = 0):
        self.flow = flow
        self.fail_times = fail_times
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, tenant):
        with self._lock:
            self.calls += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise FlowConfigError(tenant, "transient")
        return self.flow


class TestFlowCache:
    def test_loads_once(self, broker_flow):
        loader = CountingLoader(broker_flow)
        cache = FlowCache(loader=loader)
        assert cache.get("broker") is broker_flow
        assert cache.get("broker") is broker_flow
        assert loader.calls == 1
        assert cache.tenants == ["broker"]

    def test_failures_are_not_cached(self, broker_flow):
        loader = CountingLoader(broker_flow, fail_times=1)
        cache = FlowCache(loader=loader)
        with pytest.raises(FlowConfigError):
            cache.get("broker")
        assert cache.peek("broker") is None
        assert cache.get("broker") is broker_flow
        assert loader.calls == 2

    def test_invalidate_one_and_all(self, broker_flow):
        loader = CountingLoader(broker_flow)
        cache = FlowCache(loader=loader)
        cache.get("a")
        cache.get("b")
        cache.invalidate("a")
        assert cache.tenants == ["b"]
        cache.invalidate()
        assert cache.count == 0
        cache.get("a")
        assert loader.calls == 3

    def test_default_loader_reads_config_root(self, config_root):
        cache = FlowCache(config_root=config_root, known_actions={"mock_crm_lookup"})
        assert cache.get("broker").has_state("PRICING")

    def test_default_loader_passes_known_actions(self, config_root):
        cache = FlowCache(config_root=config_root, known_actions=set())
        with pytest.raises(FlowValidationError):
            cache.get("broker")

    def test_concurrent_gets_for_many_tenants(self, broker_flow):
        loader = CountingLoader(broker_flow)
        cache = FlowCache(loader=loader)
        tenants = [f"t{i % 10}" for i in range(200)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(cache.get, tenants))
        assert all(r is broker_flow for r in results)
        assert cache.count == 10
        # duplicate loads of one tenant are tolerated, never more than one per get
        assert 10 <= loader.calls <= 200


class TestShippedConfigs:
    def test_broker_flow_loads_against_default_registry(self):
        configs = Path(__file__).resolve().parent.parent / "configs"
        flow = load_flow("broker", configs, known_actions={a.value for a in ActionName})
        assert flow.default_state == "MENU"
        assert flow.action_names == {"mock_crm_lookup", "get_calendar_slots", "schedule_appointment"}
