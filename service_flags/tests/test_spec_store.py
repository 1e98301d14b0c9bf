"""
Unit tests for the spec store and its sync cycles.
"""

import asyncio
import json
import time
from dataclasses import FrozenInstanceError

import pytest

from shared.errors import ExternalServiceError, ServiceError
from shared.retry import RetryError
from service_flags.app.adapters.data_adapter import CONFIG_SPECS_KEY, ID_LISTS_KEY, id_list_key
from service_flags.app.rules.models import EvaluationReason
from service_flags.app.store.fetcher import IDListChunk
from service_flags.app.store.id_lists import IDList
from service_flags.app.store.spec_store import SpecStore, reverse_layer_mapping

from .helpers import InMemoryDataAdapter, config, gate, layer, payload, rule


def network_error():
    return RetryError("download failed", last_exception=Exception("boom"), attempts=3)


def good_payload(time=1000, **extra):
    return payload(
        gates=[gate("beta", [rule("everyone")])],
        configs=[config("settings", [rule("r", return_value={"limit": 10})])],
        layers=[layer("checkout", [rule("l", return_value={"size": "m"})])],
        layer_map={"checkout": ["exp"]},
        time=time,
        **extra,
    )


@pytest.fixture
def make_store(flags_config, mock_fetcher, metrics):
    def _make(config=None, **kwargs):
        return SpecStore(config or flags_config, fetcher=mock_fetcher, metrics=metrics, **kwargs)

    return _make


class TestRulesetSync:
    """Test cases for ruleset synchronization."""

    @pytest.mark.asyncio
    async def test_initialize_from_network(self, make_store, mock_fetcher, metrics):
        mock_fetcher.download_config_specs.return_value = good_payload(app_id="app-1")
        store = make_store()

        await store.initialize()

        snapshot = store.snapshot
        assert store.initialized is True
        assert snapshot.source is EvaluationReason.NETWORK
        assert snapshot.last_sync_time == 1000
        assert snapshot.initial_sync_time == 1000
        assert snapshot.primary_target_app_id == "app-1"
        assert set(snapshot.gates) == {"beta"}
        assert snapshot.get_experiment_layer("exp") == "checkout"
        mock_fetcher.download_config_specs.assert_awaited_once_with(0)
        assert metrics.registry.get_sample_value(
            "config_sync_total", {"kind": "config_specs", "outcome": "success"}) == 1.0

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_subsequent_sync_sends_last_sync_time(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.side_effect = [good_payload(time=1000), good_payload(time=2000)]
        store = make_store()
        await store.initialize()

        await store.sync_config_specs()

        assert mock_fetcher.download_config_specs.await_args_list[1].args == (1000,)
        assert store.snapshot.last_sync_time == 2000
        assert store.snapshot.initial_sync_time == 1000

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_payload_is_rejected_whole(self, make_store, mock_fetcher, metrics):
        bad = good_payload(time=2000)
        bad["dynamic_configs"].append({"name": "broken", "rules": "not-a-list"})
        mock_fetcher.download_config_specs.side_effect = [good_payload(time=1000), bad]
        store = make_store()
        await store.initialize()
        before = store.snapshot

        await store.sync_config_specs()

        assert store.snapshot is before
        assert metrics.registry.get_sample_value(
            "config_sync_total", {"kind": "config_specs", "outcome": "malformed"}) == 1.0

        await store.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("update", [
        {"has_updates": False},
        {"has_updates": True, "feature_gates": [], "dynamic_configs": {}, "layer_configs": []},
        {"has_updates": True, "feature_gates": []},
        "not-an-object",
    ])
    async def test_payloads_without_usable_updates(self, make_store, mock_fetcher, update):
        mock_fetcher.download_config_specs.side_effect = [good_payload(), update]
        store = make_store()
        await store.initialize()
        before = store.snapshot

        await store.sync_config_specs()

        assert store.snapshot is before

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_failed_first_sync_marks_initial_time(self, make_store, mock_fetcher, metrics):
        mock_fetcher.download_config_specs.side_effect = network_error()
        store = make_store()

        await store.initialize()

        assert store.initialized is True
        assert store.snapshot.is_initialized is False
        assert store.snapshot.initial_sync_time == -1
        assert metrics.registry.get_sample_value(
            "config_sync_total", {"kind": "config_specs", "outcome": "failure"}) == 1.0

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_failed_sync_keeps_previous_snapshot(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.side_effect = [
            good_payload(),
            ExternalServiceError("flags_api", "bad gateway"),
        ]
        store = make_store()
        await store.initialize()
        before = store.snapshot

        await store.sync_config_specs()

        assert store.snapshot is before

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_long_failure_streak_resets_counter(self, make_store, mock_fetcher, flags_config):
        mock_fetcher.download_config_specs.side_effect = network_error()
        store = make_store()
        streak = int(120 / flags_config.rulesets_sync_interval_seconds)
        store._sync_failure_count = streak

        await store.sync_config_specs()

        assert store._sync_failure_count == 0

    @pytest.mark.asyncio
    async def test_rules_updated_callback(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.return_value = good_payload(time=1234)
        received = []
        store = make_store(rules_updated_callback=lambda specs, sync_time: received.append((specs, sync_time)))

        await store.initialize()

        assert len(received) == 1
        specs, sync_time = received[0]
        assert sync_time == 1234
        assert json.loads(specs)["time"] == 1234

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_fail_sync(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.return_value = good_payload()

        def explode(specs, sync_time):
            raise RuntimeError("listener broke")

        store = make_store(rules_updated_callback=explode)

        await store.initialize()

        assert store.snapshot.source is EvaluationReason.NETWORK

        await store.shutdown()


class TestStartupSources:
    """Test cases for bootstrap, data adapter and local mode startup."""

    @pytest.mark.asyncio
    async def test_bootstrap_in_local_mode(self, make_store, mock_fetcher, local_config):
        local_config.bootstrap_values = json.dumps(good_payload(time=500))
        store = make_store(local_config)

        await store.initialize()

        assert store.snapshot.source is EvaluationReason.BOOTSTRAP
        assert store.snapshot.initial_sync_time == 500
        mock_fetcher.download_config_specs.assert_not_called()

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_bootstrap_then_background_network_sync(self, make_store, mock_fetcher, flags_config):
        flags_config.bootstrap_values = json.dumps(good_payload(time=500))

        async def slow_download(since_time):
            await asyncio.sleep(0.05)
            return good_payload(time=2000)

        mock_fetcher.download_config_specs.side_effect = slow_download
        store = make_store(flags_config)

        await store.initialize()
        assert store.snapshot.source is EvaluationReason.BOOTSTRAP

        # shutdown lets the in-flight network sync finish and apply
        await store.shutdown()

        assert store.snapshot.source is EvaluationReason.NETWORK
        assert store.snapshot.last_sync_time == 2000
        assert store.snapshot.initial_sync_time == 500

    @pytest.mark.asyncio
    async def test_invalid_bootstrap_falls_back_to_network(self, make_store, mock_fetcher, flags_config):
        flags_config.bootstrap_values = "{not json"
        mock_fetcher.download_config_specs.return_value = good_payload()
        store = make_store(flags_config)

        await store.initialize()

        assert store.snapshot.source is EvaluationReason.NETWORK

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_data_adapter_takes_precedence_over_bootstrap(self, make_store, mock_fetcher, local_config):
        local_config.bootstrap_values = json.dumps(good_payload(time=500))
        adapter = InMemoryDataAdapter({CONFIG_SPECS_KEY: json.dumps(good_payload(time=900))})
        store = make_store(local_config, data_adapter=adapter)

        await store.initialize()

        assert adapter.initialized is True
        assert store.snapshot.source is EvaluationReason.DATA_ADAPTER
        assert store.snapshot.last_sync_time == 900

        await store.shutdown()
        assert adapter.is_shutdown is True

    @pytest.mark.asyncio
    async def test_failing_adapter_is_detached(self, make_store, mock_fetcher, metrics):
        mock_fetcher.download_config_specs.return_value = good_payload(time=1200)
        adapter = InMemoryDataAdapter({CONFIG_SPECS_KEY: json.dumps(good_payload(time=900))},
                                      fail_initialize=True)
        store = make_store(data_adapter=adapter)

        await store.initialize()

        assert store.initialized is True
        assert store.data_adapter is None
        assert store.snapshot.source is EvaluationReason.NETWORK
        assert store.snapshot.last_sync_time == 1200
        assert adapter.writes == []
        assert store._config_specs_task is not None
        assert metrics.registry.get_sample_value(
            "config_sync_total", {"kind": "config_specs", "outcome": "adapter_unavailable"}) == 1.0

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_failing_adapter_falls_back_to_bootstrap(self, make_store, mock_fetcher, local_config):
        local_config.bootstrap_values = json.dumps(good_payload(time=500))
        adapter = InMemoryDataAdapter(fail_initialize=True)
        store = make_store(local_config, data_adapter=adapter)

        await store.initialize()

        assert store.snapshot.source is EvaluationReason.BOOTSTRAP
        assert store.snapshot.initial_sync_time == 500

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_network_sync_is_written_to_adapter(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.return_value = good_payload(time=1500)
        adapter = InMemoryDataAdapter()
        store = make_store(data_adapter=adapter)

        await store.initialize()

        key, value, sync_time = adapter.writes[0]
        assert key == CONFIG_SPECS_KEY
        assert json.loads(value)["time"] == 1500
        assert sync_time == 1500

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_adapter_polling_replaces_network(self, make_store, mock_fetcher):
        adapter = InMemoryDataAdapter(
            {CONFIG_SPECS_KEY: json.dumps(good_payload(time=700))},
            polling_keys=[CONFIG_SPECS_KEY],
        )
        store = make_store(data_adapter=adapter)
        await store.initialize()
        mock_fetcher.download_config_specs.reset_mock()

        adapter.values[CONFIG_SPECS_KEY] = json.dumps(good_payload(time=800))
        await store.sync_config_specs()

        assert store.snapshot.last_sync_time == 800
        assert store.snapshot.source is EvaluationReason.DATA_ADAPTER
        mock_fetcher.download_config_specs.assert_not_called()

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_local_mode_without_bootstrap(self, make_store, mock_fetcher, local_config):
        store = make_store(local_config)

        await store.initialize()

        assert store.snapshot.is_initialized is False
        assert store.snapshot.initial_sync_time == -1
        mock_fetcher.download_config_specs.assert_not_called()

        await store.shutdown()


class TestLifecycle:
    """Test cases for initialization timeouts, polling and shutdown."""

    @pytest.mark.asyncio
    async def test_initialize_timeout_continues_in_background(self, make_store, mock_fetcher):
        release = asyncio.Event()

        async def gated_download(since_time):
            await release.wait()
            return good_payload(time=3000)

        mock_fetcher.download_config_specs.side_effect = gated_download
        store = make_store()

        await store.initialize(timeout=0.01)
        assert store.initialized is False
        assert store.snapshot.is_initialized is False

        release.set()
        await store.initialize()

        assert store.initialized is True
        assert store.snapshot.last_sync_time == 3000
        mock_fetcher.download_config_specs.assert_awaited_once()

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_polling_and_closes_fetcher(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.return_value = good_payload()
        store = make_store()
        await store.initialize()
        polls = [store._config_specs_task, store._id_lists_task]

        await store.shutdown()

        assert all(task.done() for task in polls)
        mock_fetcher.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_loop_survives_a_failing_cycle(self, make_store, metrics):
        store = make_store()
        calls = []
        recovered = asyncio.Event()

        async def cycle():
            calls.append(1)
            if len(calls) == 1:
                raise TypeError("unexpected lookup shape")
            recovered.set()

        poller = asyncio.create_task(store._poll(cycle, "id_lists", 0))
        await asyncio.wait_for(recovered.wait(), timeout=1)
        poller.cancel()
        await asyncio.gather(poller, return_exceptions=True)

        assert len(calls) >= 2
        assert metrics.registry.get_sample_value(
            "config_sync_total", {"kind": "id_lists", "outcome": "failure"}) == 1.0

        await store.shutdown()

    def test_reset_sync_timer_when_recent(self, make_store):
        store = make_store()

        assert store.reset_sync_timer_if_exited() is None

    @pytest.mark.asyncio
    async def test_reset_sync_timer_when_stale(self, make_store, mock_fetcher):
        mock_fetcher.download_config_specs.return_value = good_payload(time=4000)
        store = make_store()
        store._last_config_sync_attempt = time.time() - 500

        error = store.reset_sync_timer_if_exited()
        await store.shutdown()

        assert isinstance(error, ServiceError)
        assert "last_sync_attempt" in error.details
        assert store.snapshot.last_sync_time == 4000


class TestIDListSync:
    """Test cases for ID list synchronization."""

    URL = "https://cdn.test/beta"

    def lookup(self, size, file_id="f1", creation_time=1, **others):
        entries = {"beta": {"url": self.URL, "fileID": file_id, "creationTime": creation_time, "size": size}}
        entries.update(others)
        return entries

    @pytest.mark.asyncio
    async def test_incremental_diff(self, make_store, mock_fetcher):
        mock_fetcher.get_id_lists.side_effect = [self.lookup(6), self.lookup(12)]
        mock_fetcher.fetch_id_list_range.side_effect = [
            IDListChunk("+A\n+B\n", 6),
            IDListChunk("-A\n+C\n", 6),
        ]
        store = make_store()

        await store.sync_id_lists()
        first = store.snapshot.get_id_list("beta")
        await store.sync_id_lists()
        second = store.snapshot.get_id_list("beta")

        assert first.ids == frozenset({"A", "B"})
        assert second.ids == frozenset({"B", "C"})
        assert second.read_bytes == 12
        assert mock_fetcher.fetch_id_list_range.await_args_list[1].args == (self.URL, 6)

    @pytest.mark.asyncio
    async def test_unchanged_size_skips_download(self, make_store, mock_fetcher):
        mock_fetcher.get_id_lists.side_effect = [self.lookup(3), self.lookup(3)]
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("+A\n", 3)
        store = make_store()

        await store.sync_id_lists()
        await store.sync_id_lists()

        assert mock_fetcher.fetch_id_list_range.await_count == 1

    @pytest.mark.asyncio
    async def test_rotated_file_restarts_from_zero(self, make_store, mock_fetcher):
        mock_fetcher.get_id_lists.side_effect = [
            self.lookup(6),
            self.lookup(3, file_id="f2", creation_time=2),
        ]
        mock_fetcher.fetch_id_list_range.side_effect = [
            IDListChunk("+A\n+B\n", 6),
            IDListChunk("+D\n", 3),
        ]
        store = make_store()

        await store.sync_id_lists()
        await store.sync_id_lists()

        rotated = store.snapshot.get_id_list("beta")
        assert rotated.ids == frozenset({"D"})
        assert rotated.file_id == "f2"
        assert rotated.read_bytes == 3
        assert mock_fetcher.fetch_id_list_range.await_args_list[1].args == (self.URL, 0)

    @pytest.mark.asyncio
    async def test_older_creation_time_is_ignored(self, make_store, mock_fetcher):
        mock_fetcher.get_id_lists.side_effect = [
            self.lookup(3, creation_time=5),
            self.lookup(9, file_id="f0", creation_time=4),
        ]
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("+A\n", 3)
        store = make_store()

        await store.sync_id_lists()
        await store.sync_id_lists()

        kept = store.snapshot.get_id_list("beta")
        assert kept.file_id == "f1"
        assert kept.ids == frozenset({"A"})
        assert mock_fetcher.fetch_id_list_range.await_count == 1

    @pytest.mark.asyncio
    async def test_desync_drops_list(self, make_store, mock_fetcher, metrics):
        mock_fetcher.get_id_lists.return_value = self.lookup(7)
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("garbage", 7)
        store = make_store()

        await store.sync_id_lists()

        assert store.snapshot.get_id_list("beta") is None
        assert metrics.registry.get_sample_value(
            "config_sync_total", {"kind": "id_lists", "outcome": "partial_failure"}) == 1.0

    @pytest.mark.asyncio
    async def test_one_failing_list_does_not_block_others(self, make_store, mock_fetcher):
        other_url = "https://cdn.test/vip"
        mock_fetcher.get_id_lists.side_effect = [
            self.lookup(3),
            self.lookup(6, vip={"url": other_url, "fileID": "v1", "creationTime": 1, "size": 3}),
        ]

        async def fetch(url, offset):
            if url == other_url:
                return IDListChunk("+V\n", 3)
            if offset == 0:
                return IDListChunk("+A\n", 3)
            raise network_error()

        mock_fetcher.fetch_id_list_range.side_effect = fetch
        store = make_store()

        await store.sync_id_lists()
        await store.sync_id_lists()

        assert store.snapshot.get_id_list("beta").ids == frozenset({"A"})
        assert store.snapshot.get_id_list("vip").ids == frozenset({"V"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [{"size": "10"}, {"creationTime": "1"}])
    async def test_malformed_lookup_entry_is_skipped(self, make_store, mock_fetcher, bad):
        vip = {"url": "https://cdn.test/vip", "fileID": "v1", "creationTime": 1, "size": 3, **bad}
        mock_fetcher.get_id_lists.return_value = self.lookup(3, vip=vip)
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("+A\n", 3)
        store = make_store()

        await store.sync_id_lists()

        assert store.snapshot.get_id_list("beta").ids == frozenset({"A"})
        assert store.snapshot.get_id_list("vip") is None
        mock_fetcher.fetch_id_list_range.assert_awaited_once_with(self.URL, 0)

    @pytest.mark.asyncio
    async def test_lists_missing_from_lookup_are_removed(self, make_store, mock_fetcher, metrics):
        mock_fetcher.get_id_lists.side_effect = [self.lookup(3), {}]
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("+A\n", 3)
        store = make_store()

        await store.sync_id_lists()
        await store.sync_id_lists()

        assert store.snapshot.id_lists == {}
        assert metrics.registry.get_sample_value("id_lists_tracked") == 0.0

    @pytest.mark.asyncio
    async def test_lookup_failure_keeps_lists(self, make_store, mock_fetcher):
        mock_fetcher.get_id_lists.side_effect = [self.lookup(3), network_error()]
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("+A\n", 3)
        store = make_store()

        await store.sync_id_lists()
        await store.sync_id_lists()

        assert store.snapshot.get_id_list("beta").ids == frozenset({"A"})

    @pytest.mark.asyncio
    async def test_lists_saved_to_adapter(self, make_store, mock_fetcher):
        mock_fetcher.get_id_lists.return_value = self.lookup(6)
        mock_fetcher.fetch_id_list_range.return_value = IDListChunk("+B\n+A\n", 6)
        adapter = InMemoryDataAdapter()
        store = make_store(data_adapter=adapter)

        await store.sync_id_lists()

        assert adapter.values[id_list_key("beta")] == "+A\n+B\n"
        assert json.loads(adapter.values[ID_LISTS_KEY]) == self.lookup(6)

    @pytest.mark.asyncio
    async def test_initialize_loads_lists_from_adapter(self, make_store, mock_fetcher, local_config):
        adapter = InMemoryDataAdapter({
            CONFIG_SPECS_KEY: json.dumps(good_payload()),
            ID_LISTS_KEY: json.dumps(["beta"]),
            id_list_key("beta"): "+A\n+B\n",
        })
        store = make_store(local_config, data_adapter=adapter)

        await store.initialize()

        assert store.snapshot.get_id_list("beta").ids == frozenset({"A", "B"})
        mock_fetcher.get_id_lists.assert_not_called()

        await store.shutdown()

    @pytest.mark.asyncio
    async def test_disabled_id_lists(self, make_store, mock_fetcher, flags_config):
        flags_config.disable_id_lists = True
        store = make_store(flags_config)

        await store.sync_id_lists()

        mock_fetcher.get_id_lists.assert_not_called()


class TestLayerMapping:
    """Test cases for the experiment to layer index."""

    def test_reverse_layer_mapping(self):
        mapping = reverse_layer_mapping({"checkout": ["exp_a", "exp_b"], "search": ["exp_c"], "bad": "x"})

        assert mapping == {"exp_a": "checkout", "exp_b": "checkout", "exp_c": "search"}
        assert reverse_layer_mapping(None) == {}

    def test_id_list_is_immutable(self):
        id_list = IDList.fresh("beta", url="u", file_id="f", creation_time=1)

        with pytest.raises(FrozenInstanceError):
            id_list.read_bytes = 5
