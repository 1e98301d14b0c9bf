"""
Spec store: owns the current snapshot and the background sync loops.

The store is the only writer of the snapshot. Each successful sync
builds replacement values off to the side and installs them with one
reference swap, so evaluations running concurrently always read a
complete snapshot.
"""

import asyncio
import json
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from shared.config import FlagsConfig
from shared.errors import (
    AccessLayerException,
    IDListDesyncError,
    LocalModeNetworkError,
    MalformedSpecError,
    ServiceError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryError
from ..adapters.data_adapter import CONFIG_SPECS_KEY, ID_LISTS_KEY, DataAdapter, id_list_key
from ..rules.models import EvaluationReason, Spec
from .fetcher import SpecsFetcher
from .id_lists import (
    IDList,
    apply_diff,
    parse_bootstrap_lookup,
    parse_lookup_response,
    serialize_for_adapter,
)
from .snapshot import Snapshot


SYNC_OUTDATED_MAX_SECONDS = 120.0

RulesUpdatedCallback = Callable[[str, int], None]

# Errors a sync cycle recovers from by keeping the previous snapshot.
_SYNC_ERRORS = (RetryError, AccessLayerException, ValueError)


def reverse_layer_mapping(layers: Any) -> Dict[str, str]:
    """Invert {layer: [experiment, ...]} into {experiment: layer}."""
    experiment_to_layer: Dict[str, str] = {}
    if not isinstance(layers, dict):
        return experiment_to_layer
    for layer_name, experiments in layers.items():
        if not isinstance(experiments, list):
            continue
        for experiment_name in experiments:
            experiment_to_layer[str(experiment_name)] = layer_name
    return experiment_to_layer


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_specs(items: List[Any]) -> Dict[str, Spec]:
    specs: Dict[str, Spec] = {}
    for item in items:
        spec = Spec.from_dict(item)
        specs[spec.name] = spec
    return specs


class SpecStore:
    """Holds the current snapshot and keeps it fresh."""

    def __init__(
        self,
        config: FlagsConfig,
        fetcher: Optional[SpecsFetcher] = None,
        data_adapter: Optional[DataAdapter] = None,
        metrics: Optional[MetricsCollector] = None,
        rules_updated_callback: Optional[RulesUpdatedCallback] = None,
    ):
        self.config = config
        self.fetcher = fetcher or SpecsFetcher(config)
        self.data_adapter = data_adapter
        self.metrics = metrics
        self.rules_updated_callback = rules_updated_callback
        self.logger = get_logger("flags.store")

        self._snapshot = Snapshot.empty()
        self._initialized = False
        self._is_shutdown = False
        self._init_task: Optional[asyncio.Task] = None
        self._config_specs_task: Optional[asyncio.Task] = None
        self._id_lists_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._config_sync_lock = asyncio.Lock()
        self._id_list_sync_lock = asyncio.Lock()
        self._sync_failure_count = 0
        self._last_config_sync_attempt = time.time()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def initialized(self) -> bool:
        return self._initialized

    # Lifecycle

    async def initialize(self, timeout: Optional[float] = None) -> None:
        """Bootstrap, then sync from the adapter and network, then start polling.

        When timeout elapses first this returns early; the initialization
        keeps running in the background and installs its result when done.
        """
        if self._init_task is None:
            self._init_task = self._spawn(self._initialize())
        try:
            await asyncio.wait_for(asyncio.shield(self._init_task), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Initialization timed out, continuing in background", timeout=timeout)

    async def _initialize(self) -> None:
        if self.data_adapter is not None:
            await self._initialize_data_adapter()

        bootstrapped = False
        if self.config.bootstrap_values:
            if self.data_adapter is not None:
                self.logger.error("Both bootstrap values and a data adapter are configured, using the data adapter")
            else:
                bootstrapped = self._bootstrap(self.config.bootstrap_values)
                self._set_initial_sync_time()

        if bootstrapped:
            # Already serving; refresh from the network without blocking startup.
            if not self.config.local_mode:
                self._spawn(self.sync_config_specs())
        else:
            if self.data_adapter is not None:
                await self._sync_config_specs_from_adapter()
            if not self.config.local_mode:
                await self._run_config_sync(cold_start=True)
            self._set_initial_sync_time()

        if not self.config.disable_id_lists:
            await self._initialize_id_lists()

        self._start_polling()
        self._initialized = True
        self.logger.info("Spec store initialized", **self._snapshot.summary())

    async def _initialize_data_adapter(self) -> None:
        try:
            await self.data_adapter.initialize()
        except Exception as e:
            # Detached: the network alone drives syncs from here on.
            self.logger.error("Data adapter failed to initialize, continuing without it", error=str(e))
            self._record_sync("config_specs", "adapter_unavailable")
            self.data_adapter = None

    async def shutdown(self) -> None:
        """Stop polling, let in-flight syncs finish and apply, then release collaborators."""
        self._is_shutdown = True
        await self._cancel_polling()

        pending = [task for task in self._inflight if not task.done()]
        if pending:
            self.logger.info("Draining in-flight syncs", count=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        if self.data_adapter is not None:
            await self.data_adapter.shutdown()
        await self.fetcher.close()
        self.logger.info("Spec store shut down")

    def reset_sync_timer_if_exited(self) -> Optional[ServiceError]:
        """Restart the polling loops when no ruleset sync has started recently."""
        now = time.time()
        if self._last_config_sync_attempt >= now - SYNC_OUTDATED_MAX_SECONDS:
            return None

        last_attempt = self._last_config_sync_attempt
        self._restart_polling()
        self._spawn(self.sync_config_specs())
        self.logger.warning("Force reset sync timer", last_sync_attempt=last_attempt, now=now)
        return ServiceError(
            "Force reset sync timer",
            details={"last_sync_attempt": last_attempt, "now": now},
        )

    # Ruleset sync

    async def sync_config_specs(self) -> None:
        """Run one ruleset sync cycle."""
        await self._run_config_sync(cold_start=False)

    async def _run_config_sync(self, cold_start: bool) -> None:
        async with self._config_sync_lock:
            self._last_config_sync_attempt = time.time()
            from_adapter = (
                self.data_adapter is not None
                and self.data_adapter.supports_polling_updates_for(CONFIG_SPECS_KEY)
            )
            started = time.monotonic()
            try:
                if from_adapter:
                    applied = await self._sync_config_specs_from_adapter()
                else:
                    applied = await self._sync_config_specs_from_network()
                self._sync_failure_count = 0
                self._record_sync("config_specs", "success" if applied else "no_updates")
            except LocalModeNetworkError:
                self._record_sync("config_specs", "local_mode")
            except _SYNC_ERRORS as e:
                self._sync_failure_count += 1
                self._record_sync("config_specs", "failure")
                self._report_sync_failure(e, cold_start, from_adapter)
            finally:
                self._observe_sync("config_specs", time.monotonic() - started)

    def _report_sync_failure(self, error: Exception, cold_start: bool, from_adapter: bool) -> None:
        failing_for = self._sync_failure_count * self.config.rulesets_sync_interval_seconds
        if cold_start:
            self.logger.error("Failed to initialize rulesets from the network", error=str(error))
        elif failing_for > SYNC_OUTDATED_MAX_SECONDS:
            self.logger.warning(
                "Ruleset sync has been failing, serving definitions from the last successful sync",
                source="data_adapter" if from_adapter else "network",
                failing_for_seconds=failing_for,
                error=str(error),
            )
            self._sync_failure_count = 0
        else:
            self.logger.warning("Ruleset sync failed", error=str(error), failures=self._sync_failure_count)

    async def _sync_config_specs_from_network(self) -> bool:
        payload = await self.fetcher.download_config_specs(self._snapshot.last_sync_time)
        if not self._apply_payload(payload, EvaluationReason.NETWORK):
            return False

        payload_str = json.dumps(payload)
        sync_time = self._snapshot.last_sync_time
        if self.rules_updated_callback is not None:
            try:
                self.rules_updated_callback(payload_str, sync_time)
            except Exception as e:
                self.logger.error("Rules updated callback failed", error=str(e))
        if self.data_adapter is not None:
            await self.data_adapter.set(CONFIG_SPECS_KEY, payload_str, sync_time)
        return True

    async def _sync_config_specs_from_adapter(self) -> bool:
        response = await self.data_adapter.get(CONFIG_SPECS_KEY)
        if response.error is not None or not response.result:
            self.logger.debug("No rulesets in data adapter", error=str(response.error) if response.error else None)
            return False
        try:
            payload = json.loads(response.result)
        except json.JSONDecodeError as e:
            self.logger.warning("Data adapter returned invalid ruleset JSON", error=str(e))
            return False
        return self._apply_payload(payload, EvaluationReason.DATA_ADAPTER)

    def _bootstrap(self, bootstrap_values: str) -> bool:
        try:
            payload = json.loads(bootstrap_values)
        except json.JSONDecodeError as e:
            self.logger.error("Bootstrap values are not valid JSON", error=str(e))
            return False
        return self._apply_payload(payload, EvaluationReason.BOOTSTRAP)

    def _apply_payload(self, payload: Any, source: EvaluationReason) -> bool:
        """Parse a ruleset payload and swap it in; all or nothing."""
        if not isinstance(payload, dict) or not payload.get("has_updates"):
            self.logger.debug("Ruleset payload has no updates", source=source.value)
            return False

        sections = [payload.get(key) for key in ("feature_gates", "dynamic_configs", "layer_configs")]
        if not all(isinstance(section, list) for section in sections):
            self.logger.warning("Discarding ruleset payload with malformed sections", source=source.value)
            self._record_sync("config_specs", "malformed")
            return False

        try:
            gates, configs, layers = (_parse_specs(section) for section in sections)
        except MalformedSpecError as e:
            self.logger.warning(
                "Discarding ruleset payload with malformed spec",
                source=source.value,
                error=e.message,
                details=e.details,
            )
            self._record_sync("config_specs", "malformed")
            return False

        sync_time = payload.get("time")
        current = self._snapshot
        self._snapshot = replace(
            current,
            gates=gates,
            configs=configs,
            layers=layers,
            experiment_to_layer=reverse_layer_mapping(payload.get("layers")),
            last_sync_time=int(sync_time) if isinstance(sync_time, (int, float)) else current.last_sync_time,
            source=source,
            primary_target_app_id=payload.get("app_id", current.primary_target_app_id),
        )
        self.logger.info("Rulesets updated", source=source.value, gates=len(gates),
                         configs=len(configs), layers=len(layers))
        return True

    def _set_initial_sync_time(self) -> None:
        last = self._snapshot.last_sync_time
        self._snapshot = replace(self._snapshot, initial_sync_time=last if last != 0 else -1)

    # ID list sync

    async def sync_id_lists(self) -> None:
        """Run one ID list sync cycle."""
        if self.config.disable_id_lists:
            return
        async with self._id_list_sync_lock:
            started = time.monotonic()
            try:
                adapter = self.data_adapter
                if adapter is not None and adapter.supports_polling_updates_for(ID_LISTS_KEY):
                    response = await adapter.get(ID_LISTS_KEY)
                    if isinstance(response.result, str):
                        await self._sync_id_lists_from_adapter(response.result)
                        return
                await self._sync_id_lists_from_network()
            finally:
                self._observe_sync("id_lists", time.monotonic() - started)

    async def _initialize_id_lists(self) -> None:
        async with self._id_list_sync_lock:
            if self.data_adapter is not None:
                response = await self.data_adapter.get(ID_LISTS_KEY)
                if isinstance(response.result, str):
                    await self._sync_id_lists_from_adapter(response.result)
                    return
            await self._sync_id_lists_from_network()

    async def _sync_id_lists_from_adapter(self, lookup_raw: str) -> None:
        names = parse_bootstrap_lookup(lookup_raw)
        if names is None:
            self.logger.warning("Data adapter returned an invalid id list lookup")
            return

        results = await asyncio.gather(
            *(self._load_id_list_from_adapter(name) for name in names),
            return_exceptions=True,
        )
        id_lists = dict(self._snapshot.id_lists)
        for name, result in zip(names, results):
            if isinstance(result, IDList):
                id_lists[name] = result
            elif isinstance(result, BaseException):
                self.logger.warning("Failed to load id list from data adapter", list_name=name, error=str(result))
        self._install_id_lists(id_lists)
        self._record_sync("id_lists", "success")

    async def _load_id_list_from_adapter(self, name: str) -> Optional[IDList]:
        response = await self.data_adapter.get(id_list_key(name))
        if not response.result:
            return None
        fresh = IDList.fresh(name, url="bootstrap", file_id="bootstrap", creation_time=0)
        return apply_diff(fresh, response.result, len(response.result.encode("utf-8")))

    async def _sync_id_lists_from_network(self) -> None:
        try:
            raw_lookup = await self.fetcher.get_id_lists()
        except LocalModeNetworkError:
            return
        except _SYNC_ERRORS as e:
            self.logger.warning("Failed to fetch id list lookup", error=str(e))
            self._record_sync("id_lists", "failure")
            return

        lookup = parse_lookup_response(raw_lookup)
        if lookup is None:
            self.logger.warning("Id list lookup response is not an object")
            self._record_sync("id_lists", "malformed")
            return

        current = self._snapshot.id_lists
        working: Dict[str, IDList] = {}
        to_fetch: List[IDList] = []

        for name, entry in lookup.items():
            existing = current.get(name)
            if not isinstance(entry, dict):
                entry = {}
            url = entry.get("url")
            file_id = entry.get("fileID")
            creation_time = entry.get("creationTime", 0)
            size = entry.get("size") or 0
            old_creation_time = existing.creation_time if existing else 0
            if not (isinstance(url, str) and isinstance(file_id, str)
                    and _is_number(creation_time) and _is_number(size)):
                self.logger.warning("Skipping malformed id list lookup entry", list_name=name)
                if existing is not None:
                    working[name] = existing
                continue
            if creation_time < old_creation_time:
                if existing is not None:
                    working[name] = existing
                continue

            id_list = existing
            if existing is None or (file_id != existing.file_id and creation_time >= old_creation_time):
                # New list or rotated file: rebuild from byte zero.
                id_list = IDList.fresh(name, url=url, file_id=file_id, creation_time=int(creation_time))
            working[name] = id_list

            if size <= id_list.read_bytes:
                continue
            to_fetch.append(id_list)

        results = await asyncio.gather(
            *(self._fetch_id_list_tail(id_list) for id_list in to_fetch),
            return_exceptions=True,
        )
        failures = 0
        for id_list, result in zip(to_fetch, results):
            if isinstance(result, IDList):
                working[id_list.name] = result
            elif isinstance(result, IDListDesyncError):
                failures += 1
                working.pop(id_list.name, None)
                self.logger.warning("Dropping desynchronized id list", list_name=id_list.name)
            else:
                failures += 1
                self.logger.warning("Failed to fetch id list", list_name=id_list.name, error=str(result))

        removed = [name for name in current if name not in lookup]
        if removed:
            self.logger.info("Removing id lists absent from lookup", lists=removed)

        self._install_id_lists(working)
        self._record_sync("id_lists", "partial_failure" if failures else "success")

        if self.data_adapter is not None:
            await self._save_id_lists_to_adapter(working, lookup)

    async def _fetch_id_list_tail(self, id_list: IDList) -> IDList:
        chunk = await self.fetcher.fetch_id_list_range(id_list.url, id_list.read_bytes)
        return apply_diff(id_list, chunk.text, chunk.content_length)

    async def _save_id_lists_to_adapter(self, id_lists: Dict[str, IDList], lookup: Dict[str, Any]) -> None:
        results = await asyncio.gather(
            *(self.data_adapter.set(id_list_key(name), serialize_for_adapter(id_list))
              for name, id_list in id_lists.items()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                self.logger.warning("Failed to save id list to data adapter", error=str(result))
        await self.data_adapter.set(ID_LISTS_KEY, json.dumps(lookup))

    def _install_id_lists(self, id_lists: Dict[str, IDList]) -> None:
        self._snapshot = replace(self._snapshot, id_lists=id_lists)
        if self.metrics:
            self.metrics.set_gauge("id_lists_tracked", len(id_lists))

    # Polling

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _start_polling(self) -> None:
        if self._is_shutdown:
            return
        if self._config_specs_task is None or self._config_specs_task.done():
            self._config_specs_task = asyncio.create_task(
                self._poll(self.sync_config_specs, "config_specs", self.config.rulesets_sync_interval_seconds)
            )
        if not self.config.disable_id_lists and (self._id_lists_task is None or self._id_lists_task.done()):
            self._id_lists_task = asyncio.create_task(
                self._poll(self.sync_id_lists, "id_lists", self.config.id_lists_sync_interval_seconds)
            )

    def _restart_polling(self) -> None:
        for task in (self._config_specs_task, self._id_lists_task):
            if task is not None:
                task.cancel()
        self._config_specs_task = None
        self._id_lists_task = None
        self._start_polling()

    async def _cancel_polling(self) -> None:
        tasks = [task for task in (self._config_specs_task, self._id_lists_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._config_specs_task = None
        self._id_lists_task = None

    async def _poll(self, sync: Callable[[], Awaitable[None]], kind: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                # Cancelling the loop leaves the shielded cycle running for shutdown to drain.
                await asyncio.shield(self._spawn(sync()))
            except Exception as e:
                self.logger.error("Sync cycle failed unexpectedly", kind=kind, error=str(e), exc_info=True)
                self._record_sync(kind, "failure")

    # Metrics

    def _record_sync(self, kind: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("config_sync_total", kind=kind, outcome=outcome)

    def _observe_sync(self, kind: str, duration: float) -> None:
        if self.metrics:
            self.metrics.observe_histogram("config_sync_duration_seconds", duration, kind=kind)
