"""
Flags server: wires configuration, sync, persistence and evaluation together.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional

from shared.config import FlagsConfig, get_config
from shared.errors import ServiceError, UninitializedError
from shared.logging import get_logger, set_unit_context
from shared.metrics import MetricsCollector, get_metrics_collector
from .adapters.data_adapter import DataAdapter
from .adapters.redis_adapter import RedisDataAdapter
from .persistence.redis_storage import RedisUserPersistentStorage
from .persistence.sticky import (
    PersistentAssignmentOptions,
    UserPersistedValues,
    UserPersistentStorage,
    UserPersistentStorageHandler,
)
from .rules.engine import Evaluator
from .rules.geo import IPCountryResolver
from .rules.hashing import HashAlgorithm
from .rules.models import EvaluationResult, Subject
from .store.fetcher import SpecsFetcher
from .store.spec_store import RulesUpdatedCallback, SpecStore


class FlagsServer:
    """In-process flag evaluation backed by a periodically synced ruleset.

    Evaluation methods are synchronous and safe to call before
    initialize(); until a ruleset is installed they return results with
    reason Uninitialized.
    """

    def __init__(
        self,
        config: Optional[FlagsConfig] = None,
        fetcher: Optional[SpecsFetcher] = None,
        data_adapter: Optional[DataAdapter] = None,
        persistent_storage: Optional[UserPersistentStorage] = None,
        metrics: Optional[MetricsCollector] = None,
        ip_resolver: Optional[IPCountryResolver] = None,
        rules_updated_callback: Optional[RulesUpdatedCallback] = None,
    ):
        self.config = config or get_config()
        self.logger = get_logger("flags.server")
        self.metrics = metrics or get_metrics_collector(self.config.service_name)

        if data_adapter is None and self.config.data_adapter_url:
            data_adapter = RedisDataAdapter(self.config.data_adapter_url)
        # Only storage built from config here is closed on shutdown.
        self._owned_storage: Optional[RedisUserPersistentStorage] = None
        if persistent_storage is None and self.config.persistent_storage_url:
            persistent_storage = RedisUserPersistentStorage(self.config.persistent_storage_url)
            self._owned_storage = persistent_storage

        self.ip_resolver = ip_resolver or IPCountryResolver(self.config.geoip_database_path)
        self.store = SpecStore(
            self.config,
            fetcher=fetcher,
            data_adapter=data_adapter,
            metrics=self.metrics,
            rules_updated_callback=rules_updated_callback,
        )
        self.evaluator = Evaluator(
            self.store,
            persistent_storage=UserPersistentStorageHandler(persistent_storage, self.metrics),
            ip_resolver=self.ip_resolver,
            metrics=self.metrics,
        )

    async def initialize(self, timeout: Optional[float] = None) -> None:
        self.ip_resolver.open()
        await self.store.initialize(timeout if timeout is not None else self.config.init_timeout_seconds)

    async def shutdown(self) -> None:
        await self.store.shutdown()
        self.ip_resolver.close()
        if self._owned_storage is not None:
            self._owned_storage.close()
            self._owned_storage = None

    # Evaluation

    def check_gate(self, subject: Subject, gate_name: str) -> EvaluationResult:
        return self.evaluator.check_gate(self._prepare(subject), gate_name)

    def get_config(self, subject: Subject, config_name: str,
                   options: Optional[PersistentAssignmentOptions] = None) -> EvaluationResult:
        return self.evaluator.get_config(self._prepare(subject), config_name, options)

    def get_experiment(self, subject: Subject, experiment_name: str,
                       options: Optional[PersistentAssignmentOptions] = None) -> EvaluationResult:
        return self.evaluator.get_config(self._prepare(subject), experiment_name, options)

    def get_layer(self, subject: Subject, layer_name: str,
                  options: Optional[PersistentAssignmentOptions] = None) -> EvaluationResult:
        return self.evaluator.get_layer(self._prepare(subject), layer_name, options)

    def get_client_initialize_response(
        self,
        subject: Subject,
        hash_algorithm: HashAlgorithm = HashAlgorithm.DJB2,
        include_local_overrides: bool = False,
        target_app_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        return self.evaluator.get_client_initialize_response(
            self._prepare(subject),
            hash_algorithm=hash_algorithm,
            include_local_overrides=include_local_overrides,
            target_app_id=target_app_id,
        )

    def get_user_persisted_values(self, subject: Subject, id_type: Optional[str]) -> UserPersistedValues:
        return self.evaluator.get_user_persisted_values(subject, id_type)

    # Overrides

    def override_gate(self, gate_name: str, value: bool, unit_id: Optional[str] = None) -> None:
        self.evaluator.override_gate(gate_name, value, unit_id)
        self.logger.info("Gate override set", gate=gate_name, unit_id=unit_id or "*")

    def override_config(self, config_name: str, value: Dict[str, Any], unit_id: Optional[str] = None) -> None:
        self.evaluator.override_config(config_name, value, unit_id)
        self.logger.info("Config override set", config=config_name, unit_id=unit_id or "*")

    def override_layer(self, layer_name: str, value: Dict[str, Any], unit_id: Optional[str] = None) -> None:
        self.evaluator.override_layer(layer_name, value, unit_id)
        self.logger.info("Layer override set", layer=layer_name, unit_id=unit_id or "*")

    def clear_all_overrides(self) -> None:
        self.evaluator.clear_all_gate_overrides()
        self.evaluator.clear_all_config_overrides()
        self.evaluator.clear_all_layer_overrides()

    # Catalog and sync control

    def get_feature_gate_list(self) -> List[str]:
        return self.evaluator.get_feature_gate_list()

    def get_experiment_list(self) -> List[str]:
        return self.evaluator.get_configs_list("experiment")

    def get_dynamic_config_list(self) -> List[str]:
        return self.evaluator.get_configs_list("dynamic_config")

    def get_autotune_list(self) -> List[str]:
        return self.evaluator.get_configs_list("autotune")

    def get_layer_list(self) -> List[str]:
        return self.evaluator.get_layer_list()

    def get_experiment_layer(self, experiment_name: str) -> Optional[str]:
        return self.evaluator.get_experiment_layer(experiment_name)

    async def sync_config_specs(self) -> None:
        self._require_initialized()
        await self.store.sync_config_specs()

    async def sync_id_lists(self) -> None:
        self._require_initialized()
        await self.store.sync_id_lists()

    def reset_sync_timer_if_exited(self) -> Optional[ServiceError]:
        return self.store.reset_sync_timer_if_exited()

    def health(self) -> Dict[str, Any]:
        snapshot = self.store.snapshot
        return {
            "status": "ok" if snapshot.is_initialized else "initializing",
            "service": self.config.service_name,
            "initialized": self.store.initialized,
            "snapshot": snapshot.summary(),
        }

    def _require_initialized(self) -> None:
        if not self.store.initialized:
            raise UninitializedError()

    def _prepare(self, subject: Subject) -> Subject:
        set_unit_context(subject.user_id)
        tier = self.config.environment_tier
        if tier and "tier" not in subject.environment:
            return replace(subject, environment={"tier": tier, **subject.environment})
        return subject
