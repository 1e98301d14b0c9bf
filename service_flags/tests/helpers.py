"""
Builders for wire-format specs and snapshots used across the test suite.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.errors import AccessLayerException
from service_flags.app.adapters.data_adapter import AdapterResponse, DataAdapter
from service_flags.app.persistence.sticky import UserPersistentStorage
from service_flags.app.rules.models import EvaluationReason, Spec
from service_flags.app.store.id_lists import IDList
from service_flags.app.store.snapshot import Snapshot


def condition(type: str, operator: Optional[str] = None, field: Optional[str] = None,
              target_value: Any = None, id_type: str = "userID",
              additional_values: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "type": type,
        "operator": operator,
        "field": field,
        "targetValue": target_value,
        "idType": id_type,
        "additionalValues": additional_values or {},
    }


def rule(rule_id: str, conditions: Optional[List[Dict[str, Any]]] = None, pass_percentage: float = 100,
         return_value: Any = True, id_type: str = "userID", **extra) -> Dict[str, Any]:
    data = {
        "id": rule_id,
        "name": rule_id,
        "salt": rule_id,
        "passPercentage": pass_percentage,
        "conditions": conditions if conditions is not None else [condition("public")],
        "returnValue": return_value,
        "idType": id_type,
    }
    data.update(extra)
    return data


def gate(name: str, rules: List[Dict[str, Any]], enabled: bool = True, **extra) -> Dict[str, Any]:
    data = {
        "name": name,
        "type": "feature_gate",
        "entity": "feature_gate",
        "salt": f"{name}_salt",
        "defaultValue": False,
        "enabled": enabled,
        "idType": "userID",
        "rules": rules,
    }
    data.update(extra)
    return data


def config(name: str, rules: List[Dict[str, Any]], entity: str = "dynamic_config",
           default_value: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    data = {
        "name": name,
        "type": "dynamic_config",
        "entity": entity,
        "salt": f"{name}_salt",
        "defaultValue": default_value if default_value is not None else {},
        "enabled": True,
        "idType": "userID",
        "rules": rules,
    }
    data.update(extra)
    return data


def layer(name: str, rules: List[Dict[str, Any]], default_value: Optional[Dict[str, Any]] = None,
          **extra) -> Dict[str, Any]:
    return config(name, rules, entity="layer", default_value=default_value, **extra)


def payload(gates: Iterable[Dict[str, Any]] = (), configs: Iterable[Dict[str, Any]] = (),
            layers: Iterable[Dict[str, Any]] = (), layer_map: Optional[Dict[str, List[str]]] = None,
            time: int = 1000, **extra) -> Dict[str, Any]:
    data = {
        "has_updates": True,
        "time": time,
        "feature_gates": list(gates),
        "dynamic_configs": list(configs),
        "layer_configs": list(layers),
        "layers": layer_map or {},
    }
    data.update(extra)
    return data


def build_snapshot(gates: Iterable[Dict[str, Any]] = (), configs: Iterable[Dict[str, Any]] = (),
                   layers: Iterable[Dict[str, Any]] = (), id_lists: Optional[Dict[str, Iterable[str]]] = None,
                   layer_map: Optional[Dict[str, List[str]]] = None, time: int = 1000,
                   source: EvaluationReason = EvaluationReason.NETWORK) -> Snapshot:
    def parse(items):
        return {spec.name: spec for spec in (Spec.from_dict(item) for item in items)}

    experiment_to_layer = {
        experiment: layer_name
        for layer_name, experiments in (layer_map or {}).items()
        for experiment in experiments
    }
    return Snapshot(
        gates=parse(gates),
        configs=parse(configs),
        layers=parse(layers),
        id_lists={
            name: IDList(name=name, file_id="file", creation_time=1, url="https://cdn.test/" + name,
                         ids=frozenset(ids))
            for name, ids in (id_lists or {}).items()
        },
        experiment_to_layer=experiment_to_layer,
        last_sync_time=time,
        initial_sync_time=time,
        source=source,
    )


class StaticStore:
    """Stands in for SpecStore where only the snapshot is read."""

    def __init__(self, snapshot: Optional[Snapshot] = None):
        self.snapshot = snapshot or Snapshot.empty()


class InMemoryStorage(UserPersistentStorage):
    """UserPersistentStorage backed by a dict, for sticky bucketing tests."""

    def __init__(self):
        self.data: Dict[str, Dict[str, Any]] = {}

    def load(self, key):
        return dict(self.data.get(key, {}))

    def save(self, key, spec_name, data):
        self.data.setdefault(key, {})[spec_name] = data

    def delete(self, key, spec_name):
        self.data.get(key, {}).pop(spec_name, None)


class InMemoryDataAdapter(DataAdapter):
    """DataAdapter backed by a dict that records every write."""

    def __init__(self, values: Optional[Dict[str, str]] = None, polling_keys: Iterable[str] = (),
                 fail_initialize: bool = False):
        self.fail_initialize = fail_initialize
        self.values: Dict[str, str] = dict(values or {})
        self.polling_keys = set(polling_keys)
        self.writes: List[Tuple[str, str, Optional[int]]] = []
        self.initialized = False
        self.is_shutdown = False

    async def initialize(self) -> None:
        if self.fail_initialize:
            raise AccessLayerException("REDIS_START_FAILED", "connection refused")
        self.initialized = True

    async def get(self, key: str) -> AdapterResponse:
        if key not in self.values:
            return AdapterResponse(error=KeyError(key))
        return AdapterResponse(result=self.values[key])

    async def set(self, key: str, value: str, time: Optional[int] = None) -> None:
        self.values[key] = value
        self.writes.append((key, value, time))

    async def shutdown(self) -> None:
        self.is_shutdown = True

    def supports_polling_updates_for(self, key: str) -> bool:
        return key in self.polling_keys
