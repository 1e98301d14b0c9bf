"""
Immutable view of every spec and ID list at one point in time.

The store builds a new Snapshot for each successful sync and swaps a
single reference, so readers never see a half-applied update. The dicts
inside a Snapshot are never mutated after construction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..rules.models import EvaluationReason, Spec
from .id_lists import IDList


@dataclass(frozen=True)
class Snapshot:
    gates: Dict[str, Spec] = field(default_factory=dict)
    configs: Dict[str, Spec] = field(default_factory=dict)
    layers: Dict[str, Spec] = field(default_factory=dict)
    id_lists: Dict[str, IDList] = field(default_factory=dict)
    experiment_to_layer: Dict[str, str] = field(default_factory=dict)
    last_sync_time: int = 0
    initial_sync_time: int = 0
    source: EvaluationReason = EvaluationReason.UNINITIALIZED
    primary_target_app_id: Optional[str] = None

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()

    @property
    def is_initialized(self) -> bool:
        return self.source != EvaluationReason.UNINITIALIZED

    def get_gate(self, name: str) -> Optional[Spec]:
        return self.gates.get(name)

    def get_config(self, name: str) -> Optional[Spec]:
        return self.configs.get(name)

    def get_layer(self, name: str) -> Optional[Spec]:
        return self.layers.get(name)

    def get_id_list(self, name: str) -> Optional[IDList]:
        return self.id_lists.get(name)

    def get_experiment_layer(self, experiment_name: str) -> Optional[str]:
        return self.experiment_to_layer.get(experiment_name)

    def summary(self) -> Dict[str, Any]:
        return {
            "gates": len(self.gates),
            "configs": len(self.configs),
            "layers": len(self.layers),
            "id_lists": len(self.id_lists),
            "last_sync_time": self.last_sync_time,
            "initial_sync_time": self.initial_sync_time,
            "source": self.source.value,
        }
