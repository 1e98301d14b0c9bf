"""
Sticky bucketing: persisted experiment and layer assignments.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.conditions import get_unit_id
from ..rules.models import EvaluationResult, StickyValues, Subject


UserPersistedValues = Dict[str, StickyValues]


class UserPersistentStorage(ABC):
    """Key-value store owned by the host application.

    A key identifies one unit ("{unit_id}:{id_type}") and maps to the
    sticky values of every spec that unit is pinned to.
    """

    @abstractmethod
    def load(self, key: str) -> UserPersistedValues:
        """Return every persisted value stored under the key."""

    @abstractmethod
    def save(self, key: str, spec_name: str, data: StickyValues) -> None:
        """Persist the value for one spec, replacing any previous entry."""

    @abstractmethod
    def delete(self, key: str, spec_name: str) -> None:
        """Remove the value for one spec."""


@dataclass
class PersistentAssignmentOptions:
    """Per-call opt-in to sticky bucketing.

    enforce_targeting re-checks the spec's targeting rules before
    honoring a persisted value. user_persisted_values is a preloaded map
    (from get_user_persisted_values) that skips the storage read.
    """
    enforce_targeting: bool = False
    user_persisted_values: Optional[UserPersistedValues] = None


class UserPersistentStorageHandler:
    """Wraps a storage backend; every backend failure is logged and ignored."""

    def __init__(self, storage: Optional[UserPersistentStorage] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.storage = storage
        self.metrics = metrics
        self.logger = get_logger("flags.persistence.sticky")

    @property
    def enabled(self) -> bool:
        return self.storage is not None

    @staticmethod
    def get_storage_key(subject: Subject, id_type: Optional[str]) -> str:
        unit_id = get_unit_id(subject, id_type)
        return f"{unit_id or ''}:{id_type}"

    def load(self, subject: Subject, id_type: Optional[str]) -> Optional[UserPersistedValues]:
        if self.storage is None:
            return None
        key = self._key(subject, id_type)
        try:
            return self.storage.load(key) or {}
        except Exception as e:
            self._record_failure("load", key, e)
            return None

    def save(self, subject: Subject, id_type: Optional[str], spec_name: str,
             evaluation: EvaluationResult) -> None:
        if self.storage is None:
            return
        key = self._key(subject, id_type)
        try:
            self.storage.save(key, spec_name, evaluation.to_sticky_values())
        except Exception as e:
            self._record_failure("save", key, e, spec_name=spec_name)

    def delete(self, subject: Subject, id_type: Optional[str], spec_name: str) -> None:
        if self.storage is None:
            return
        key = self._key(subject, id_type)
        try:
            self.storage.delete(key, spec_name)
        except Exception as e:
            self._record_failure("delete", key, e, spec_name=spec_name)

    def _key(self, subject: Subject, id_type: Optional[str]) -> str:
        if not get_unit_id(subject, id_type):
            self.logger.warning("No unit id found for id type", id_type=id_type)
        return self.get_storage_key(subject, id_type)

    def _record_failure(self, operation: str, key: str, error: Exception, **fields) -> None:
        self.logger.error(
            "Persistent storage operation failed",
            operation=operation,
            key=key,
            error=str(error),
            **fields
        )
        if self.metrics:
            self.metrics.increment_counter("sticky_store_errors_total", operation=operation)
