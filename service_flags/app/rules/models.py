"""
Spec, subject and evaluation result models for the flags service.

Specs arrive as JSON from the ruleset API and keep their camelCase field
names on the wire. Parsing is strict: any malformed item raises
MalformedSpecError so the store can reject the whole payload.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import MalformedSpecError


TARGETING_RULE_IDS = frozenset({"inlineTargetingRules", "targetingGate"})
SEGMENT_GATE_PREFIX = "segment:"

E = TypeVar("E", bound=Enum)


class SpecKind(str, Enum):
    """Top-level spec families, keyed by payload section."""
    GATE = "feature_gate"
    DYNAMIC_CONFIG = "dynamic_config"
    EXPERIMENT = "experiment"
    LAYER = "layer"
    AUTOTUNE = "autotune"
    SEGMENT = "segment"
    HOLDOUT = "holdout"


class ConditionType(str, Enum):
    """Value sources a condition can read."""
    PUBLIC = "public"
    PASS_GATE = "pass_gate"
    FAIL_GATE = "fail_gate"
    MULTI_PASS_GATE = "multi_pass_gate"
    MULTI_FAIL_GATE = "multi_fail_gate"
    IP_BASED = "ip_based"
    UA_BASED = "ua_based"
    USER_FIELD = "user_field"
    ENVIRONMENT_FIELD = "environment_field"
    CURRENT_TIME = "current_time"
    USER_BUCKET = "user_bucket"
    UNIT_ID = "unit_id"
    TARGET_APP = "target_app"


class Operator(str, Enum):
    """Comparison operators."""
    # numeric
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    # version
    VERSION_GT = "version_gt"
    VERSION_GTE = "version_gte"
    VERSION_LT = "version_lt"
    VERSION_LTE = "version_lte"
    VERSION_EQ = "version_eq"
    VERSION_NEQ = "version_neq"
    # array membership
    ANY = "any"
    NONE = "none"
    ANY_CASE_SENSITIVE = "any_case_sensitive"
    NONE_CASE_SENSITIVE = "none_case_sensitive"
    # string
    STR_STARTS_WITH_ANY = "str_starts_with_any"
    STR_ENDS_WITH_ANY = "str_ends_with_any"
    STR_CONTAINS_ANY = "str_contains_any"
    STR_CONTAINS_NONE = "str_contains_none"
    STR_MATCHES = "str_matches"
    # equality
    EQ = "eq"
    NEQ = "neq"
    # dates
    BEFORE = "before"
    AFTER = "after"
    ON = "on"
    # segments
    IN_SEGMENT_LIST = "in_segment_list"
    NOT_IN_SEGMENT_LIST = "not_in_segment_list"
    # arrays
    ARRAY_CONTAINS_ANY = "array_contains_any"
    ARRAY_CONTAINS_NONE = "array_contains_none"
    ARRAY_CONTAINS_ALL = "array_contains_all"
    NOT_ARRAY_CONTAINS_ALL = "not_array_contains_all"


class EvaluationReason(str, Enum):
    """Why an evaluation produced its result."""
    NETWORK = "Network"
    BOOTSTRAP = "Bootstrap"
    DATA_ADAPTER = "DataAdapter"
    LOCAL_OVERRIDE = "LocalOverride"
    UNRECOGNIZED = "Unrecognized"
    UNINITIALIZED = "Uninitialized"
    UNSUPPORTED = "Unsupported"
    PERSISTED = "Persisted"


def _parse_enum(enum_cls: Type[E], raw: Any) -> Optional[E]:
    if not isinstance(raw, str):
        return None
    try:
        return enum_cls(raw.lower())
    except ValueError:
        return None


def _require_dict(raw: Any, what: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedSpecError(f"{what} must be an object", details={"value": repr(raw)[:200]})
    return raw


def _optional_str_list(raw: Any, what: str) -> Optional[List[str]]:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise MalformedSpecError(f"{what} must be a list")
    return [str(item) for item in raw]


@dataclass(frozen=True)
class Condition:
    """One predicate inside a rule."""
    type: str
    operator: Optional[str]
    field: Optional[str]
    target_value: Any
    id_type: Optional[str]
    additional_values: Dict[str, Any] = field(default_factory=dict)
    condition_type: Optional[ConditionType] = None
    op: Optional[Operator] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "Condition":
        data = _require_dict(raw, "condition")
        condition_type = data.get("type")
        if not isinstance(condition_type, str):
            raise MalformedSpecError("condition type must be a string")
        additional_values = data.get("additionalValues") or {}
        if not isinstance(additional_values, dict):
            raise MalformedSpecError("condition additionalValues must be an object")
        return cls(
            type=condition_type,
            operator=data.get("operator"),
            field=data.get("field"),
            target_value=data.get("targetValue"),
            id_type=data.get("idType"),
            additional_values=additional_values,
            condition_type=_parse_enum(ConditionType, condition_type),
            op=_parse_enum(Operator, data.get("operator")),
        )


@dataclass(frozen=True)
class Rule:
    """An ordered rule; the first rule whose conditions all pass wins."""
    id: str
    name: Optional[str]
    salt: Optional[str]
    pass_percentage: float
    conditions: List[Condition]
    return_value: Any
    id_type: Optional[str]
    config_delegate: Optional[str] = None
    group_name: Optional[str] = None
    is_experiment_group: Optional[bool] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "Rule":
        data = _require_dict(raw, "rule")
        rule_id = data.get("id")
        if not isinstance(rule_id, str):
            raise MalformedSpecError("rule id must be a string")
        pass_percentage = data.get("passPercentage", 0)
        if isinstance(pass_percentage, bool) or not isinstance(pass_percentage, (int, float)):
            raise MalformedSpecError("rule passPercentage must be a number", details={"rule_id": rule_id})
        conditions_raw = data.get("conditions") or []
        if not isinstance(conditions_raw, list):
            raise MalformedSpecError("rule conditions must be a list", details={"rule_id": rule_id})
        is_experiment_group = data.get("isExperimentGroup")
        return cls(
            id=rule_id,
            name=data.get("name"),
            salt=data.get("salt"),
            pass_percentage=float(pass_percentage),
            conditions=[Condition.from_dict(c) for c in conditions_raw],
            return_value=data.get("returnValue"),
            id_type=data.get("idType"),
            config_delegate=data.get("configDelegate"),
            group_name=data.get("groupName"),
            is_experiment_group=bool(is_experiment_group) if is_experiment_group is not None else None,
        )

    def is_targeting_rule(self) -> bool:
        return self.id in TARGETING_RULE_IDS


@dataclass(frozen=True)
class Spec:
    """A gate, dynamic config, experiment, autotune or layer definition."""
    name: str
    type: Optional[str]
    salt: str
    default_value: Any
    enabled: bool
    id_type: Optional[str]
    rules: List[Rule]
    entity: Optional[str] = None
    explicit_parameters: Optional[List[str]] = None
    has_shared_params: bool = False
    is_active: Optional[bool] = None
    target_app_ids: Optional[List[str]] = None
    version: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "Spec":
        data = _require_dict(raw, "spec")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise MalformedSpecError("spec name must be a non-empty string")
        rules_raw = data.get("rules")
        if not isinstance(rules_raw, list):
            raise MalformedSpecError("spec rules must be a list", details={"name": name})
        version = data.get("version")
        is_active = data.get("isActive")
        return cls(
            name=name,
            type=data.get("type"),
            salt=str(data.get("salt") or ""),
            default_value=data.get("defaultValue"),
            enabled=data.get("enabled") is True,
            id_type=data.get("idType"),
            rules=[Rule.from_dict(r) for r in rules_raw],
            entity=data.get("entity"),
            explicit_parameters=_optional_str_list(data.get("explicitParameters"), "explicitParameters"),
            has_shared_params=data.get("hasSharedParams") is True,
            is_active=(is_active is True) if is_active is not None else None,
            target_app_ids=_optional_str_list(data.get("targetAppIDs"), "targetAppIDs"),
            version=int(version) if isinstance(version, (int, float)) and not isinstance(version, bool) else None,
        )


# Attribute names on Subject, keyed by the lower-cased field names that
# conditions use on the wire.
_SUBJECT_FIELDS = {
    "userid": "user_id",
    "user_id": "user_id",
    "email": "email",
    "ip": "ip",
    "useragent": "user_agent",
    "user_agent": "user_agent",
    "country": "country",
    "locale": "locale",
    "appversion": "app_version",
    "app_version": "app_version",
}


@dataclass
class Subject:
    """The unit being evaluated."""
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    locale: Optional[str] = None
    app_version: Optional[str] = None
    custom: Dict[str, Any] = field(default_factory=dict)
    private_attributes: Dict[str, Any] = field(default_factory=dict)
    custom_ids: Dict[str, str] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subject":
        """Build a subject from snake_case or camelCase keys."""
        def pick(*keys):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        user_id = pick("user_id", "userID")
        return cls(
            user_id=str(user_id) if user_id is not None else None,
            email=pick("email"),
            ip=pick("ip"),
            user_agent=pick("user_agent", "userAgent"),
            country=pick("country"),
            locale=pick("locale"),
            app_version=pick("app_version", "appVersion"),
            custom=dict(pick("custom") or {}),
            private_attributes=dict(pick("private_attributes", "privateAttributes") or {}),
            custom_ids={k: str(v) for k, v in (pick("custom_ids", "customIDs") or {}).items()},
            environment=dict(pick("environment", "statsigEnvironment") or {}),
        )

    def get_field(self, name: Optional[str]) -> Any:
        """Resolve a user field: top-level, then custom, then private attributes."""
        if name is None:
            return None
        lowered = name.lower()
        attribute = _SUBJECT_FIELDS.get(lowered)
        if attribute is not None:
            value = getattr(self, attribute)
            if value is not None:
                return value
        for source in (self.custom, self.private_attributes):
            if source.get(name) is not None:
                return source[name]
            if source.get(lowered) is not None:
                return source[lowered]
        return None

    def to_public_dict(self) -> Dict[str, Any]:
        """Client-facing representation; private attributes are never included."""
        output: Dict[str, Any] = {}
        for key, attribute in (
            ("userID", "user_id"), ("email", "email"), ("ip", "ip"),
            ("userAgent", "user_agent"), ("country", "country"),
            ("locale", "locale"), ("appVersion", "app_version"),
        ):
            value = getattr(self, attribute)
            if value is not None:
                output[key] = value
        if self.custom:
            output["custom"] = dict(self.custom)
        if self.custom_ids:
            output["customIDs"] = dict(self.custom_ids)
        if self.environment:
            output["statsigEnvironment"] = dict(self.environment)
        return output


@dataclass(frozen=True)
class ExposureRecord:
    """A nested gate check performed while evaluating another spec."""
    gate: str
    gate_value: str
    rule_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"gate": self.gate, "gateValue": self.gate_value, "ruleID": self.rule_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExposureRecord":
        return cls(
            gate=str(data.get("gate", "")),
            gate_value=str(data.get("gateValue", "")),
            rule_id=str(data.get("ruleID", "")),
        )


def clean_exposures(exposures: List[ExposureRecord]) -> List[ExposureRecord]:
    """Drop segment gates and duplicates by (gate, value, rule id), keeping order."""
    seen = set()
    cleaned = []
    for exposure in exposures:
        if exposure.gate.startswith(SEGMENT_GATE_PREFIX):
            continue
        if exposure in seen:
            continue
        seen.add(exposure)
        cleaned.append(exposure)
    return cleaned


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EvaluationDetails:
    """Sync freshness and provenance attached to every result."""
    sync_time: int
    initial_sync_time: int
    reason: EvaluationReason
    server_time: int = field(default_factory=now_ms)

    @classmethod
    def uninitialized(cls) -> "EvaluationDetails":
        return cls(sync_time=0, initial_sync_time=0, reason=EvaluationReason.UNINITIALIZED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_time": self.sync_time,
            "initial_sync_time": self.initial_sync_time,
            "server_time": self.server_time,
            "reason": self.reason.value,
        }


class StickyValues(BaseModel):
    """Persisted snapshot of an evaluation, shared across SDKs as JSON."""

    model_config = ConfigDict(populate_by_name=True)

    value: bool
    json_value: Any = None
    rule_id: str
    group_name: Optional[str] = None
    secondary_exposures: List[Dict[str, str]] = Field(default_factory=list)
    undelegated_secondary_exposures: List[Dict[str, str]] = Field(default_factory=list)
    config_delegate: Optional[str] = None
    explicit_parameters: Optional[List[str]] = None
    time: int = 0
    config_version: Optional[int] = Field(default=None, alias="configVersion")


@dataclass
class EvaluationResult:
    """Outcome of one gate, config or layer evaluation."""
    value: bool = False
    rule_id: str = ""
    group_name: Optional[str] = None
    id_type: Optional[str] = None
    json_value: Any = field(default_factory=dict)
    secondary_exposures: List[ExposureRecord] = field(default_factory=list)
    undelegated_secondary_exposures: List[ExposureRecord] = field(default_factory=list)
    explicit_parameters: Optional[List[str]] = None
    config_delegate: Optional[str] = None
    unsupported: bool = False
    is_experiment_group: bool = False
    version: Optional[int] = None
    evaluation_details: Optional[EvaluationDetails] = None

    @classmethod
    def unsupported_result(cls, sync_time: int, initial_sync_time: int,
                           version: Optional[int] = None) -> "EvaluationResult":
        return cls(
            value=False,
            rule_id="",
            unsupported=True,
            version=version,
            evaluation_details=EvaluationDetails(
                sync_time=sync_time,
                initial_sync_time=initial_sync_time,
                reason=EvaluationReason.UNSUPPORTED,
            ),
        )

    @classmethod
    def from_sticky_values(cls, sticky: StickyValues, initial_sync_time: int) -> "EvaluationResult":
        return cls(
            value=sticky.value,
            rule_id=sticky.rule_id,
            group_name=sticky.group_name,
            json_value=sticky.json_value if sticky.json_value is not None else {},
            secondary_exposures=[ExposureRecord.from_dict(e) for e in sticky.secondary_exposures],
            undelegated_secondary_exposures=[
                ExposureRecord.from_dict(e) for e in sticky.undelegated_secondary_exposures
            ],
            explicit_parameters=sticky.explicit_parameters,
            config_delegate=sticky.config_delegate,
            is_experiment_group=True,
            version=sticky.config_version,
            evaluation_details=EvaluationDetails(
                sync_time=sticky.time,
                initial_sync_time=initial_sync_time,
                reason=EvaluationReason.PERSISTED,
            ),
        )

    def to_sticky_values(self) -> StickyValues:
        sync_time = self.evaluation_details.sync_time if self.evaluation_details else 0
        return StickyValues(
            value=self.value,
            json_value=self.json_value,
            rule_id=self.rule_id,
            group_name=self.group_name,
            secondary_exposures=[e.to_dict() for e in self.secondary_exposures],
            undelegated_secondary_exposures=[e.to_dict() for e in self.undelegated_secondary_exposures],
            config_delegate=self.config_delegate,
            explicit_parameters=self.explicit_parameters,
            time=sync_time,
            config_version=self.version,
        )

    @property
    def reason(self) -> Optional[EvaluationReason]:
        return self.evaluation_details.reason if self.evaluation_details else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "rule_id": self.rule_id,
            "group_name": self.group_name,
            "id_type": self.id_type,
            "json_value": self.json_value,
            "secondary_exposures": [e.to_dict() for e in self.secondary_exposures],
            "undelegated_secondary_exposures": [e.to_dict() for e in self.undelegated_secondary_exposures],
            "explicit_parameters": self.explicit_parameters,
            "config_delegate": self.config_delegate,
            "unsupported": self.unsupported,
            "is_experiment_group": self.is_experiment_group,
            "version": self.version,
            "evaluation_details": self.evaluation_details.to_dict() if self.evaluation_details else None,
        }
