"""
Rule evaluation engine for the flags service.

Every public call captures the store's current snapshot once and
evaluates against it, so a sync that lands mid-call is never observed.
Evaluation never raises: failures surface through the result's
evaluation details.
"""

import operator
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.sticky import (
    PersistentAssignmentOptions,
    UserPersistedValues,
    UserPersistentStorageHandler,
)
from ..store.snapshot import Snapshot
from .client_initialize import build_client_initialize_response
from .conditions import (
    array_any,
    array_has_all_values,
    array_has_value,
    date_compare,
    get_from_environment,
    get_from_user_agent,
    get_unit_id,
    number_compare,
    regex_matches,
    same_day,
    strict_equals,
    string_compare,
    stringify,
    version_compare_helper,
)
from .geo import IPCountryResolver
from .hashing import (
    CONDITION_SEGMENT_COUNT,
    USER_BUCKET_COUNT,
    HashAlgorithm,
    compute_unit_hash,
    hash_unit_id_for_id_list,
)
from .models import (
    Condition,
    ConditionType,
    EvaluationDetails,
    EvaluationReason,
    EvaluationResult,
    ExposureRecord,
    Operator,
    Rule,
    Spec,
    Subject,
    clean_exposures,
    now_ms,
)


# Nested gate checks and delegations deeper than this are treated as a cycle.
MAX_EVALUATION_DEPTH = 64


@dataclass(frozen=True)
class EvaluationContext:
    """Inputs shared by one top-level evaluation and everything it nests."""
    subject: Subject
    snapshot: Snapshot
    target_app_id: Optional[str] = None
    persistent_options: Optional[PersistentAssignmentOptions] = None
    only_evaluate_targeting: bool = False
    depth: int = 0

    def nested(self) -> "EvaluationContext":
        return replace(self, depth=self.depth + 1, only_evaluate_targeting=False)

    def targeting_only(self) -> "EvaluationContext":
        return replace(self, only_evaluate_targeting=True)


class ConditionResult(NamedTuple):
    passes: bool
    exposures: Tuple[ExposureRecord, ...] = ()
    unsupported: bool = False


_UNSUPPORTED_CONDITION = ConditionResult(passes=False, unsupported=True)

_GATE_CONDITIONS = frozenset({ConditionType.PASS_GATE, ConditionType.FAIL_GATE})
_MULTI_GATE_CONDITIONS = frozenset({ConditionType.MULTI_PASS_GATE, ConditionType.MULTI_FAIL_GATE})
_SEGMENT_OPERATORS = frozenset({Operator.IN_SEGMENT_LIST, Operator.NOT_IN_SEGMENT_LIST})


def _negate(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    return lambda value, target: not fn(value, target)


def _any_of(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    return lambda value, target: array_any(value, target, fn)


def _both_arrays(fn: Callable[[list, list], bool]) -> Callable[[Any, Any], bool]:
    return lambda value, target: isinstance(value, list) and isinstance(target, list) and fn(value, target)


_EQUALS_IGNORE_CASE = string_compare(True, operator.eq)
_EQUALS_CASE_SENSITIVE = string_compare(False, operator.eq)
_CONTAINS_IGNORE_CASE = string_compare(True, operator.contains)

OPERATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.GT: number_compare(operator.gt),
    Operator.GTE: number_compare(operator.ge),
    Operator.LT: number_compare(operator.lt),
    Operator.LTE: number_compare(operator.le),
    Operator.VERSION_GT: version_compare_helper(lambda result: result > 0),
    Operator.VERSION_GTE: version_compare_helper(lambda result: result >= 0),
    Operator.VERSION_LT: version_compare_helper(lambda result: result < 0),
    Operator.VERSION_LTE: version_compare_helper(lambda result: result <= 0),
    Operator.VERSION_EQ: version_compare_helper(lambda result: result == 0),
    Operator.VERSION_NEQ: version_compare_helper(lambda result: result != 0),
    Operator.ANY: _any_of(_EQUALS_IGNORE_CASE),
    Operator.NONE: _negate(_any_of(_EQUALS_IGNORE_CASE)),
    Operator.ANY_CASE_SENSITIVE: _any_of(_EQUALS_CASE_SENSITIVE),
    Operator.NONE_CASE_SENSITIVE: _negate(_any_of(_EQUALS_CASE_SENSITIVE)),
    Operator.STR_STARTS_WITH_ANY: _any_of(string_compare(True, str.startswith)),
    Operator.STR_ENDS_WITH_ANY: _any_of(string_compare(True, str.endswith)),
    Operator.STR_CONTAINS_ANY: _any_of(_CONTAINS_IGNORE_CASE),
    Operator.STR_CONTAINS_NONE: _negate(_any_of(_CONTAINS_IGNORE_CASE)),
    Operator.STR_MATCHES: regex_matches,
    Operator.EQ: strict_equals,
    Operator.NEQ: _negate(strict_equals),
    Operator.BEFORE: date_compare(operator.lt),
    Operator.AFTER: date_compare(operator.gt),
    Operator.ON: date_compare(same_day),
    Operator.ARRAY_CONTAINS_ANY: _both_arrays(array_has_value),
    Operator.ARRAY_CONTAINS_NONE: _both_arrays(lambda value, target: not array_has_value(value, target)),
    Operator.ARRAY_CONTAINS_ALL: _both_arrays(array_has_all_values),
    Operator.NOT_ARRAY_CONTAINS_ALL: _both_arrays(lambda value, target: not array_has_all_values(value, target)),
}


class Evaluator:
    """Evaluates gates, configs and layers against the store's snapshot."""

    def __init__(
        self,
        store,
        persistent_storage: Optional[UserPersistentStorageHandler] = None,
        ip_resolver: Optional[IPCountryResolver] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.persistent_storage = persistent_storage or UserPersistentStorageHandler()
        self.ip_resolver = ip_resolver or IPCountryResolver()
        self.metrics = metrics
        self.logger = get_logger("flags.evaluator")

        self.gate_overrides: Dict[str, Dict[str, bool]] = {}
        self.config_overrides: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.layer_overrides: Dict[str, Dict[str, Dict[str, Any]]] = {}

        self._value_sources: Dict[ConditionType, Callable[[EvaluationContext, Condition], Any]] = {
            ConditionType.IP_BASED: self._value_from_ip,
            ConditionType.UA_BASED: self._value_from_user_agent,
            ConditionType.USER_FIELD: self._value_from_user_field,
            ConditionType.ENVIRONMENT_FIELD: self._value_from_environment,
            ConditionType.CURRENT_TIME: self._value_from_clock,
            ConditionType.USER_BUCKET: self._value_from_user_bucket,
            ConditionType.UNIT_ID: self._value_from_unit_id,
            ConditionType.TARGET_APP: self._value_from_target_app,
        }

    # Public API

    def create_context(
        self,
        subject: Subject,
        options: Optional[PersistentAssignmentOptions] = None,
        target_app_id: Optional[str] = None,
    ) -> EvaluationContext:
        return EvaluationContext(
            subject=subject,
            snapshot=self.store.snapshot,
            target_app_id=target_app_id,
            persistent_options=options,
        )

    def check_gate(self, subject: Subject, gate_name: str) -> EvaluationResult:
        result = self._check_gate(self.create_context(subject), gate_name)
        self._record("gate", result)
        return result

    def get_config(
        self,
        subject: Subject,
        config_name: str,
        options: Optional[PersistentAssignmentOptions] = None,
    ) -> EvaluationResult:
        result = self._get_config(self.create_context(subject, options), config_name)
        self._record("config", result)
        return result

    def get_layer(
        self,
        subject: Subject,
        layer_name: str,
        options: Optional[PersistentAssignmentOptions] = None,
    ) -> EvaluationResult:
        result = self._get_layer(self.create_context(subject, options), layer_name)
        self._record("layer", result)
        return result

    def evaluate(self, context: EvaluationContext, spec: Spec) -> EvaluationResult:
        """Run the rule state machine for one spec, without overrides or sticky values."""
        return self._eval_spec(context, spec)

    def get_user_persisted_values(self, subject: Subject, id_type: Optional[str]) -> UserPersistedValues:
        return self.persistent_storage.load(subject, id_type) or {}

    def get_client_initialize_response(
        self,
        subject: Subject,
        hash_algorithm: HashAlgorithm = HashAlgorithm.DJB2,
        include_local_overrides: bool = False,
        target_app_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        return build_client_initialize_response(
            self,
            self.create_context(subject, target_app_id=target_app_id),
            hash_algorithm=hash_algorithm,
            include_local_overrides=include_local_overrides,
        )

    # Overrides

    def override_gate(self, gate_name: str, value: bool, unit_id: Optional[str] = None) -> None:
        self.gate_overrides.setdefault(gate_name, {})[unit_id or ""] = value

    def override_config(self, config_name: str, value: Dict[str, Any], unit_id: Optional[str] = None) -> None:
        self.config_overrides.setdefault(config_name, {})[unit_id or ""] = value

    def override_layer(self, layer_name: str, value: Dict[str, Any], unit_id: Optional[str] = None) -> None:
        self.layer_overrides.setdefault(layer_name, {})[unit_id or ""] = value

    def clear_all_gate_overrides(self) -> None:
        self.gate_overrides = {}

    def clear_all_config_overrides(self) -> None:
        self.config_overrides = {}

    def clear_all_layer_overrides(self) -> None:
        self.layer_overrides = {}

    def lookup_gate_override(self, subject: Subject, gate_name: str) -> Optional[EvaluationResult]:
        match = self._find_override(subject, self.gate_overrides.get(gate_name))
        if match is None:
            return None
        value, id_type = match
        return EvaluationResult(value=bool(value), rule_id="override", id_type=id_type)

    def lookup_config_override(self, subject: Subject, config_name: str) -> Optional[EvaluationResult]:
        return self._config_based_override(subject, self.config_overrides.get(config_name))

    def lookup_layer_override(self, subject: Subject, layer_name: str) -> Optional[EvaluationResult]:
        return self._config_based_override(subject, self.layer_overrides.get(layer_name))

    # Catalog

    def get_feature_gate_list(self) -> List[str]:
        return list(self.store.snapshot.gates.keys())

    def get_configs_list(self, entity: str) -> List[str]:
        return [name for name, spec in self.store.snapshot.configs.items() if spec.entity == entity]

    def get_layer_list(self) -> List[str]:
        return list(self.store.snapshot.layers.keys())

    def get_experiment_layer(self, experiment_name: str) -> Optional[str]:
        return self.store.snapshot.get_experiment_layer(experiment_name)

    # Entry points shared by top-level and nested checks

    def _check_gate(self, ctx: EvaluationContext, gate_name: str) -> EvaluationResult:
        override = self.lookup_gate_override(ctx.subject, gate_name)
        if override is not None:
            return self._with_override_details(override, ctx.snapshot)
        if not ctx.snapshot.is_initialized:
            return EvaluationResult(evaluation_details=EvaluationDetails.uninitialized())

        gate = ctx.snapshot.get_gate(gate_name)
        if gate is None:
            self.logger.debug("Evaluating a non-existent gate", gate=gate_name)
            return self._unrecognized(ctx.snapshot)
        return self._eval_spec(ctx, gate)

    def _get_config(self, ctx: EvaluationContext, config_name: str) -> EvaluationResult:
        override = self.lookup_config_override(ctx.subject, config_name)
        if override is not None:
            return self._with_override_details(override, ctx.snapshot)
        if not ctx.snapshot.is_initialized:
            return EvaluationResult(evaluation_details=EvaluationDetails.uninitialized())

        config = ctx.snapshot.get_config(config_name)
        if config is None:
            self.logger.debug("Evaluating a non-existent config", config=config_name)
            return self._unrecognized(ctx.snapshot)
        return self._eval_config(ctx, config)

    def _get_layer(self, ctx: EvaluationContext, layer_name: str) -> EvaluationResult:
        override = self.lookup_layer_override(ctx.subject, layer_name)
        if override is not None:
            return self._with_override_details(override, ctx.snapshot)
        if not ctx.snapshot.is_initialized:
            return EvaluationResult(evaluation_details=EvaluationDetails.uninitialized())

        layer = ctx.snapshot.get_layer(layer_name)
        if layer is None:
            self.logger.debug("Evaluating a non-existent layer", layer=layer_name)
            return self._unrecognized(ctx.snapshot)
        return self._eval_layer(ctx, layer)

    # Sticky bucketing

    def _persisted_values(self, ctx: EvaluationContext, spec: Spec) -> Optional[UserPersistedValues]:
        options = ctx.persistent_options
        if options is None or not self.persistent_storage.enabled:
            return None
        if options.user_persisted_values is not None:
            return options.user_persisted_values
        return self.persistent_storage.load(ctx.subject, spec.id_type) or {}

    def _eval_config(self, ctx: EvaluationContext, spec: Spec) -> EvaluationResult:
        persisted = self._persisted_values(ctx, spec)
        if persisted is None:
            return self._eval_spec(ctx, spec)
        if not spec.is_active:
            self.persistent_storage.delete(ctx.subject, spec.id_type, spec.name)
            return self._eval_spec(ctx, spec)

        sticky = persisted.get(spec.name)
        if sticky is not None:
            if not ctx.persistent_options.enforce_targeting or self._passes_targeting(ctx, spec):
                return EvaluationResult.from_sticky_values(sticky, ctx.snapshot.initial_sync_time)
            self.logger.debug("Sticky value no longer passes targeting", spec=spec.name)

        evaluation = self._eval_spec(ctx, spec)
        if evaluation.is_experiment_group:
            self.persistent_storage.save(ctx.subject, spec.id_type, spec.name, evaluation)
        else:
            self.persistent_storage.delete(ctx.subject, spec.id_type, spec.name)
        return evaluation

    def _eval_layer(self, ctx: EvaluationContext, spec: Spec) -> EvaluationResult:
        persisted = self._persisted_values(ctx, spec)
        if persisted is None:
            return self._eval_spec(ctx, spec)

        sticky = persisted.get(spec.name)
        if sticky is not None:
            delegate = ctx.snapshot.get_config(sticky.config_delegate) if sticky.config_delegate else None
            if delegate is not None and delegate.is_active:
                if not ctx.persistent_options.enforce_targeting or self._passes_targeting(ctx, delegate):
                    return EvaluationResult.from_sticky_values(sticky, ctx.snapshot.initial_sync_time)
            else:
                self.logger.debug("Sticky layer delegate is no longer active", layer=spec.name)

        evaluation = self._eval_spec(ctx, spec)
        delegate = ctx.snapshot.get_config(evaluation.config_delegate) if evaluation.config_delegate else None
        if delegate is not None and delegate.is_active and evaluation.is_experiment_group:
            self.persistent_storage.save(ctx.subject, spec.id_type, spec.name, evaluation)
        else:
            self.persistent_storage.delete(ctx.subject, spec.id_type, spec.name)
        return evaluation

    def _passes_targeting(self, ctx: EvaluationContext, spec: Spec) -> bool:
        # Failing every targeting rule means the unit falls through to the
        # allocation rules, i.e. targeting passes.
        result = self._eval_spec(ctx.targeting_only(), spec)
        return not result.value and not result.unsupported

    # Core state machine

    def _eval_spec(self, ctx: EvaluationContext, spec: Spec) -> EvaluationResult:
        evaluation = self._eval(ctx, spec)
        if evaluation.evaluation_details is None:
            evaluation.evaluation_details = EvaluationDetails(
                sync_time=ctx.snapshot.last_sync_time,
                initial_sync_time=ctx.snapshot.initial_sync_time,
                reason=ctx.snapshot.source,
            )
        return evaluation

    def _eval(self, ctx: EvaluationContext, spec: Spec) -> EvaluationResult:
        if ctx.depth > MAX_EVALUATION_DEPTH:
            self.logger.warning("Evaluation depth exceeded, possible cycle", spec=spec.name, depth=ctx.depth)
            return self._unsupported(ctx.snapshot, spec.version)

        if not spec.enabled:
            return EvaluationResult(
                value=False,
                rule_id="disabled",
                id_type=spec.id_type,
                json_value=spec.default_value,
                version=spec.version,
            )

        rules = spec.rules
        if ctx.only_evaluate_targeting:
            rules = [rule for rule in spec.rules if rule.is_targeting_rule()]
            if not rules:
                return EvaluationResult(value=False)

        exposures: List[ExposureRecord] = []
        for rule in rules:
            rule_result = self._eval_rule(ctx, rule)
            if rule_result.unsupported:
                return self._unsupported(ctx.snapshot, spec.version)

            exposures = clean_exposures(exposures + list(rule_result.exposures))
            if not rule_result.passes:
                continue

            delegated = self._eval_delegate(ctx, rule, exposures)
            if delegated is not None:
                return delegated

            passed = self._eval_pass_percentage(ctx.subject, spec, rule)
            return EvaluationResult(
                value=passed,
                rule_id=rule.id,
                group_name=rule.group_name if passed else None,
                id_type=spec.id_type,
                json_value=rule.return_value if passed else spec.default_value,
                secondary_exposures=exposures,
                explicit_parameters=spec.explicit_parameters,
                is_experiment_group=passed and bool(rule.is_experiment_group),
                version=spec.version,
            )

        return EvaluationResult(
            value=False,
            rule_id="default",
            id_type=spec.id_type,
            json_value=spec.default_value,
            secondary_exposures=exposures,
            explicit_parameters=spec.explicit_parameters,
            version=spec.version,
        )

    def _eval_delegate(
        self,
        ctx: EvaluationContext,
        rule: Rule,
        exposures: List[ExposureRecord],
    ) -> Optional[EvaluationResult]:
        if not rule.config_delegate:
            return None
        delegate_spec = ctx.snapshot.get_config(rule.config_delegate)
        if delegate_spec is None:
            return None

        delegated = self._get_config(ctx.nested(), rule.config_delegate)
        delegated.config_delegate = rule.config_delegate
        delegated.undelegated_secondary_exposures = list(exposures)
        delegated.explicit_parameters = delegate_spec.explicit_parameters
        delegated.secondary_exposures = clean_exposures(exposures + delegated.secondary_exposures)
        return delegated

    def _eval_pass_percentage(self, subject: Subject, spec: Spec, rule: Rule) -> bool:
        if rule.pass_percentage <= 0:
            return False
        if rule.pass_percentage >= 100:
            return True
        rule_salt = rule.salt if rule.salt is not None else rule.id
        unit_id = get_unit_id(subject, rule.id_type) or ""
        unit_hash = compute_unit_hash(f"{spec.salt}.{rule_salt}.{unit_id}")
        return unit_hash % CONDITION_SEGMENT_COUNT < rule.pass_percentage * 100

    def _eval_rule(self, ctx: EvaluationContext, rule: Rule) -> ConditionResult:
        passes = True
        exposures: List[ExposureRecord] = []
        for condition in rule.conditions:
            result = self._eval_condition(ctx, condition)
            if result.unsupported:
                return _UNSUPPORTED_CONDITION
            if not result.passes:
                passes = False
            exposures.extend(result.exposures)
        return ConditionResult(passes=passes, exposures=tuple(exposures))

    def _eval_condition(self, ctx: EvaluationContext, condition: Condition) -> ConditionResult:
        condition_type = condition.condition_type
        if condition_type is None:
            return _UNSUPPORTED_CONDITION
        if condition_type is ConditionType.PUBLIC:
            return ConditionResult(passes=True)
        if condition_type in _GATE_CONDITIONS:
            return self._eval_gate_condition(ctx, condition)
        if condition_type in _MULTI_GATE_CONDITIONS:
            return self._eval_multi_gate_condition(ctx, condition)

        source = self._value_sources.get(condition_type)
        if source is None:
            return _UNSUPPORTED_CONDITION
        value = source(ctx, condition)

        op = condition.op
        if op in _SEGMENT_OPERATORS:
            in_list = self._in_segment_list(ctx.snapshot, value, condition.target_value)
            return ConditionResult(passes=in_list if op is Operator.IN_SEGMENT_LIST else not in_list)

        compare = OPERATORS.get(op) if op is not None else None
        if compare is None:
            return _UNSUPPORTED_CONDITION
        return ConditionResult(passes=bool(compare(value, condition.target_value)))

    def _eval_gate_condition(self, ctx: EvaluationContext, condition: Condition) -> ConditionResult:
        gate_name = stringify(condition.target_value)
        gate_result = self._check_gate(ctx.nested(), gate_name)
        if gate_result.unsupported:
            return _UNSUPPORTED_CONDITION

        exposures = list(gate_result.secondary_exposures)
        exposures.append(ExposureRecord(
            gate=gate_name,
            gate_value=stringify(gate_result.value),
            rule_id=gate_result.rule_id,
        ))
        if condition.condition_type is ConditionType.FAIL_GATE:
            return ConditionResult(passes=not gate_result.value, exposures=tuple(exposures))
        return ConditionResult(passes=bool(gate_result.value), exposures=tuple(exposures))

    def _eval_multi_gate_condition(self, ctx: EvaluationContext, condition: Condition) -> ConditionResult:
        gate_names = condition.target_value
        if not isinstance(gate_names, list):
            return _UNSUPPORTED_CONDITION

        want = condition.condition_type is ConditionType.MULTI_PASS_GATE
        exposures: List[ExposureRecord] = []
        for name in gate_names:
            gate_name = stringify(name)
            gate_result = self._check_gate(ctx.nested(), gate_name)
            if gate_result.unsupported:
                return _UNSUPPORTED_CONDITION
            exposures.append(ExposureRecord(
                gate=gate_name,
                gate_value=stringify(gate_result.value),
                rule_id=gate_result.rule_id,
            ))
            exposures.extend(gate_result.secondary_exposures)
            if gate_result.value is want:
                return ConditionResult(passes=True, exposures=tuple(exposures))
        return ConditionResult(passes=False, exposures=tuple(exposures))

    @staticmethod
    def _in_segment_list(snapshot: Snapshot, value: Any, list_name: Any) -> bool:
        if value is None:
            return False
        id_list = snapshot.get_id_list(stringify(list_name))
        if id_list is None:
            return False
        return id_list.contains(hash_unit_id_for_id_list(stringify(value)))

    # Condition value sources

    def _value_from_ip(self, ctx: EvaluationContext, condition: Condition) -> Any:
        value = ctx.subject.get_field(condition.field)
        if value is None and condition.field == "country":
            value = self.ip_resolver.lookup(ctx.subject.get_field("ip"))
        return value

    def _value_from_user_agent(self, ctx: EvaluationContext, condition: Condition) -> Any:
        value = ctx.subject.get_field(condition.field)
        if value is None:
            value = get_from_user_agent(ctx.subject, condition.field)
        return value

    def _value_from_user_field(self, ctx: EvaluationContext, condition: Condition) -> Any:
        return ctx.subject.get_field(condition.field)

    def _value_from_environment(self, ctx: EvaluationContext, condition: Condition) -> Any:
        return get_from_environment(ctx.subject, condition.field)

    def _value_from_clock(self, ctx: EvaluationContext, condition: Condition) -> Any:
        return now_ms()

    def _value_from_user_bucket(self, ctx: EvaluationContext, condition: Condition) -> Any:
        salt = condition.additional_values.get("salt")
        unit_id = get_unit_id(ctx.subject, condition.id_type) or ""
        return compute_unit_hash(f"{salt if salt is not None else ''}.{unit_id}") % USER_BUCKET_COUNT

    def _value_from_unit_id(self, ctx: EvaluationContext, condition: Condition) -> Any:
        return get_unit_id(ctx.subject, condition.id_type)

    def _value_from_target_app(self, ctx: EvaluationContext, condition: Condition) -> Any:
        if ctx.target_app_id is not None:
            return ctx.target_app_id
        return ctx.snapshot.primary_target_app_id

    # Result helpers

    @staticmethod
    def _find_override(subject: Subject, overrides: Optional[Dict[str, Any]]):
        """Override lookup order: user id, then any custom id, then the global entry."""
        if not overrides:
            return None
        if subject.user_id is not None and subject.user_id in overrides:
            return overrides[subject.user_id], "userID"
        for custom_id in subject.custom_ids.values():
            if custom_id in overrides:
                return overrides[custom_id], "userID"
        if "" in overrides:
            return overrides[""], ""
        return None

    def _config_based_override(self, subject: Subject, overrides) -> Optional[EvaluationResult]:
        match = self._find_override(subject, overrides)
        if match is None:
            return None
        value, id_type = match
        return EvaluationResult(value=True, rule_id="override", id_type=id_type, json_value=value)

    @staticmethod
    def _with_override_details(result: EvaluationResult, snapshot: Snapshot) -> EvaluationResult:
        result.evaluation_details = EvaluationDetails(
            sync_time=snapshot.last_sync_time,
            initial_sync_time=snapshot.initial_sync_time,
            reason=EvaluationReason.LOCAL_OVERRIDE,
        )
        return result

    @staticmethod
    def _unrecognized(snapshot: Snapshot) -> EvaluationResult:
        return EvaluationResult(
            value=False,
            rule_id="",
            evaluation_details=EvaluationDetails(
                sync_time=snapshot.last_sync_time,
                initial_sync_time=snapshot.initial_sync_time,
                reason=EvaluationReason.UNRECOGNIZED,
            ),
        )

    @staticmethod
    def _unsupported(snapshot: Snapshot, version: Optional[int]) -> EvaluationResult:
        return EvaluationResult.unsupported_result(
            sync_time=snapshot.last_sync_time,
            initial_sync_time=snapshot.initial_sync_time,
            version=version,
        )

    def _record(self, kind: str, result: EvaluationResult) -> None:
        if self.metrics:
            reason = result.reason.value if result.reason else "none"
            self.metrics.increment_counter("evaluations_total", kind=kind, reason=reason)
