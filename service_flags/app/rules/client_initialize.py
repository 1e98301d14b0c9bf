"""
Client initialize payload: every gate, config and layer pre-evaluated for
one subject, with names hashed so the payload can be shipped to clients.
"""

from typing import Any, Dict, List, Optional

from .hashing import HashAlgorithm, hash_name
from .models import EvaluationResult, ExposureRecord, Spec


_CLIENT_HIDDEN_GATE_ENTITIES = frozenset({"segment", "holdout"})
_NON_EXPERIMENT_ENTITIES = frozenset({"dynamic_config", "autotune"})


def _hash_exposures(exposures: List[ExposureRecord], algorithm: HashAlgorithm) -> List[Dict[str, str]]:
    return [
        {"gate": hash_name(e.gate, algorithm), "gateValue": e.gate_value, "ruleID": e.rule_id}
        for e in exposures
    ]


def _targets_app(spec: Spec, target_app_id: Optional[str]) -> bool:
    if target_app_id is None:
        return True
    return target_app_id in (spec.target_app_ids or [])


def _spec_entry(spec: Spec, result: EvaluationResult, algorithm: HashAlgorithm) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "name": hash_name(spec.name, algorithm),
        "value": {} if result.unsupported else result.json_value,
        "group": result.rule_id,
        "rule_id": result.rule_id,
        "is_device_based": (spec.id_type or "").lower() == "stableid",
        "secondary_exposures": _hash_exposures(result.secondary_exposures, algorithm),
    }
    if result.group_name is not None:
        entry["group_name"] = result.group_name
    if result.explicit_parameters:
        entry["explicit_parameters"] = result.explicit_parameters
    return entry


def build_client_initialize_response(
    evaluator,
    ctx,
    hash_algorithm: HashAlgorithm = HashAlgorithm.DJB2,
    include_local_overrides: bool = False,
) -> Optional[Dict[str, Any]]:
    """Evaluate the whole catalog for ctx.subject against one snapshot.

    Returns None until the store holds a ruleset.
    """
    snapshot = ctx.snapshot
    if not snapshot.is_initialized:
        return None

    algorithm = HashAlgorithm(hash_algorithm)
    subject = ctx.subject
    target_app_id = ctx.target_app_id

    def evaluate(spec: Spec, lookup_override) -> EvaluationResult:
        override = lookup_override(subject, spec.name) if include_local_overrides else None
        return override if override is not None else evaluator.evaluate(ctx, spec)

    def is_user_in_experiment(spec: Optional[Spec]) -> bool:
        if spec is None:
            return False
        return evaluator.evaluate(ctx, spec).is_experiment_group

    feature_gates: Dict[str, Any] = {}
    for spec in snapshot.gates.values():
        if spec.entity in _CLIENT_HIDDEN_GATE_ENTITIES or not _targets_app(spec, target_app_id):
            continue
        result = evaluate(spec, evaluator.lookup_gate_override)
        name = hash_name(spec.name, algorithm)
        feature_gates[name] = {
            "name": name,
            "value": False if result.unsupported else result.value,
            "rule_id": result.rule_id,
            "secondary_exposures": _hash_exposures(result.secondary_exposures, algorithm),
            "id_type": spec.id_type,
        }

    dynamic_configs: Dict[str, Any] = {}
    for spec in snapshot.configs.values():
        if not _targets_app(spec, target_app_id):
            continue
        result = evaluate(spec, evaluator.lookup_config_override)
        entry = _spec_entry(spec, result, algorithm)
        entry["id_type"] = spec.id_type
        if spec.entity == "dynamic_config":
            entry["passed"] = result.value is True
        if spec.entity not in _NON_EXPERIMENT_ENTITIES:
            entry["is_user_in_experiment"] = is_user_in_experiment(spec)
            entry["is_experiment_active"] = spec.is_active is True
            if spec.has_shared_params:
                entry["is_in_layer"] = True
                entry["explicit_parameters"] = spec.explicit_parameters or []
                layer_value: Dict[str, Any] = {}
                layer_name = snapshot.get_experiment_layer(spec.name)
                layer = snapshot.get_layer(layer_name) if layer_name else None
                if layer is not None and isinstance(layer.default_value, dict):
                    layer_value = layer.default_value
                own_value = entry["value"] if isinstance(entry["value"], dict) else {}
                entry["value"] = {**layer_value, **own_value}
        dynamic_configs[entry["name"]] = entry

    layer_configs: Dict[str, Any] = {}
    for spec in snapshot.layers.values():
        if not _targets_app(spec, target_app_id):
            continue
        result = evaluate(spec, evaluator.lookup_layer_override)
        entry = _spec_entry(spec, result, algorithm)
        entry["explicit_parameters"] = spec.explicit_parameters or []
        if result.config_delegate:
            delegate = snapshot.get_config(result.config_delegate)
            if delegate is not None:
                delegate_result = evaluator.evaluate(ctx, delegate)
                if delegate_result.group_name:
                    entry["group_name"] = delegate_result.group_name
            entry["allocated_experiment_name"] = hash_name(result.config_delegate, algorithm)
            entry["is_experiment_active"] = delegate is not None and delegate.is_active is True
            entry["is_user_in_experiment"] = is_user_in_experiment(delegate)
            entry["explicit_parameters"] = (delegate.explicit_parameters if delegate else None) or []
        entry["undelegated_secondary_exposures"] = _hash_exposures(
            result.undelegated_secondary_exposures, algorithm
        )
        layer_configs[entry["name"]] = entry

    evaluated_keys: Dict[str, Any] = {}
    if subject.user_id:
        evaluated_keys["userID"] = subject.user_id
    if subject.custom_ids:
        evaluated_keys["customIDs"] = dict(subject.custom_ids)

    return {
        "feature_gates": feature_gates,
        "dynamic_configs": dynamic_configs,
        "layer_configs": layer_configs,
        "has_updates": True,
        "time": snapshot.last_sync_time,
        "hash_used": algorithm.value,
        "evaluated_keys": evaluated_keys,
        "user": subject.to_public_dict(),
    }
