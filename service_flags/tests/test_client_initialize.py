"""
Unit tests for the client initialize payload.
"""

import pytest

from service_flags.app.rules.hashing import HashAlgorithm, djb2_hash
from service_flags.app.rules.models import Subject

from .helpers import build_snapshot, condition, config, gate, layer, rule


@pytest.fixture
def catalog():
    return build_snapshot(
        gates=[
            gate("beta", [rule("everyone")]),
            gate("segment:staff", [rule("staff_rule")], entity="segment"),
            gate("mobile_only", [rule("everyone")], targetAppIDs=["mobile"]),
        ],
        configs=[
            config("settings", [rule("r", return_value={"limit": 10})]),
            config("exp", [
                rule("treat", [condition("pass_gate", target_value="beta")], return_value={"color": "blue"},
                     groupName="Treatment", isExperimentGroup=True),
            ], entity="experiment", isActive=True, hasSharedParams=True, explicitParameters=["color"]),
        ],
        layers=[layer("checkout", [rule("layerAssignment", configDelegate="exp")],
                      default_value={"color": "grey", "size": "m"})],
        layer_map={"checkout": ["exp"]},
        time=777,
    )


@pytest.fixture
def subject():
    return Subject(user_id="u1", custom_ids={"companyID": "c1"}, private_attributes={"ssn": "secret"})


class TestClientInitializeResponse:
    """Test cases for pre-evaluated client payloads."""

    def test_uninitialized_returns_none(self, evaluator, subject):
        assert evaluator.get_client_initialize_response(subject) is None

    def test_payload_shape(self, evaluator, store, catalog, subject):
        store.snapshot = catalog

        response = evaluator.get_client_initialize_response(subject, hash_algorithm=HashAlgorithm.NONE)

        assert response["has_updates"] is True
        assert response["time"] == 777
        assert response["hash_used"] == "none"
        assert response["evaluated_keys"] == {"userID": "u1", "customIDs": {"companyID": "c1"}}
        assert response["user"] == {"userID": "u1", "customIDs": {"companyID": "c1"}}

    def test_gates(self, evaluator, store, catalog, subject):
        store.snapshot = catalog

        gates = evaluator.get_client_initialize_response(subject, hash_algorithm=HashAlgorithm.NONE)["feature_gates"]

        assert set(gates) == {"beta", "mobile_only"}
        assert gates["beta"]["value"] is True
        assert gates["beta"]["rule_id"] == "everyone"

    def test_experiment_in_layer(self, evaluator, store, catalog, subject):
        store.snapshot = catalog

        configs = evaluator.get_client_initialize_response(subject, hash_algorithm=HashAlgorithm.NONE)[
            "dynamic_configs"]

        exp = configs["exp"]
        assert exp["value"] == {"color": "blue", "size": "m"}
        assert exp["group_name"] == "Treatment"
        assert exp["is_user_in_experiment"] is True
        assert exp["is_experiment_active"] is True
        assert exp["is_in_layer"] is True
        assert exp["explicit_parameters"] == ["color"]
        assert exp["secondary_exposures"] == [{"gate": "beta", "gateValue": "true", "ruleID": "everyone"}]
        assert configs["settings"]["passed"] is True
        assert "is_user_in_experiment" not in configs["settings"]

    def test_layer_allocation(self, evaluator, store, catalog, subject):
        store.snapshot = catalog

        layers = evaluator.get_client_initialize_response(subject, hash_algorithm=HashAlgorithm.NONE)[
            "layer_configs"]

        checkout = layers["checkout"]
        assert checkout["allocated_experiment_name"] == "exp"
        assert checkout["value"] == {"color": "blue"}
        assert checkout["is_user_in_experiment"] is True
        assert checkout["explicit_parameters"] == ["color"]
        assert checkout["undelegated_secondary_exposures"] == []

    def test_names_are_hashed(self, evaluator, store, catalog, subject):
        store.snapshot = catalog

        response = evaluator.get_client_initialize_response(subject)

        assert response["hash_used"] == "djb2"
        assert djb2_hash("beta") in response["feature_gates"]
        exp = response["dynamic_configs"][djb2_hash("exp")]
        assert exp["secondary_exposures"][0]["gate"] == djb2_hash("beta")
        assert response["layer_configs"][djb2_hash("checkout")]["allocated_experiment_name"] == djb2_hash("exp")

    def test_target_app_filter(self, evaluator, store, catalog, subject):
        store.snapshot = catalog

        response = evaluator.get_client_initialize_response(
            subject, hash_algorithm=HashAlgorithm.NONE, target_app_id="mobile",
        )

        assert set(response["feature_gates"]) == {"mobile_only"}
        assert response["dynamic_configs"] == {}

    def test_local_overrides_are_opt_in(self, evaluator, store, catalog, subject):
        store.snapshot = catalog
        evaluator.override_gate("beta", False)

        plain = evaluator.get_client_initialize_response(subject, hash_algorithm=HashAlgorithm.NONE)
        with_overrides = evaluator.get_client_initialize_response(
            subject, hash_algorithm=HashAlgorithm.NONE, include_local_overrides=True,
        )

        assert plain["feature_gates"]["beta"]["value"] is True
        assert with_overrides["feature_gates"]["beta"]["value"] is False
        assert with_overrides["feature_gates"]["beta"]["rule_id"] == "override"
