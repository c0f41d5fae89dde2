import copy
import json
import os
import sys
import time

import pytest

from splitflag.project_config import set_holdouts_enabled

# Add project root to Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def pytest_generate_tests(metafunc):
    folder = os.path.abspath(os.path.dirname(__file__))
    jsonfile = os.path.join(folder, "cases.json")
    with open(jsonfile) as file:
        data = json.load(file)

    for func, cases in data.items():
        key = func + "_data"
        if key in metafunc.fixturenames:
            metafunc.parametrize(key, cases)


class MockResponse:
    """Mock urllib3 response for testing"""
    def __init__(self, status, data=""):
        self.status = status
        if isinstance(data, (dict, list)):
            data = json.dumps(data)
        self.data = data.encode('utf-8') if isinstance(data, str) else data


def wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def reset_holdouts_toggle():
    set_holdouts_enabled(False)
    yield
    set_holdouts_enabled(False)


DATAFILE = {
    "version": "4",
    "accountId": "12001",
    "projectId": "111001",
    "revision": "42",
    "sdkKey": "sdk-key-1",
    "environmentKey": "production",
    "anonymizeIP": False,
    "botFiltering": False,
    "sendFlagDecisions": True,
    "attributes": [
        {"id": "111094", "key": "country"},
        {"id": "111095", "key": "age"},
    ],
    "audiences": [
        {
            "id": "11154",
            "name": "US users",
            "conditions": "[\"and\", [\"or\", [\"or\", {\"type\": \"custom_attribute\", "
                          "\"name\": \"country\", \"match\": \"exact\", \"value\": \"US\"}]]]",
        },
        {
            "id": "11155",
            "name": "legacy adults, shadowed by the typed audience",
            "conditions": "[\"or\", {\"type\": \"custom_attribute\", \"name\": \"age\", "
                          "\"match\": \"exact\", \"value\": 99}]",
        },
    ],
    "typedAudiences": [
        {
            "id": "11155",
            "name": "Adults",
            "conditions": ["and", ["or", {"type": "custom_attribute", "name": "age", "match": "ge", "value": 18}]],
        },
        {
            "id": "11156",
            "name": "Segment members",
            "conditions": ["or", {
                "type": "third_party_dimension",
                "name": "odp.audiences",
                "match": "qualified",
                "value": "odp-segment-1",
            }],
        },
    ],
    "experiments": [
        {
            "id": "exp_1",
            "key": "checkout_test",
            "layerId": "layer_1",
            "status": "Running",
            "audienceIds": ["11154"],
            "audienceConditions": None,
            "forcedVariations": {"qa_user": "control"},
            "variations": [
                {"id": "var_c", "key": "control", "featureEnabled": False},
                {
                    "id": "var_t",
                    "key": "treatment",
                    "featureEnabled": True,
                    "variables": [{"id": "v_color", "value": "blue"}],
                },
            ],
            "trafficAllocation": [{"entityId": "var_t", "endOfRange": 10000}],
        },
        {
            "id": "exp_paused",
            "key": "paused_test",
            "layerId": "layer_2",
            "status": "Paused",
            "audienceIds": [],
            "variations": [{"id": "var_p", "key": "on", "featureEnabled": True}],
            "trafficAllocation": [{"entityId": "var_p", "endOfRange": 10000}],
        },
    ],
    "groups": [
        {
            "id": "group_1",
            "policy": "random",
            "trafficAllocation": [
                {"entityId": "exp_a", "endOfRange": 5000},
                {"entityId": "exp_b", "endOfRange": 10000},
            ],
            "experiments": [
                {
                    "id": "exp_a",
                    "key": "group_exp_a",
                    "layerId": "layer_a",
                    "status": "Running",
                    "audienceIds": [],
                    "variations": [{"id": "a_var", "key": "a", "featureEnabled": True}],
                    "trafficAllocation": [{"entityId": "a_var", "endOfRange": 10000}],
                },
                {
                    "id": "exp_b",
                    "key": "group_exp_b",
                    "layerId": "layer_b",
                    "status": "Running",
                    "audienceIds": [],
                    "variations": [{"id": "b_var", "key": "b", "featureEnabled": True}],
                    "trafficAllocation": [{"entityId": "b_var", "endOfRange": 10000}],
                },
            ],
        }
    ],
    "rollouts": [
        {
            "id": "rollout_1",
            "experiments": [
                {
                    "id": "rule_1",
                    "key": "adults_rule",
                    "layerId": "rollout_layer_1",
                    "status": "Running",
                    "audienceIds": ["11155"],
                    "variations": [{
                        "id": "rv_on",
                        "key": "on",
                        "featureEnabled": True,
                        "variables": [{"id": "v_discount", "value": "0.8"}],
                    }],
                    "trafficAllocation": [{"entityId": "rv_on", "endOfRange": 10000}],
                },
                {
                    "id": "rule_2",
                    "key": "everyone_else",
                    "layerId": "rollout_layer_2",
                    "status": "Running",
                    "audienceIds": [],
                    "variations": [{"id": "rv_off", "key": "off", "featureEnabled": False}],
                    "trafficAllocation": [{"entityId": "rv_off", "endOfRange": 10000}],
                },
            ],
        },
        {
            "id": "rollout_2",
            "experiments": [
                {
                    "id": "rule_3",
                    "key": "default-rollout",
                    "layerId": "rollout_layer_3",
                    "status": "Running",
                    "audienceIds": [],
                    "variations": [{"id": "rv_on2", "key": "on", "featureEnabled": True}],
                    "trafficAllocation": [{"entityId": "rv_on2", "endOfRange": 10000}],
                },
            ],
        },
    ],
    "featureFlags": [
        {
            "id": "flag_1",
            "key": "checkout",
            "experimentIds": ["exp_1"],
            "rolloutId": "rollout_1",
            "variables": [
                {"id": "v_color", "key": "button_color", "type": "string", "defaultValue": "gray"},
                {"id": "v_discount", "key": "discount", "type": "double", "defaultValue": "0.5"},
                {"id": "v_json", "key": "config", "type": "string", "subType": "json",
                 "defaultValue": "{\"a\": 1}"},
            ],
        },
        {"id": "flag_2", "key": "simple_flag", "experimentIds": [], "rolloutId": "rollout_2", "variables": []},
        {"id": "flag_3", "key": "no_rules", "experimentIds": [], "rolloutId": "", "variables": []},
        {"id": "flag_4", "key": "grouped", "experimentIds": ["exp_a", "exp_b"], "rolloutId": "", "variables": []},
    ],
    "events": [
        {"id": "evt_1", "key": "purchase", "experimentIds": ["exp_1"]},
    ],
    "integrations": [
        {"key": "odp", "host": "https://odp.example.com", "publicKey": "odp-key"},
    ],
    "holdouts": [
        {
            "id": "h1",
            "key": "global_holdout",
            "status": "Running",
            "audienceIds": [],
            "variations": [{"id": "hv1", "key": "holdout_off", "featureEnabled": False}],
            "trafficAllocation": [{"entityId": "hv1", "endOfRange": 10000}],
            "includedFlags": [],
            "excludedFlags": ["flag_2"],
        },
        {
            "id": "h2",
            "key": "draft_holdout",
            "status": "Draft",
            "audienceIds": [],
            "variations": [{"id": "hv2", "key": "holdout_off", "featureEnabled": False}],
            "trafficAllocation": [{"entityId": "hv2", "endOfRange": 10000}],
            "includedFlags": [],
            "excludedFlags": [],
        },
        {
            "id": "h3",
            "key": "specific_holdout",
            "status": "Running",
            "audienceIds": [],
            "variations": [{"id": "hv3", "key": "holdout_off", "featureEnabled": False}],
            "trafficAllocation": [],
            "includedFlags": ["flag_3"],
            "excludedFlags": [],
        },
    ],
}


@pytest.fixture
def datafile():
    return copy.deepcopy(DATAFILE)
