import json

import pytest

from splitflag.errors import (
    InvalidDatafileError,
    InvalidIntegrationError,
    NotFoundError,
    UnsupportedDatafileVersionError,
)
from splitflag.project_config import ProjectConfig, set_holdouts_enabled


def test_basic_fields(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.account_id == "12001"
    assert config.project_id == "111001"
    assert config.revision == "42"
    assert config.region == "US"
    assert config.sdk_key == "sdk-key-1"
    assert config.environment_key == "production"
    assert config.send_flag_decisions is True
    assert config.anonymize_ip is False


def test_accepts_json_string_and_bytes(datafile):
    as_text = ProjectConfig.from_datafile(json.dumps(datafile))
    as_bytes = ProjectConfig.from_datafile(json.dumps(datafile).encode("utf-8"))
    assert as_text.revision == as_bytes.revision == "42"
    assert json.loads(as_text.to_datafile())["revision"] == "42"


def test_rejects_unsupported_version(datafile):
    datafile["version"] = "3"
    with pytest.raises(UnsupportedDatafileVersionError) as e:
        ProjectConfig.from_datafile(datafile)
    assert e.value.version == "3"


def test_rejects_malformed_datafiles(datafile):
    with pytest.raises(InvalidDatafileError):
        ProjectConfig.from_datafile("{not json")
    with pytest.raises(InvalidDatafileError):
        ProjectConfig.from_datafile("[1, 2]")

    del datafile["experiments"][0]["key"]
    with pytest.raises(InvalidDatafileError):
        ProjectConfig.from_datafile(datafile)


def test_rejects_undecodable_bytes():
    with pytest.raises(InvalidDatafileError):
        ProjectConfig.from_datafile(b"\xff\xfe")


def test_rejects_non_numeric_traffic_ranges(datafile):
    datafile["experiments"][0]["trafficAllocation"][0]["endOfRange"] = "x"
    with pytest.raises(InvalidDatafileError):
        ProjectConfig.from_datafile(datafile)


def test_integration_without_key(datafile):
    datafile["integrations"].append({"host": "https://other"})
    with pytest.raises(InvalidIntegrationError):
        ProjectConfig.from_datafile(datafile)


def test_odp_integration(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.host_for_odp == "https://odp.example.com"
    assert config.public_key_for_odp == "odp-key"
    assert config.segments == ["odp-segment-1"]
    assert [i.key for i in config.integrations] == ["odp"]


def test_lookups(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.get_feature_by_key("checkout").id == "flag_1"
    assert config.get_experiment_by_key("checkout_test").id == "exp_1"
    assert config.get_experiment_by_id("exp_a").key == "group_exp_a"
    assert config.get_attribute_by_key("age").id == "111095"
    assert config.get_attribute_by_id("111094").key == "country"
    assert config.get_attribute_id("country") == "111094"
    assert config.get_attribute_id("unknown") is None
    assert config.get_event_by_key("purchase").id == "evt_1"
    assert config.get_group_by_id("group_1").policy == "random"
    assert config.get_rollout_by_id("rollout_2").experiments[0].key == "default-rollout"
    assert config.get_audience_by_id("11154").name == "US users"

    for lookup in (
        config.get_feature_by_key,
        config.get_experiment_by_key,
        config.get_experiment_by_id,
        config.get_attribute_by_key,
        config.get_event_by_key,
        config.get_group_by_id,
        config.get_rollout_by_id,
        config.get_audience_by_id,
        config.get_holdout_by_id,
        config.get_flag_variations,
    ):
        with pytest.raises(NotFoundError):
            lookup("missing")


def test_typed_audiences_win(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.get_audience_by_id("11155").name == "Adults"
    assert len(config.audiences) == 3


def test_feature_experiments_are_marked(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.get_experiment_by_key("checkout_test").is_feature_experiment
    assert not config.get_experiment_by_key("paused_test").is_feature_experiment

    feature = config.get_feature_by_key("checkout")
    assert [e.key for e in feature.feature_experiments] == ["checkout_test"]
    assert feature.feature_experiments[0].is_feature_experiment
    assert feature.rollout.id == "rollout_1"
    assert feature.variables["config"].type == "json"


def test_group_experiments(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.get_experiment_by_id("exp_a").group_id == "group_1"
    assert config.get_group_by_id("group_1").experiment_ids == ("exp_a", "exp_b")


def test_unresolved_references_are_skipped(datafile):
    datafile["featureFlags"][0]["experimentIds"].append("exp_missing")
    datafile["featureFlags"][1]["rolloutId"] = "rollout_missing"
    config = ProjectConfig.from_datafile(datafile)
    assert len(config.get_feature_by_key("checkout").feature_experiments) == 1
    assert config.get_feature_by_key("simple_flag").rollout is None


def test_flag_variations(datafile):
    config = ProjectConfig.from_datafile(datafile)
    keys = [v.key for v in config.get_flag_variations("checkout")]
    assert keys == ["control", "treatment", "on", "off"]
    assert config.get_flag_variation_by_key("checkout", "on").id == "rv_on"
    with pytest.raises(NotFoundError):
        config.get_flag_variation_by_key("checkout", "missing")


def test_lenient_defaults():
    config = ProjectConfig.from_datafile({"version": "4"})
    assert config.features == []
    assert config.revision == ""
    assert config.region == "US"
    assert config.segments == []


def test_holdouts_ignored_when_disabled(datafile):
    config = ProjectConfig.from_datafile(datafile)
    assert config.global_holdouts == []
    assert config.get_holdouts_for_flag("checkout") == []


def test_holdouts(datafile):
    config = ProjectConfig.from_datafile(datafile, holdouts_enabled=True)
    assert [h.key for h in config.global_holdouts] == ["global_holdout"]
    assert [h.key for h in config.specific_holdouts] == ["specific_holdout"]
    assert config.get_holdout_by_id("h1").is_global
    with pytest.raises(NotFoundError):
        config.get_holdout_by_id("h2")

    assert [h.key for h in config.get_holdouts_for_flag("checkout")] == ["global_holdout"]
    assert config.get_holdouts_for_flag("simple_flag") == []
    assert [h.key for h in config.get_holdouts_for_flag("no_rules")] == ["global_holdout", "specific_holdout"]


def test_holdouts_toggle(datafile):
    set_holdouts_enabled(True)
    config = ProjectConfig.from_datafile(datafile)
    assert config.holdouts_enabled
    assert len(config.global_holdouts) == 1
