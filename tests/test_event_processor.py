import json
from unittest.mock import MagicMock, patch

import pytest
from urllib3.exceptions import HTTPError

from conftest import MockResponse
from splitflag.common_types import UserContext
from splitflag.errors import EventDispatchError
from splitflag.event_factory import (
    CLIENT_NAME,
    create_conversion_event,
    create_impression_event,
    create_log_batch,
    get_numeric_value,
    get_revenue_value,
)
from splitflag.event_processor import DEFAULT_EVENT_ENDPOINT, BatchEventProcessor, EventDispatcher
from splitflag.project_config import ProjectConfig


@pytest.fixture
def config(datafile):
    return ProjectConfig.from_datafile(datafile)


def impression(config, user_id="u1", attributes=None):
    experiment = config.get_experiment_by_key("checkout_test")
    return create_impression_event(
        config,
        experiment,
        experiment.get_variation_by_key("treatment"),
        UserContext(id=user_id, attributes=attributes or {}),
        "checkout",
        "checkout_test",
        "feature-test",
        True,
    )


def test_impression_event(config):
    event = impression(config, attributes={"country": "US", "unknown": 1, "$opt_user_agent": "bot"})
    assert event.is_impression
    assert event.visitor_id == "u1"
    assert event.decision == {
        "campaign_id": "layer_1",
        "experiment_id": "exp_1",
        "variation_id": "var_t",
        "metadata": {
            "flag_key": "checkout",
            "rule_key": "checkout_test",
            "rule_type": "feature-test",
            "variation_key": "treatment",
            "enabled": True,
        },
    }
    assert event.snapshot_event["key"] == "campaign_activated"
    assert event.snapshot_event["entity_id"] == "layer_1"
    assert event.snapshot_event["uuid"] == event.uuid
    assert event.context.client_name == CLIENT_NAME

    keys = [a["key"] for a in event.attributes]
    assert keys == ["country", "$opt_user_agent", "$opt_bot_filtering"]
    assert event.attributes[0]["entity_id"] == "111094"


def test_events_have_unique_ids(config):
    assert impression(config).uuid != impression(config).uuid


def test_rollout_impressions_follow_send_flag_decisions(datafile):
    datafile["sendFlagDecisions"] = False
    config = ProjectConfig.from_datafile(datafile)
    rule = config.get_rollout_by_id("rollout_2").experiments[0]
    user = UserContext(id="u1")
    assert create_impression_event(config, rule, rule.get_variation_by_key("on"), user,
                                   "simple_flag", rule.key, "rollout", True) is None
    assert create_impression_event(config, None, None, user, "no_rules", "", "rollout", False) is None

    experiment = config.get_experiment_by_key("checkout_test")
    assert create_impression_event(config, experiment, experiment.get_variation_by_key("control"), user,
                                   "checkout", experiment.key, "feature-test", False) is not None


def test_conversion_event(config):
    event = create_conversion_event(
        config,
        config.get_event_by_key("purchase"),
        UserContext(id="u1", attributes={"age": 30}),
        {"revenue": 4200, "value": 3.5, "category": "shoes"},
    )
    assert not event.is_impression
    assert event.snapshot_event["entity_id"] == "evt_1"
    assert event.snapshot_event["key"] == "purchase"
    assert event.snapshot_event["revenue"] == 4200
    assert event.snapshot_event["value"] == 3.5
    assert event.snapshot_event["tags"] == {"revenue": 4200, "value": 3.5, "category": "shoes"}


def test_tag_values():
    assert get_revenue_value({"revenue": 10.0}) == 10
    assert get_revenue_value({"revenue": 10.5}) is None
    assert get_revenue_value({"revenue": True}) is None
    assert get_revenue_value({"revenue": "10"}) is None
    assert get_numeric_value({"value": 2}) == 2.0
    assert get_numeric_value({"value": "2"}) is None
    assert get_numeric_value({}) is None


def test_log_batch(config):
    events = [impression(config, "u1"), impression(config, "u2")]
    batch = create_log_batch(events)
    assert batch["account_id"] == "12001"
    assert batch["project_id"] == "111001"
    assert batch["revision"] == "42"
    assert batch["enrich_decisions"] is True
    assert [v["visitor_id"] for v in batch["visitors"]] == ["u1", "u2"]
    snapshot = batch["visitors"][0]["snapshots"][0]
    assert snapshot["decisions"][0]["variation_id"] == "var_t"
    assert snapshot["events"][0]["key"] == "campaign_activated"

    with pytest.raises(ValueError):
        create_log_batch([])


def test_dispatcher_posts_json():
    dispatcher = EventDispatcher()
    with patch.object(EventDispatcher, "_post", return_value=MockResponse(204)) as mock_post:
        dispatcher.dispatch({"visitors": []})
    url, body, headers = mock_post.call_args[0]
    assert url == DEFAULT_EVENT_ENDPOINT
    assert json.loads(body) == {"visitors": []}
    assert headers["Content-Type"] == "application/json"


@pytest.mark.parametrize("status,retryable", [(400, False), (404, False), (500, True), (503, True)])
def test_dispatcher_errors(status, retryable):
    dispatcher = EventDispatcher("https://events.example.com")
    with patch.object(EventDispatcher, "_post", return_value=MockResponse(status)):
        with pytest.raises(EventDispatchError) as e:
            dispatcher.dispatch({})
    assert e.value.retryable is retryable


def test_dispatcher_network_error_is_retryable():
    with patch.object(EventDispatcher, "_post", side_effect=HTTPError("connection reset")):
        with pytest.raises(EventDispatchError) as e:
            EventDispatcher().dispatch({})
    assert e.value.retryable


def test_processor_batches_by_revision(datafile, config):
    datafile["revision"] = "43"
    newer = ProjectConfig.from_datafile(datafile)

    dispatcher = MagicMock()
    processor = BatchEventProcessor(dispatcher, batch_size=10, flush_interval=30)
    try:
        processor.process(impression(config, "u1"))
        processor.process(impression(config, "u2"))
        processor.process(impression(newer, "u3"))
        processor.flush()
    finally:
        processor.stop()

    batches = [c[0][0] for c in dispatcher.dispatch.call_args_list]
    assert [b["revision"] for b in batches] == ["42", "43"]
    assert [len(b["visitors"]) for b in batches] == [2, 1]
