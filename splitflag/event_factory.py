"""Impression and conversion events in the log-batch wire format."""

import time
import uuid
import logging
import numbers

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .common_types import Event, Experiment, Holdout, UserContext, Variation
from .project_config import ProjectConfig

logger = logging.getLogger("splitflag.event_factory")

CLIENT_NAME = "python-splitflag"
IMPRESSION_KEY = "campaign_activated"
ATTRIBUTE_TYPE = "custom"
RESERVED_PREFIX = "$opt_"
BOT_FILTERING_KEY = "$opt_bot_filtering"
REVENUE_TAG = "revenue"
VALUE_TAG = "value"


def _client_version() -> str:
    from . import __version__
    return __version__


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EventContext:
    account_id: str
    project_id: str
    revision: str
    anonymize_ip: bool
    bot_filtering: bool
    client_name: str = CLIENT_NAME
    client_version: str = ""

    def batch_key(self):
        return (self.account_id, self.project_id, self.revision, self.anonymize_ip)


@dataclass
class UserEvent:
    """A single impression or conversion waiting to be batched."""
    context: EventContext
    visitor_id: str
    attributes: List[Dict[str, Any]]
    decision: Optional[Dict[str, Any]] = None
    snapshot_event: Dict[str, Any] = field(default_factory=dict)
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=_now_ms)

    @property
    def is_impression(self) -> bool:
        return self.decision is not None


def create_event_context(config: ProjectConfig) -> EventContext:
    return EventContext(
        account_id=config.account_id,
        project_id=config.project_id,
        revision=config.revision,
        anonymize_ip=config.anonymize_ip,
        bot_filtering=config.bot_filtering,
        client_version=_client_version(),
    )


def build_visitor_attributes(config: ProjectConfig, attributes: Dict[str, Any]) -> List[Dict[str, Any]]:
    visitor_attributes = []
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        attribute_id = config.get_attribute_id(key)
        if attribute_id:
            entity_id = attribute_id
        elif key.startswith(RESERVED_PREFIX):
            entity_id = key
        else:
            logger.debug('Attribute "%s" is not in the datafile, not sending it', key)
            continue
        visitor_attributes.append({"entity_id": entity_id, "key": key, "type": ATTRIBUTE_TYPE, "value": value})

    visitor_attributes.append({
        "entity_id": BOT_FILTERING_KEY,
        "key": BOT_FILTERING_KEY,
        "type": ATTRIBUTE_TYPE,
        "value": config.bot_filtering,
    })
    return visitor_attributes


def create_impression_event(
    config: ProjectConfig,
    experiment: Optional[Union[Experiment, Holdout]],
    variation: Optional[Variation],
    user: UserContext,
    flag_key: str,
    rule_key: str,
    rule_type: str,
    enabled: bool,
) -> Optional[UserEvent]:
    """Returns None when the decision should not be reported."""
    if (rule_type == "rollout" or variation is None) and not config.send_flag_decisions:
        return None

    layer_id = getattr(experiment, "layer_id", "") if experiment is not None else ""
    metadata = {
        "flag_key": flag_key,
        "rule_key": rule_key or "",
        "rule_type": rule_type,
        "variation_key": variation.key if variation is not None else "",
        "enabled": enabled,
    }
    decision = {
        "campaign_id": layer_id,
        "experiment_id": experiment.id if experiment is not None else "",
        "variation_id": variation.id if variation is not None else "",
        "metadata": metadata,
    }
    event = UserEvent(
        context=create_event_context(config),
        visitor_id=user.id,
        attributes=build_visitor_attributes(config, user.attributes),
        decision=decision,
    )
    event.snapshot_event = {
        "entity_id": layer_id,
        "key": IMPRESSION_KEY,
        "timestamp": event.timestamp,
        "uuid": event.uuid,
    }
    return event


def get_revenue_value(tags: Dict[str, Any]) -> Optional[int]:
    value = tags.get(REVENUE_TAG)
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def get_numeric_value(tags: Dict[str, Any]) -> Optional[float]:
    value = tags.get(VALUE_TAG)
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return None
    return float(value)


def create_conversion_event(
    config: ProjectConfig,
    event: Event,
    user: UserContext,
    event_tags: Optional[Dict[str, Any]] = None,
) -> UserEvent:
    tags = dict(event_tags or {})
    user_event = UserEvent(
        context=create_event_context(config),
        visitor_id=user.id,
        attributes=build_visitor_attributes(config, user.attributes),
    )
    snapshot_event = {
        "entity_id": event.id,
        "key": event.key,
        "timestamp": user_event.timestamp,
        "uuid": user_event.uuid,
    }
    if tags:
        snapshot_event["tags"] = tags
    revenue = get_revenue_value(tags)
    if revenue is not None:
        snapshot_event["revenue"] = revenue
    value = get_numeric_value(tags)
    if value is not None:
        snapshot_event["value"] = value
    user_event.snapshot_event = snapshot_event
    return user_event


def create_visitor(event: UserEvent) -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {"events": [event.snapshot_event]}
    if event.decision is not None:
        snapshot["decisions"] = [event.decision]
    return {
        "visitor_id": event.visitor_id,
        "attributes": event.attributes,
        "snapshots": [snapshot],
    }


def create_log_batch(events: List[UserEvent]) -> Dict[str, Any]:
    """Merge user events that share a context into one request body."""
    if not events:
        raise ValueError("cannot build a batch from no events")
    context = events[0].context
    return {
        "account_id": context.account_id,
        "project_id": context.project_id,
        "revision": context.revision,
        "client_name": context.client_name,
        "client_version": context.client_version,
        "anonymize_ip": context.anonymize_ip,
        "enrich_decisions": True,
        "visitors": [create_visitor(event) for event in events],
    }
