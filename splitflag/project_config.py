"""In-memory model of a v4 datafile.

``ProjectConfig.from_datafile`` normalizes the raw JSON into frozen entities
and cross-indexes them. A config is never mutated after it is built; a new
datafile revision produces a new config.
"""

import os
import json
import logging
import threading

from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple, Union

from .common_types import (
    Attribute,
    Audience,
    Event,
    Experiment,
    FeatureFlag,
    Group,
    Holdout,
    Integration,
    Rollout,
    TrafficRange,
    Variable,
    VariableValue,
    Variation,
)
from .condition_tree import build_audience_tree, build_condition_tree, extract_segments
from .errors import (
    InvalidDatafileError,
    InvalidIntegrationError,
    NotFoundError,
    UnsupportedDatafileVersionError,
)

logger = logging.getLogger("splitflag.project_config")

SUPPORTED_VERSION = "4"
DEFAULT_REGION = "US"
ODP_INTEGRATION_KEY = "odp"
HOLDOUTS_ENV = "SPLITFLAG_HOLDOUTS_ENABLED"
RUNNING = "Running"

_toggle_lock = threading.Lock()
_holdouts_enabled = os.environ.get(HOLDOUTS_ENV, "").strip().lower() in ("1", "true", "yes", "on")


def set_holdouts_enabled(enabled: bool) -> None:
    global _holdouts_enabled
    with _toggle_lock:
        _holdouts_enabled = bool(enabled)


def is_holdouts_enabled() -> bool:
    return _holdouts_enabled


# Mappers from raw datafile dictionaries to entities

def _map_traffic(raw: List[dict]) -> Tuple[TrafficRange, ...]:
    return tuple(
        TrafficRange(entity_id=str(t.get("entityId", "")), end_of_range=int(t.get("endOfRange", 0)))
        for t in raw or []
    )


def _map_variation(raw: dict) -> Variation:
    variables = {}
    for v in raw.get("variables") or []:
        variables[v["id"]] = VariableValue(id=v["id"], value=v.get("value"))
    return Variation(
        id=raw["id"],
        key=raw["key"],
        feature_enabled=bool(raw.get("featureEnabled", False)),
        variables=variables,
    )


def _map_experiment(raw: dict, group_id: Optional[str] = None) -> Experiment:
    variations: Dict[str, Variation] = {}
    variation_key_to_id: Dict[str, str] = {}
    for v in raw.get("variations") or []:
        variation = _map_variation(v)
        variations[variation.id] = variation
        variation_key_to_id[variation.key] = variation.id

    audience_ids = tuple(raw.get("audienceIds") or ())
    audience_conditions = raw.get("audienceConditions")
    return Experiment(
        id=raw["id"],
        key=raw["key"],
        layer_id=raw.get("layerId", ""),
        status=raw.get("status", ""),
        type=raw.get("type", ""),
        variations=variations,
        variation_key_to_id=variation_key_to_id,
        traffic_allocation=_map_traffic(raw.get("trafficAllocation")),
        audience_ids=audience_ids,
        audience_conditions=audience_conditions,
        audience_condition_tree=build_audience_tree(audience_conditions, list(audience_ids)),
        group_id=group_id or raw.get("groupId") or None,
        whitelist=dict(raw.get("forcedVariations") or {}),
        cmab=raw.get("cmab"),
    )


def _map_variable(raw: dict) -> Variable:
    var_type = raw.get("type", "string")
    if var_type == "string" and raw.get("subType") == "json":
        var_type = "json"
    return Variable(id=raw["id"], key=raw["key"], default_value=raw.get("defaultValue"), type=var_type)


def _map_holdout(raw: dict) -> Holdout:
    variations = {}
    for v in raw.get("variations") or []:
        variation = _map_variation(v)
        variations[variation.id] = variation
    audience_ids = tuple(raw.get("audienceIds") or ())
    audience_conditions = raw.get("audienceConditions")
    return Holdout(
        id=raw["id"],
        key=raw["key"],
        status=raw.get("status", ""),
        audience_ids=audience_ids,
        audience_conditions=audience_conditions,
        audience_condition_tree=build_audience_tree(audience_conditions, list(audience_ids)),
        variations=variations,
        traffic_allocation=_map_traffic(raw.get("trafficAllocation")),
        included_flags=tuple(raw.get("includedFlags") or ()),
        excluded_flags=tuple(raw.get("excludedFlags") or ()),
        experiments=tuple(raw.get("experiments") or ()),
    )


def _parse_datafile(datafile: Union[str, bytes, dict]) -> dict:
    if isinstance(datafile, dict):
        return datafile
    try:
        if isinstance(datafile, bytes):
            datafile = datafile.decode("utf-8")
        data = json.loads(datafile)
    except (TypeError, ValueError) as e:
        raise InvalidDatafileError(f"datafile is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidDatafileError("datafile must be a JSON object")
    return data


class ProjectConfig(object):
    def __init__(self, datafile: dict, holdouts_enabled: bool = False) -> None:
        self.datafile = datafile
        self.version = str(datafile.get("version"))
        self.account_id = datafile.get("accountId", "")
        self.project_id = datafile.get("projectId", "")
        self.revision = datafile.get("revision", "")
        self.region = datafile.get("region") or DEFAULT_REGION
        self.sdk_key = datafile.get("sdkKey", "")
        self.environment_key = datafile.get("environmentKey", "")
        self.anonymize_ip = bool(datafile.get("anonymizeIP", False))
        self.bot_filtering = bool(datafile.get("botFiltering", False))
        self.send_flag_decisions = bool(datafile.get("sendFlagDecisions", False))
        self.holdouts_enabled = holdouts_enabled

        self._attribute_id_map: Dict[str, Attribute] = {}
        self._attribute_key_map: Dict[str, Attribute] = {}
        self._audience_map: Dict[str, Audience] = {}
        self._experiment_id_map: Dict[str, Experiment] = {}
        self._experiment_key_map: Dict[str, Experiment] = {}
        self._experiment_group_map: Dict[str, str] = {}
        self._group_map: Dict[str, Group] = {}
        self._rollout_map: Dict[str, Rollout] = {}
        self._rollouts: List[Rollout] = []
        self._feature_map: Dict[str, FeatureFlag] = {}
        self._features: List[FeatureFlag] = []
        self._event_map: Dict[str, Event] = {}
        self._integrations: List[Integration] = []
        self._segments: List[str] = []
        self._flag_variations: Dict[str, List[Variation]] = {}
        self._global_holdouts: List[Holdout] = []
        self._specific_holdouts: List[Holdout] = []
        self._holdout_id_map: Dict[str, Holdout] = {}
        self._flag_holdouts: Dict[str, List[Holdout]] = {}
        self.public_key_for_odp = ""
        self.host_for_odp = ""

        self._build()

    @classmethod
    def from_datafile(
        cls, datafile: Union[str, bytes, dict], holdouts_enabled: Optional[bool] = None
    ) -> "ProjectConfig":
        data = _parse_datafile(datafile)
        version = data.get("version")
        if str(version) != SUPPORTED_VERSION:
            raise UnsupportedDatafileVersionError(version)
        if holdouts_enabled is None:
            holdouts_enabled = is_holdouts_enabled()
        try:
            return cls(data, holdouts_enabled)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidDatafileError(f"malformed datafile: {e!r}") from e

    def _build(self) -> None:
        data = self.datafile

        for raw in data.get("attributes") or []:
            attribute = Attribute(id=raw["id"], key=raw["key"])
            self._attribute_id_map.setdefault(attribute.id, attribute)
            self._attribute_key_map.setdefault(attribute.key, attribute)

        # Typed audiences first so they win over plain audiences with the same id
        for raw in (data.get("typedAudiences") or []) + (data.get("audiences") or []):
            if raw["id"] in self._audience_map:
                continue
            tree = build_condition_tree(raw.get("conditions"))
            self._audience_map[raw["id"]] = Audience(
                id=raw["id"],
                name=raw.get("name", ""),
                conditions=raw.get("conditions"),
                condition_tree=tree,
                segments_used=tuple(extract_segments(tree)),
            )

        for raw in data.get("groups") or []:
            group = Group(
                id=raw["id"],
                policy=raw.get("policy", ""),
                traffic_allocation=_map_traffic(raw.get("trafficAllocation")),
                experiment_ids=tuple(e["id"] for e in raw.get("experiments") or []),
            )
            self._group_map[group.id] = group
            for raw_experiment in raw.get("experiments") or []:
                self._experiment_group_map[raw_experiment["id"]] = group.id
                self._add_experiment(_map_experiment(raw_experiment, group.id))

        for raw in data.get("experiments") or []:
            self._add_experiment(_map_experiment(raw, self._experiment_group_map.get(raw["id"])))

        for raw in data.get("rollouts") or []:
            rollout = Rollout(id=raw["id"], experiments=tuple(_map_experiment(e) for e in raw.get("experiments") or []))
            self._rollout_map[rollout.id] = rollout
            self._rollouts.append(rollout)

        for raw in data.get("featureFlags") or []:
            feature_experiments = []
            for experiment_id in raw.get("experimentIds") or []:
                experiment = self._experiment_id_map.get(experiment_id)
                if experiment is None:
                    logger.warning('Experiment "%s" of flag "%s" not found', experiment_id, raw["key"])
                    continue
                experiment = replace(experiment, is_feature_experiment=True)
                self._add_experiment(experiment, overwrite=True)
                feature_experiments.append(experiment)

            rollout = None
            rollout_id = raw.get("rolloutId")
            if rollout_id:
                rollout = self._rollout_map.get(rollout_id)
                if rollout is None:
                    logger.warning('Rollout "%s" of flag "%s" not found', rollout_id, raw["key"])

            variables = {}
            for raw_variable in raw.get("variables") or []:
                variable = _map_variable(raw_variable)
                variables[variable.key] = variable

            feature = FeatureFlag(
                id=raw["id"],
                key=raw["key"],
                rollout=rollout,
                feature_experiments=tuple(feature_experiments),
                variables=variables,
            )
            if feature.key not in self._feature_map:
                self._feature_map[feature.key] = feature
                self._features.append(feature)

        for raw in data.get("events") or []:
            self._event_map.setdefault(
                raw["key"],
                Event(id=raw["id"], key=raw["key"], experiment_ids=tuple(raw.get("experimentIds") or ())),
            )

        for raw in data.get("integrations") or []:
            if "key" not in raw:
                raise InvalidIntegrationError("integration entry is missing the key field")
            integration = Integration(key=raw["key"], host=raw.get("host") or "", public_key=raw.get("publicKey") or "")
            self._integrations.append(integration)
            if integration.key == ODP_INTEGRATION_KEY and not (self.host_for_odp or self.public_key_for_odp):
                self.host_for_odp = integration.host
                self.public_key_for_odp = integration.public_key

        for audience in self._audience_map.values():
            for segment in audience.segments_used:
                if segment not in self._segments:
                    self._segments.append(segment)

        for feature in self._features:
            self._flag_variations[feature.key] = self._collect_flag_variations(feature)

        if self.holdouts_enabled:
            self._build_holdouts(data.get("holdouts") or [])

    def _add_experiment(self, experiment: Experiment, overwrite: bool = False) -> None:
        if overwrite or experiment.id not in self._experiment_id_map:
            self._experiment_id_map[experiment.id] = experiment
            self._experiment_key_map[experiment.key] = experiment

    @staticmethod
    def _collect_flag_variations(feature: FeatureFlag) -> List[Variation]:
        rules = list(feature.feature_experiments)
        if feature.rollout is not None:
            rules.extend(feature.rollout.experiments)
        seen = set()
        variations = []
        for rule in rules:
            for variation in rule.variations.values():
                if variation.id not in seen:
                    seen.add(variation.id)
                    variations.append(variation)
        return variations

    def _build_holdouts(self, raw_holdouts: List[dict]) -> None:
        for raw in raw_holdouts:
            holdout = _map_holdout(raw)
            if holdout.status != RUNNING:
                logger.debug('Holdout "%s" is not running, skipping', holdout.key)
                continue
            self._holdout_id_map[holdout.id] = holdout
            if holdout.is_global:
                self._global_holdouts.append(holdout)
            else:
                self._specific_holdouts.append(holdout)

        for feature in self._features:
            applicable = [h for h in self._global_holdouts if feature.id not in h.excluded_flags]
            applicable.extend(h for h in self._specific_holdouts if feature.id in h.included_flags)
            self._flag_holdouts[feature.key] = applicable

    # Lookups

    def get_feature_by_key(self, key: str) -> FeatureFlag:
        try:
            return self._feature_map[key]
        except KeyError:
            raise NotFoundError("flag", key) from None

    def get_experiment_by_key(self, key: str) -> Experiment:
        try:
            return self._experiment_key_map[key]
        except KeyError:
            raise NotFoundError("experiment", key) from None

    def get_experiment_by_id(self, experiment_id: str) -> Experiment:
        try:
            return self._experiment_id_map[experiment_id]
        except KeyError:
            raise NotFoundError("experiment", experiment_id) from None

    def get_audience_by_id(self, audience_id: str) -> Audience:
        try:
            return self._audience_map[audience_id]
        except KeyError:
            raise NotFoundError("audience", audience_id) from None

    def get_attribute_by_key(self, key: str) -> Attribute:
        try:
            return self._attribute_key_map[key]
        except KeyError:
            raise NotFoundError("attribute", key) from None

    def get_attribute_by_id(self, attribute_id: str) -> Attribute:
        try:
            return self._attribute_id_map[attribute_id]
        except KeyError:
            raise NotFoundError("attribute", attribute_id) from None

    def get_event_by_key(self, key: str) -> Event:
        try:
            return self._event_map[key]
        except KeyError:
            raise NotFoundError("event", key) from None

    def get_group_by_id(self, group_id: str) -> Group:
        try:
            return self._group_map[group_id]
        except KeyError:
            raise NotFoundError("group", group_id) from None

    def get_rollout_by_id(self, rollout_id: str) -> Rollout:
        try:
            return self._rollout_map[rollout_id]
        except KeyError:
            raise NotFoundError("rollout", rollout_id) from None

    def get_holdout_by_id(self, holdout_id: str) -> Holdout:
        try:
            return self._holdout_id_map[holdout_id]
        except KeyError:
            raise NotFoundError("holdout", holdout_id) from None

    def get_flag_variations(self, flag_key: str) -> List[Variation]:
        try:
            return list(self._flag_variations[flag_key])
        except KeyError:
            raise NotFoundError("flag", flag_key) from None

    def get_flag_variation_by_key(self, flag_key: str, variation_key: str) -> Variation:
        for variation in self.get_flag_variations(flag_key):
            if variation.key == variation_key:
                return variation
        raise NotFoundError("variation", variation_key)

    def get_holdouts_for_flag(self, flag_key: str) -> List[Holdout]:
        if not self.holdouts_enabled:
            return []
        return list(self._flag_holdouts.get(flag_key, []))

    # List accessors

    @property
    def audience_map(self) -> Dict[str, Audience]:
        return self._audience_map

    @property
    def features(self) -> List[FeatureFlag]:
        return list(self._features)

    @property
    def experiments(self) -> List[Experiment]:
        return list(self._experiment_id_map.values())

    @property
    def audiences(self) -> List[Audience]:
        return list(self._audience_map.values())

    @property
    def attributes(self) -> List[Attribute]:
        return list(self._attribute_id_map.values())

    @property
    def events(self) -> List[Event]:
        return list(self._event_map.values())

    @property
    def groups(self) -> List[Group]:
        return list(self._group_map.values())

    @property
    def rollouts(self) -> List[Rollout]:
        return list(self._rollouts)

    @property
    def integrations(self) -> List[Integration]:
        return list(self._integrations)

    @property
    def segments(self) -> List[str]:
        return list(self._segments)

    @property
    def global_holdouts(self) -> List[Holdout]:
        return list(self._global_holdouts)

    @property
    def specific_holdouts(self) -> List[Holdout]:
        return list(self._specific_holdouts)

    def get_attribute_id(self, key: str) -> Optional[str]:
        attribute = self._attribute_key_map.get(key)
        return attribute.id if attribute else None

    def to_datafile(self) -> str:
        return json.dumps(self.datafile)
