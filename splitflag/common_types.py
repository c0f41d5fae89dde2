#!/usr/bin/env python

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union, Iterable, TYPE_CHECKING
from enum import Enum
from abc import ABC, abstractmethod

from .errors import MissingAttributeError

if TYPE_CHECKING:
    from .condition_tree import TreeNode

BUCKETING_ID_ATTRIBUTE = "$opt_bucketing_id"


class DecisionSource(str, Enum):
    FEATURE_TEST = "feature-test"
    ROLLOUT = "rollout"
    HOLDOUT = "holdout"


class DecideOption(Enum):
    DISABLE_TRACKING = "DISABLE_TRACKING"
    ENABLED_ONLY = "ENABLED_ONLY"
    BYPASS_UPS = "BYPASS_UPS"
    FOR_EXPERIMENT = "FOR_EXPERIMENT"
    INCLUDE_REASONS = "INCLUDE_REASONS"
    EXCLUDE_VARIABLES = "EXCLUDE_VARIABLES"


class SegmentOption(Enum):
    IGNORE_CACHE = "IGNORE_CACHE"
    RESET_CACHE = "RESET_CACHE"


def translate_options(options: Optional[Iterable], enum_type) -> set:
    """Accept enum members or their string values; unknown strings raise ValueError."""
    result = set()
    for option in options or ():
        if isinstance(option, enum_type):
            result.add(option)
        else:
            result.add(enum_type(str(option).upper()))
    return result


# Datafile entities. Built once by ProjectConfig and never mutated afterwards.

@dataclass(frozen=True)
class VariableValue:
    id: str
    value: str


@dataclass(frozen=True)
class Variation:
    id: str
    key: str
    feature_enabled: bool = False
    variables: Dict[str, VariableValue] = field(default_factory=dict)


@dataclass(frozen=True)
class TrafficRange:
    entity_id: str
    end_of_range: int


@dataclass(frozen=True)
class Experiment:
    id: str
    key: str
    layer_id: str = ""
    status: str = ""
    type: str = ""
    variations: Dict[str, Variation] = field(default_factory=dict)
    variation_key_to_id: Dict[str, str] = field(default_factory=dict)
    traffic_allocation: Tuple[TrafficRange, ...] = ()
    audience_ids: Tuple[str, ...] = ()
    audience_conditions: Any = None
    audience_condition_tree: Optional["TreeNode"] = None
    group_id: Optional[str] = None
    whitelist: Dict[str, str] = field(default_factory=dict)
    is_feature_experiment: bool = False
    cmab: Optional[Dict[str, Any]] = None

    @property
    def is_running(self) -> bool:
        return self.status == "Running"

    def get_variation_by_key(self, key: str) -> Optional[Variation]:
        variation_id = self.variation_key_to_id.get(key)
        if variation_id is None:
            return None
        return self.variations.get(variation_id)


@dataclass(frozen=True)
class Group:
    id: str
    policy: str
    traffic_allocation: Tuple[TrafficRange, ...] = ()
    experiment_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Variable:
    id: str
    key: str
    default_value: str
    type: str


@dataclass(frozen=True)
class Rollout:
    id: str
    experiments: Tuple[Experiment, ...] = ()


@dataclass(frozen=True)
class FeatureFlag:
    id: str
    key: str
    rollout: Optional[Rollout] = None
    feature_experiments: Tuple[Experiment, ...] = ()
    variables: Dict[str, Variable] = field(default_factory=dict)


@dataclass(frozen=True)
class Holdout:
    id: str
    key: str
    status: str = ""
    audience_ids: Tuple[str, ...] = ()
    audience_conditions: Any = None
    audience_condition_tree: Optional["TreeNode"] = None
    variations: Dict[str, Variation] = field(default_factory=dict)
    traffic_allocation: Tuple[TrafficRange, ...] = ()
    included_flags: Tuple[str, ...] = ()
    excluded_flags: Tuple[str, ...] = ()
    experiments: Tuple[str, ...] = ()

    @property
    def is_global(self) -> bool:
        return not self.included_flags


@dataclass(frozen=True)
class Attribute:
    id: str
    key: str


@dataclass(frozen=True)
class Audience:
    id: str
    name: str
    conditions: Any = None
    condition_tree: Optional["TreeNode"] = None
    segments_used: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Event:
    id: str
    key: str
    experiment_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Integration:
    key: str
    host: str = ""
    public_key: str = ""


# Evaluation-time user snapshot

@dataclass
class UserContext:
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    qualified_segments: Optional[List[str]] = None

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes and self.attributes[name] is not None

    def get_attribute(self, name: str) -> Any:
        if not self.has_attribute(name):
            raise MissingAttributeError(f'no attribute named "{name}"')
        return self.attributes[name]

    def is_qualified_for(self, segment: str) -> bool:
        return segment in (self.qualified_segments or [])

    def get_bucketing_id(self) -> str:
        bucketing_id = self.attributes.get(BUCKETING_ID_ATTRIBUTE)
        if isinstance(bucketing_id, str) and bucketing_id:
            return bucketing_id
        return self.id


class Decision(object):
    """Outcome of deciding one flag (or experiment) for one user."""

    def __init__(
        self,
        flag_key: str,
        enabled: bool = False,
        variation_key: Optional[str] = None,
        rule_key: Optional[str] = None,
        variables: Dict[str, Any] = None,
        reasons: List[str] = None,
        source: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self.flag_key = flag_key
        self.enabled = enabled
        self.variation_key = variation_key
        self.rule_key = rule_key
        self.variables = variables or {}
        self.reasons = reasons or []
        self.source = source
        self.user_id = user_id

    def to_dict(self) -> dict:
        return {
            "flagKey": self.flag_key,
            "enabled": self.enabled,
            "variationKey": self.variation_key,
            "ruleKey": self.rule_key,
            "variables": self.variables,
            "reasons": self.reasons,
            "source": self.source,
        }

    def __repr__(self) -> str:
        return f"Decision({self.to_dict()!r})"


class AbstractUserProfileService(ABC):
    """Host-provided storage for sticky experiment assignments.

    Profiles are dictionaries of the form
    ``{"user_id": ..., "experiment_bucket_map": {experiment_id: {"variation_id": ...}}}``.
    """

    @abstractmethod
    def lookup(self, user_id: str) -> Optional[Dict]:
        pass

    @abstractmethod
    def save(self, profile: Dict) -> None:
        pass


class InMemoryUserProfileService(AbstractUserProfileService):
    def __init__(self) -> None:
        self.profiles: Dict[str, Dict] = {}

    def lookup(self, user_id: str) -> Optional[Dict]:
        return self.profiles.get(user_id, None)

    def save(self, profile: Dict) -> None:
        self.profiles[profile["user_id"]] = profile

    def destroy(self) -> None:
        self.profiles.clear()


@dataclass
class Options:
    sdk_key: Optional[str] = None
    event_endpoint: Optional[str] = None
    event_batch_size: int = 10
    event_queue_size: int = 2000
    event_flush_interval: float = 30.0
    odp_disabled: bool = False
    segments_cache_size: int = 10000
    segments_cache_timeout: float = 600
    odp_event_batch_size: int = 10
    odp_event_queue_size: int = 10000
    odp_event_flush_interval: float = 1.0
    request_timeout: float = 10.0
    default_decide_options: List[Union[DecideOption, str]] = field(default_factory=list)
    user_profile_service: Optional[AbstractUserProfileService] = None
