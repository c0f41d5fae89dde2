#!/usr/bin/env python
"""
Python client for deciding feature flags and experiments from a v4 datafile.
Decisions are computed in process; impressions, conversions and ODP events
are queued and delivered in the background.
"""

import logging
import threading

from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .common_types import (
    AbstractUserProfileService,
    DecideOption,
    Decision,
    InMemoryUserProfileService,
    Options,
    UserContext,
    translate_options,
)
from .decision import DecisionReasons, DecisionService, FeatureDecision, materialize_variables
from .errors import NotFoundError, QueueFullError, SplitFlagError
from .event_factory import CLIENT_NAME, create_conversion_event, create_impression_event
from .event_processor import BatchEventProcessor, EventDispatcher
from .odp.event_manager import ODP_EVENT_TYPE, EventAPIManager, OdpEventManager
from .odp.odp_config import OdpConfig
from .odp.odp_manager import OdpManager
from .odp.lru_cache import LRUCache
from .odp.segment_manager import SegmentAPIManager, SegmentManager
from .project_config import ProjectConfig
from .user_context import SplitFlagUserContext

logger = logging.getLogger("splitflag")

NOT_CONFIGURED = "client is not configured with a valid datafile"


class SplitFlag(object):
    def __init__(
        self,
        datafile: Union[str, bytes, dict, None] = None,
        sdk_key: Optional[str] = None,
        user_profile_service: Optional[AbstractUserProfileService] = None,
        default_decide_options: Optional[List[Union[DecideOption, str]]] = None,
        event_processor: Optional[BatchEventProcessor] = None,
        odp_manager: Optional[OdpManager] = None,
        odp_disabled: bool = False,
        options: Optional[Options] = None,
    ):
        self.options = options or Options(
            sdk_key=sdk_key,
            odp_disabled=odp_disabled,
            default_decide_options=list(default_decide_options or []),
            user_profile_service=user_profile_service,
        )
        self._config: Optional[ProjectConfig] = None
        self._config_lock = threading.Lock()

        self.default_decide_options = self._translate_decide_options(self.options.default_decide_options)
        self.decision_service = DecisionService(user_profile_service=self.options.user_profile_service)

        self.event_processor = event_processor or BatchEventProcessor(
            EventDispatcher(self.options.event_endpoint, timeout=self.options.request_timeout),
            batch_size=self.options.event_batch_size,
            max_queue_size=self.options.event_queue_size,
            flush_interval=self.options.event_flush_interval,
        )
        self.odp_manager = odp_manager or self._create_odp_manager()

        if datafile is not None:
            self.update_datafile(datafile)

    def _create_odp_manager(self) -> OdpManager:
        if self.options.odp_disabled:
            return OdpManager(disabled=True)

        from . import __version__

        odp_config = OdpConfig()
        segment_manager = SegmentManager(
            odp_config,
            LRUCache(self.options.segments_cache_size, self.options.segments_cache_timeout),
            SegmentAPIManager(timeout=self.options.request_timeout),
        )
        event_manager = OdpEventManager(
            odp_config,
            EventAPIManager(timeout=self.options.request_timeout),
            batch_size=self.options.odp_event_batch_size,
            max_queue_size=self.options.odp_event_queue_size,
            flush_interval=self.options.odp_event_flush_interval,
            client_name=CLIENT_NAME,
            client_version=__version__,
        )
        return OdpManager(
            segment_manager=segment_manager,
            event_manager=event_manager,
            odp_config=odp_config,
        )

    # Config

    def update_datafile(self, datafile: Union[str, bytes, dict]) -> bool:
        """Build a config from ``datafile`` and swap it in. On failure the
        current config keeps serving and False is returned."""
        try:
            config = ProjectConfig.from_datafile(datafile)
        except SplitFlagError as e:
            logger.error(f"Failed to load datafile: {e}")
            return False

        with self._config_lock:
            previous = self._config
            self._config = config

        if previous is not None and previous.revision == config.revision:
            logger.debug("Datafile revision %s is already loaded", config.revision)
        else:
            logger.info("Loaded datafile revision %s", config.revision)

        self.odp_manager.update(config.public_key_for_odp, config.host_for_odp, config.segments)
        return True

    def get_project_config(self) -> Optional[ProjectConfig]:
        return self._config

    @property
    def is_valid(self) -> bool:
        return self._config is not None

    # Users

    def create_user_context(
        self, user_id: str, attributes: Optional[Dict[str, Any]] = None
    ) -> Optional[SplitFlagUserContext]:
        if not isinstance(user_id, str):
            logger.error("User id must be a string, got %r", user_id)
            return None
        if attributes is not None and not isinstance(attributes, dict):
            logger.error("User attributes must be a dictionary")
            return None
        return SplitFlagUserContext(self, user_id, attributes)

    # Decisions

    def _translate_decide_options(self, options: Optional[Iterable]) -> Set[DecideOption]:
        result = set()
        for option in options or ():
            try:
                result |= translate_options([option], DecideOption)
            except ValueError:
                logger.warning("Ignoring unknown decide option %r", option)
        return result

    def _decide_options(self, options: Optional[Iterable]) -> Set[DecideOption]:
        return self.default_decide_options | self._translate_decide_options(options)

    def _send_impression(
        self,
        config: ProjectConfig,
        decision: FeatureDecision,
        user: UserContext,
        flag_key: str,
        rule_type: str,
    ) -> bool:
        event = create_impression_event(
            config,
            decision.experiment,
            decision.variation,
            user,
            flag_key,
            decision.rule_key or "",
            rule_type,
            decision.enabled,
        )
        if event is None:
            return False
        try:
            self.event_processor.process(event)
        except QueueFullError as e:
            logger.warning(f"Impression for {flag_key} dropped: {e}")
            return False
        return True

    def _decide(
        self,
        config: ProjectConfig,
        user_context: SplitFlagUserContext,
        key: str,
        options: Set[DecideOption],
    ) -> Decision:
        reasons = DecisionReasons(DecideOption.INCLUDE_REASONS in options)
        user = user_context.to_user()
        forced_decisions = user_context.get_forced_decisions()

        if DecideOption.FOR_EXPERIMENT in options:
            try:
                experiment = config.get_experiment_by_key(key)
            except NotFoundError:
                reasons.add_error('experiment "%s" not found', key)
                return Decision(key, reasons=reasons.to_list(), user_id=user.id)
            decision = self.decision_service.get_decision_for_experiment(
                config, experiment, user, forced_decisions, options, reasons
            )
            if DecideOption.DISABLE_TRACKING not in options and decision.variation is not None:
                self._send_impression(config, decision, user, "", "experiment")
            return Decision(
                flag_key=key,
                enabled=decision.variation is not None,
                variation_key=decision.variation.key if decision.variation else None,
                rule_key=experiment.key,
                reasons=reasons.to_list(),
                source=decision.source,
                user_id=user.id,
            )

        try:
            feature = config.get_feature_by_key(key)
        except NotFoundError:
            reasons.add_error('flag "%s" not found', key)
            return Decision(key, reasons=reasons.to_list(), user_id=user.id)

        decision = self.decision_service.get_variation_for_feature(
            config, feature, user, forced_decisions, options, reasons
        )

        variables = {}
        if DecideOption.EXCLUDE_VARIABLES not in options:
            variables = materialize_variables(feature, decision.variation, reasons)

        if DecideOption.DISABLE_TRACKING not in options:
            self._send_impression(config, decision, user, feature.key, decision.source)

        return Decision(
            flag_key=feature.key,
            enabled=decision.enabled,
            variation_key=decision.variation.key if decision.variation else None,
            rule_key=decision.rule_key,
            variables=variables,
            reasons=reasons.to_list(),
            source=decision.source,
            user_id=user.id,
        )

    def decide(
        self, user_context: SplitFlagUserContext, key: str, options: Optional[Iterable] = None
    ) -> Decision:
        config = self._config
        if config is None:
            return Decision(key, reasons=[NOT_CONFIGURED], user_id=user_context.user_id)
        return self._decide(config, user_context, key, self._decide_options(options))

    def decide_for_keys(
        self, user_context: SplitFlagUserContext, keys: List[str], options: Optional[Iterable] = None
    ) -> Dict[str, Decision]:
        config = self._config
        if config is None:
            logger.error(NOT_CONFIGURED)
            return {}

        decide_options = self._decide_options(options)
        decisions = {}
        for key in keys:
            decision = self._decide(config, user_context, key, decide_options)
            if DecideOption.ENABLED_ONLY in decide_options and not decision.enabled:
                continue
            decisions[key] = decision
        return decisions

    def decide_all(
        self, user_context: SplitFlagUserContext, options: Optional[Iterable] = None
    ) -> Dict[str, Decision]:
        config = self._config
        if config is None:
            logger.error(NOT_CONFIGURED)
            return {}
        return self.decide_for_keys(user_context, [feature.key for feature in config.features], options)

    # Events

    def track(
        self,
        event_key: str,
        user_id: str,
        attributes: Optional[Dict[str, Any]] = None,
        event_tags: Optional[Dict[str, Any]] = None,
    ) -> None:
        config = self._config
        if config is None:
            logger.error(f"{NOT_CONFIGURED}, not tracking {event_key}")
            return
        try:
            event = config.get_event_by_key(event_key)
        except NotFoundError:
            logger.warning('Event "%s" is not in datafile, not tracking', event_key)
            return

        user = UserContext(id=user_id, attributes=dict(attributes or {}))
        try:
            self.event_processor.process(create_conversion_event(config, event, user, event_tags))
        except QueueFullError as e:
            logger.warning(f"Conversion {event_key} dropped: {e}")

    # ODP

    def identify_user(self, user_id: str) -> None:
        try:
            self.odp_manager.identify_user(user_id)
        except SplitFlagError as e:
            logger.debug(f"ODP identify event for {user_id} not sent: {e}")

    def send_odp_event(
        self,
        action: str,
        identifiers: Dict[str, str],
        type: str = ODP_EVENT_TYPE,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            self.odp_manager.send_event(type, action, identifiers, data)
        except SplitFlagError as e:
            logger.error(f"ODP event not sent: {e}")
            return False
        return True

    def fetch_qualified_segments(self, user_id: str, options: Optional[Iterable] = None) -> List[str]:
        return self.odp_manager.fetch_qualified_segments(user_id, options)

    async def fetch_qualified_segments_async(self, user_id: str, options: Optional[Iterable] = None) -> List[str]:
        return await self.odp_manager.fetch_qualified_segments_async(user_id, options)

    # Lifecycle

    def close(self) -> None:
        self.event_processor.stop()
        self.odp_manager.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


__all__ = [
    "SplitFlag",
    "SplitFlagUserContext",
    "InMemoryUserProfileService",
]
