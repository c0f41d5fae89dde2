"""Flag decision pipeline.

For a flag the sources are consulted in a fixed order and the first one that
yields a variation wins:

1. flag-level forced decision set on the user context
2. sticky assignment from the user profile service
3. holdouts applicable to the flag (global first, then flag specific)
4. feature experiments, in declared order
5. rollout delivery rules, in declared order
"""

import logging

from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from .bucketer import Bucketer
from .common_types import (
    AbstractUserProfileService,
    DecideOption,
    DecisionSource,
    Experiment,
    FeatureFlag,
    Holdout,
    UserContext,
    Variation,
)
from .condition_tree import evaluate_audience_tree
from .errors import NotFoundError
from .project_config import ProjectConfig
from .values import parse_variable_value

logger = logging.getLogger("splitflag.decision")

ForcedDecisions = Mapping[Tuple[str, Optional[str]], str]

CMAB_EXPERIMENT_TYPE = "cmab"


class DecisionReasons(object):
    """Collects human readable reasons for a decision.

    Informational reasons are kept only when the caller asked for them;
    errors are always kept.
    """

    def __init__(self, include_reasons: bool = False) -> None:
        self.include_reasons = include_reasons
        self._reasons: List[str] = []

    def add_info(self, message: str, *args) -> str:
        if args:
            message = message % args
        logger.debug(message)
        if self.include_reasons:
            self._reasons.append(message)
        return message

    def add_error(self, message: str, *args) -> str:
        if args:
            message = message % args
        logger.warning(message)
        self._reasons.append(message)
        return message

    def to_list(self) -> List[str]:
        return list(self._reasons)


class FeatureDecision(object):
    def __init__(
        self,
        experiment: Optional[Union[Experiment, Holdout]] = None,
        variation: Optional[Variation] = None,
        source: Optional[str] = None,
    ) -> None:
        self.experiment = experiment
        self.variation = variation
        self.source = source

    @property
    def rule_key(self) -> Optional[str]:
        return self.experiment.key if self.experiment is not None else None

    @property
    def enabled(self) -> bool:
        return bool(self.variation and self.variation.feature_enabled)


class UserProfileTracker(object):
    """Loads a user's profile once per decision and saves it back only when
    new assignments were recorded."""

    def __init__(self, user_id: str, service: Optional[AbstractUserProfileService]) -> None:
        self.user_id = user_id
        self.service = service
        self.profile: Optional[Dict[str, Any]] = None
        self._changed = False

    def load(self, reasons: DecisionReasons) -> None:
        if self.service is None or self.profile is not None:
            return
        try:
            profile = self.service.lookup(self.user_id)
        except Exception as e:
            reasons.add_info('Unable to look up user profile of "%s": %s', self.user_id, e)
            profile = None
        if not isinstance(profile, dict) or not isinstance(profile.get("experiment_bucket_map"), dict):
            profile = {"user_id": self.user_id, "experiment_bucket_map": {}}
        self.profile = profile

    def get_variation_id(self, experiment_id: str) -> Optional[str]:
        if self.profile is None:
            return None
        entry = self.profile["experiment_bucket_map"].get(experiment_id)
        if isinstance(entry, dict):
            return entry.get("variation_id")
        return None

    def update(self, experiment_id: str, variation_id: str) -> None:
        if self.profile is None:
            self.profile = {"user_id": self.user_id, "experiment_bucket_map": {}}
        self.profile["experiment_bucket_map"][experiment_id] = {"variation_id": variation_id}
        self._changed = True

    def save(self, reasons: DecisionReasons) -> None:
        if self.service is None or not self._changed:
            return
        try:
            self.service.save(self.profile)
            self._changed = False
        except Exception as e:
            reasons.add_info('Unable to save user profile of "%s": %s', self.user_id, e)


def materialize_variables(
    feature: FeatureFlag, variation: Optional[Variation], reasons: DecisionReasons
) -> Dict[str, Any]:
    """Typed variable values for the chosen variation, falling back to the
    declared defaults when the flag is off or the value does not parse."""
    use_variation = variation is not None and variation.feature_enabled
    values: Dict[str, Any] = {}
    for key, variable in feature.variables.items():
        raw = variable.default_value
        if use_variation and variable.id in variation.variables:
            raw = variation.variables[variable.id].value

        value, ok = parse_variable_value(raw, variable.type)
        if not ok:
            reasons.add_info(
                'Variable "%s" value %r is not a valid %s, using the default value.', key, raw, variable.type
            )
            value, ok = parse_variable_value(variable.default_value, variable.type)
            if not ok:
                value = variable.default_value
        values[key] = value
    return values


class DecisionService(object):
    def __init__(
        self,
        bucketer: Optional[Bucketer] = None,
        user_profile_service: Optional[AbstractUserProfileService] = None,
    ) -> None:
        self.bucketer = bucketer or Bucketer()
        self.user_profile_service = user_profile_service

    # Forced decisions

    def find_validated_forced_decision(
        self,
        config: ProjectConfig,
        flag_key: str,
        rule: Optional[Experiment],
        user: UserContext,
        forced_decisions: Optional[ForcedDecisions],
        reasons: DecisionReasons,
    ) -> Optional[Variation]:
        if not forced_decisions:
            return None
        rule_key = rule.key if rule is not None else None
        variation_key = forced_decisions.get((flag_key, rule_key))
        if variation_key is None:
            return None

        variation = None
        if rule is not None:
            variation = rule.get_variation_by_key(variation_key)
        else:
            try:
                variation = config.get_flag_variation_by_key(flag_key, variation_key)
            except NotFoundError:
                variation = None

        if rule_key is None:
            target = f"flag ({flag_key})"
        else:
            target = f"flag ({flag_key}), rule ({rule_key})"

        if variation is None:
            reasons.add_info("Invalid variation is mapped to %s and user (%s) in the forced decision map.", target, user.id)
            return None
        reasons.add_info(
            "Variation (%s) is mapped to %s and user (%s) in the forced decision map.", variation_key, target, user.id
        )
        return variation

    # Rule evaluation helpers

    def _is_in_audience(
        self,
        config: ProjectConfig,
        rule: Union[Experiment, Holdout],
        user: UserContext,
        reasons: DecisionReasons,
        label: str = "experiment",
    ) -> bool:
        result = evaluate_audience_tree(rule.audience_condition_tree, user, config.audience_map)
        reasons.add_info('Audiences for %s "%s" collectively evaluated to %s.', label, rule.key, result)
        return result is True

    def _bucket(
        self,
        config: ProjectConfig,
        experiment: Experiment,
        user: UserContext,
        reasons: DecisionReasons,
    ) -> Optional[Variation]:
        group = None
        if experiment.group_id:
            try:
                group = config.get_group_by_id(experiment.group_id)
            except NotFoundError:
                reasons.add_info('Group "%s" of experiment "%s" not found.', experiment.group_id, experiment.key)
        variation, reason = self.bucketer.bucket(user.get_bucketing_id(), experiment, group)
        reasons.add_info(reason)
        return variation

    def _whitelisted_variation(
        self, experiment: Experiment, user: UserContext, reasons: DecisionReasons
    ) -> Optional[Variation]:
        variation_key = experiment.whitelist.get(user.id)
        if variation_key is None:
            return None
        variation = experiment.get_variation_by_key(variation_key)
        if variation is None:
            reasons.add_info('Whitelisted variation "%s" of "%s" is not valid.', variation_key, experiment.key)
            return None
        reasons.add_info('User "%s" is forced in variation "%s" of "%s".', user.id, variation_key, experiment.key)
        return variation

    def get_variation_for_experiment(
        self,
        config: ProjectConfig,
        experiment: Experiment,
        user: UserContext,
        reasons: DecisionReasons,
        profile: Optional[UserProfileTracker] = None,
    ) -> Optional[Variation]:
        """Whitelist, sticky assignment, audience and bucketing for one experiment."""
        if not experiment.is_running:
            reasons.add_info('Experiment "%s" is not running.', experiment.key)
            return None

        variation = self._whitelisted_variation(experiment, user, reasons)
        if variation is not None:
            return variation

        if profile is not None:
            profile.load(reasons)
            saved_id = profile.get_variation_id(experiment.id)
            if saved_id is not None:
                saved = experiment.variations.get(saved_id)
                if saved is not None:
                    reasons.add_info(
                        'Returning previously activated variation "%s" of experiment "%s" for user "%s" from user profile.',
                        saved.key, experiment.key, user.id,
                    )
                    return saved
                reasons.add_info('Saved variation "%s" of "%s" is no longer valid.', saved_id, experiment.key)

        if experiment.type == CMAB_EXPERIMENT_TYPE:
            reasons.add_info('Experiment "%s" requires a contextual decision service, skipping.', experiment.key)
            return None

        if not self._is_in_audience(config, experiment, user, reasons):
            reasons.add_info('User "%s" does not meet conditions to be in experiment "%s".', user.id, experiment.key)
            return None

        variation = self._bucket(config, experiment, user, reasons)
        if variation is not None and profile is not None:
            profile.update(experiment.id, variation.id)
        return variation

    # Pipeline stages

    def _from_user_profile(
        self,
        feature: FeatureFlag,
        user: UserContext,
        profile: UserProfileTracker,
        reasons: DecisionReasons,
    ) -> Optional[FeatureDecision]:
        profile.load(reasons)
        for experiment in feature.feature_experiments:
            saved_id = profile.get_variation_id(experiment.id)
            if saved_id is None:
                continue
            variation = experiment.variations.get(saved_id)
            if not experiment.is_running or variation is None:
                reasons.add_info('Saved variation "%s" of "%s" is no longer valid.', saved_id, experiment.key)
                continue
            reasons.add_info(
                'Returning previously activated variation "%s" of experiment "%s" for user "%s" from user profile.',
                variation.key, experiment.key, user.id,
            )
            return FeatureDecision(experiment, variation, DecisionSource.FEATURE_TEST.value)
        return None

    def _from_holdouts(
        self,
        config: ProjectConfig,
        feature: FeatureFlag,
        user: UserContext,
        reasons: DecisionReasons,
    ) -> Optional[FeatureDecision]:
        for holdout in config.get_holdouts_for_flag(feature.key):
            if not self._is_in_audience(config, holdout, user, reasons, label="holdout"):
                continue
            variation, reason = self.bucketer.bucket(user.get_bucketing_id(), holdout)
            reasons.add_info(reason)
            if variation is not None:
                reasons.add_info('User "%s" is in variation "%s" of holdout "%s".', user.id, variation.key, holdout.key)
                return FeatureDecision(holdout, variation, DecisionSource.HOLDOUT.value)
            reasons.add_info('User "%s" is not in holdout "%s".', user.id, holdout.key)
        return None

    def _from_feature_experiments(
        self,
        config: ProjectConfig,
        feature: FeatureFlag,
        user: UserContext,
        forced_decisions: Optional[ForcedDecisions],
        profile: Optional[UserProfileTracker],
        reasons: DecisionReasons,
    ) -> Optional[FeatureDecision]:
        for experiment in feature.feature_experiments:
            variation = self.find_validated_forced_decision(
                config, feature.key, experiment, user, forced_decisions, reasons
            )
            if variation is None:
                variation = self.get_variation_for_experiment(config, experiment, user, reasons, profile)
            if variation is not None:
                return FeatureDecision(experiment, variation, DecisionSource.FEATURE_TEST.value)
            logger.debug("Skip experiment %s for flag %s", experiment.key, feature.key)
        return None

    def _from_rollout(
        self,
        config: ProjectConfig,
        feature: FeatureFlag,
        user: UserContext,
        forced_decisions: Optional[ForcedDecisions],
        reasons: DecisionReasons,
    ) -> Optional[FeatureDecision]:
        if feature.rollout is None or not feature.rollout.experiments:
            reasons.add_info('Flag "%s" has no delivery rules.', feature.key)
            return None

        rules = feature.rollout.experiments
        last = len(rules) - 1
        index = 0
        while index <= last:
            rule = rules[index]
            label = "Everyone Else" if index == last else str(index + 1)

            variation = self.find_validated_forced_decision(config, feature.key, rule, user, forced_decisions, reasons)
            if variation is not None:
                return FeatureDecision(rule, variation, DecisionSource.ROLLOUT.value)

            if not self._is_in_audience(config, rule, user, reasons, label="rule"):
                reasons.add_info('User "%s" does not meet conditions for targeting rule "%s".', user.id, label)
                if index == last:
                    break
                index = last
                continue

            reasons.add_info('User "%s" meets conditions for targeting rule "%s".', user.id, label)
            variation, reason = self.bucketer.bucket(user.get_bucketing_id(), rule)
            reasons.add_info(reason)
            if variation is not None:
                return FeatureDecision(rule, variation, DecisionSource.ROLLOUT.value)
            index += 1

        return None

    def get_variation_for_feature(
        self,
        config: ProjectConfig,
        feature: FeatureFlag,
        user: UserContext,
        forced_decisions: Optional[ForcedDecisions] = None,
        options: Optional[Set[DecideOption]] = None,
        reasons: Optional[DecisionReasons] = None,
    ) -> FeatureDecision:
        options = options or set()
        if reasons is None:
            reasons = DecisionReasons(DecideOption.INCLUDE_REASONS in options)

        variation = self.find_validated_forced_decision(config, feature.key, None, user, forced_decisions, reasons)
        if variation is not None:
            return FeatureDecision(None, variation, DecisionSource.FEATURE_TEST.value)

        profile = None
        if self.user_profile_service is not None and DecideOption.BYPASS_UPS not in options:
            profile = UserProfileTracker(user.id, self.user_profile_service)
            decision = self._from_user_profile(feature, user, profile, reasons)
            if decision is not None:
                return decision

        decision = self._from_holdouts(config, feature, user, reasons)
        if decision is not None:
            return decision

        decision = self._from_feature_experiments(config, feature, user, forced_decisions, profile, reasons)
        if decision is not None:
            if profile is not None:
                profile.save(reasons)
            return decision

        decision = self._from_rollout(config, feature, user, forced_decisions, reasons)
        if decision is not None:
            return decision

        reasons.add_info('User "%s" is not bucketed into any rule of flag "%s".', user.id, feature.key)
        return FeatureDecision(None, None, DecisionSource.ROLLOUT.value)

    def get_decision_for_experiment(
        self,
        config: ProjectConfig,
        experiment: Experiment,
        user: UserContext,
        forced_decisions: Optional[ForcedDecisions] = None,
        options: Optional[Set[DecideOption]] = None,
        reasons: Optional[DecisionReasons] = None,
    ) -> FeatureDecision:
        options = options or set()
        if reasons is None:
            reasons = DecisionReasons(DecideOption.INCLUDE_REASONS in options)

        variation = None
        forced_key = (forced_decisions or {}).get((experiment.key, None))
        if forced_key is not None:
            variation = experiment.get_variation_by_key(forced_key)
            if variation is None:
                reasons.add_info(
                    "Invalid variation is mapped to experiment (%s) and user (%s) in the forced decision map.",
                    experiment.key, user.id,
                )
            else:
                reasons.add_info(
                    "Variation (%s) is mapped to experiment (%s) and user (%s) in the forced decision map.",
                    forced_key, experiment.key, user.id,
                )

        if variation is None:
            profile = None
            if self.user_profile_service is not None and DecideOption.BYPASS_UPS not in options:
                profile = UserProfileTracker(user.id, self.user_profile_service)
            variation = self.get_variation_for_experiment(config, experiment, user, reasons, profile)
            if profile is not None:
                profile.save(reasons)

        return FeatureDecision(experiment, variation, DecisionSource.FEATURE_TEST.value)
