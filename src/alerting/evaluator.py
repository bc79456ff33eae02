"""Condition evaluation of a new observation against applicable alert rules."""

from __future__ import annotations

import logging
from datetime import timedelta

from alerting.comparison import check_compatibility, compute_change, matches_instant
from alerting.domain import (
    AlertRule,
    DayQualification,
    EvaluationContext,
    Observation,
    RelativeChangeCondition,
    RuleMatch,
)
from alerting.errors import ConfigurationDefect
from alerting.history import (
    UpstreamClient,
    bucket_by_day,
    is_superseded,
    merge_observation,
    resolve_authoritative,
)
from config import settings
from time_utils import get_local_timezone, local_day, local_day_bounds

logger = logging.getLogger(__name__)

_SAME_INSTANT = timedelta(microseconds=1)


class ConditionEvaluator:
    """Evaluate one observation against the rules applicable to its patient.

    Instant rules compare the observation alone. Relative-change rules compare
    it with the immediately preceding observation inside the look-back window.
    Both are skipped when a later-ingested reading at the same recorded time
    has replaced the observation.
    Windowed rules count qualifying clinic-local days in the trailing window
    that ends on the observation's day, with the new observation merged in.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        *,
        relative_lookback_days: int | None = None,
        timezone_name: str | None = None,
    ) -> None:
        """Initialize the evaluator with bounded upstream access."""
        self._upstream = upstream
        self._lookback = timedelta(
            days=relative_lookback_days or settings.evaluation.relative_lookback_days
        )
        self._tz = get_local_timezone(timezone_name)

    def evaluate(self, observation: Observation) -> list[RuleMatch]:
        """Return satisfied rules ordered by severity desc, then priority asc.

        Raises:
            UpstreamUnavailable: If the rule catalog or history cannot be read.
        """
        rules = self._upstream.get_applicable_rules(observation.patient_id)
        candidates = [
            rule
            for rule in rules
            if rule.active and rule.metric_key == observation.metric_key
        ]
        matches: list[RuleMatch] = []
        for rule in candidates:
            try:
                context = self.evaluate_rule(rule, observation)
            except ConfigurationDefect as exc:
                logger.error(
                    "Skipping misconfigured alert rule: rule_id=%s observation_id=%s error=%s",
                    rule.rule_id,
                    observation.observation_id,
                    exc.message,
                )
                continue
            if context is not None:
                matches.append(RuleMatch(rule=rule, context=context))
        matches.sort(key=lambda match: (-match.rule.severity_rank, match.rule.priority, match.rule.rule_id))
        logger.debug(
            "Evaluated observation: observation_id=%s candidates=%s matches=%s",
            observation.observation_id,
            len(candidates),
            len(matches),
        )
        return matches

    def evaluate_rule(self, rule: AlertRule, observation: Observation) -> EvaluationContext | None:
        """Evaluate a single rule, returning its context when satisfied.

        Raises:
            ConfigurationDefect: If the rule cannot be applied to the observation.
            UpstreamUnavailable: If required history cannot be read.
        """
        check_compatibility(rule, observation)
        if isinstance(rule.condition, RelativeChangeCondition):
            return self._evaluate_relative(rule, rule.condition, observation)
        if rule.window is None:
            if not matches_instant(rule.condition, observation):
                return None
            history = self._upstream.get_history(
                observation.patient_id,
                observation.metric_key,
                observation.recorded_at,
                observation.recorded_at + _SAME_INSTANT,
            )
            if self._superseded(rule, observation, history):
                return None
            return EvaluationContext(observation=observation, condition=rule.condition.describe())
        return self._evaluate_window(rule, observation)

    def _superseded(
        self,
        rule: AlertRule,
        observation: Observation,
        history: list[Observation],
    ) -> bool:
        if not is_superseded(history, observation):
            return False
        logger.info(
            "Skipping superseded observation: rule_id=%s observation_id=%s recorded_at=%s",
            rule.rule_id,
            observation.observation_id,
            observation.recorded_at.isoformat(),
        )
        return True

    def _evaluate_relative(
        self,
        rule: AlertRule,
        condition: RelativeChangeCondition,
        observation: Observation,
    ) -> EvaluationContext | None:
        """Compare the observation with its immediate predecessor."""
        history = self._upstream.get_history(
            observation.patient_id,
            observation.metric_key,
            observation.recorded_at - self._lookback,
            observation.recorded_at + _SAME_INSTANT,
        )
        if self._superseded(rule, observation, history):
            return None
        prior = resolve_authoritative(
            item
            for item in history
            if item.recorded_at < observation.recorded_at
            and item.observation_id != observation.observation_id
            and item.numeric_value is not None
        )
        if not prior:
            logger.debug(
                "No previous observation for relative change: rule_id=%s observation_id=%s",
                rule.rule_id,
                observation.observation_id,
            )
            return None
        previous = prior[-1]
        change = compute_change(condition, previous, observation)
        if change is None or change < condition.threshold:
            return None
        return EvaluationContext(
            observation=observation,
            condition=condition.describe(),
            previous_observation=previous,
            change=change,
        )

    def _evaluate_window(self, rule: AlertRule, observation: Observation) -> EvaluationContext | None:
        """Count qualifying days in the trailing window ending on the observation's day."""
        window = rule.window
        assert window is not None
        end_day = local_day(observation.recorded_at, self._tz)
        start_day = end_day - timedelta(days=window.window_days - 1)
        from_date, _ = local_day_bounds(start_day, self._tz)
        _, to_date = local_day_bounds(end_day, self._tz)
        history = self._upstream.get_history(
            observation.patient_id,
            observation.metric_key,
            from_date,
            to_date,
        )
        series = [
            item
            for item in merge_observation(history, observation)
            if from_date <= item.recorded_at < to_date
            and item.value_type == observation.value_type
        ]
        buckets = bucket_by_day(series, self._tz)

        days: list[DayQualification] = []
        for offset in range(window.window_days):
            day = start_day + timedelta(days=offset)
            readings = buckets.get(day, [])
            days.append(
                DayQualification(
                    day=day,
                    qualified=any(matches_instant(rule.condition, item) for item in readings),
                    observation_ids=tuple(item.observation_id for item in readings),
                    values=tuple(item.value for item in readings),
                )
            )

        if not days[-1].qualified:
            return None
        if window.require_consecutive:
            qualifying = 0
            for day in reversed(days):
                if not day.qualified:
                    break
                qualifying += 1
        else:
            qualifying = sum(1 for day in days if day.qualified)
        if qualifying < window.min_count:
            return None
        return EvaluationContext(
            observation=observation,
            condition=rule.condition.describe(),
            window_start=start_day,
            window_end=end_day,
            days=tuple(days),
            qualifying_days=qualifying,
            required_days=window.min_count,
            require_consecutive=window.require_consecutive,
        )
