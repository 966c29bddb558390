from __future__ import annotations

import asyncio
import logging
import operator
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from bson import ObjectId

from src.api.errors import NotFoundError
from src.api.schemas.alerts import AlertOut, AlertRuleOut, EvaluationResult
from src.api.schemas.common import utc_now
from src.api.services.alerts_service import AlertStore
from src.api.services.metrics_engine import MetricsQueryEngine
from src.api.services.registry import InstanceStore

logger = logging.getLogger(__name__)


OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def _alert_message(rule: AlertRuleOut, value: float) -> str:
    return (
        f"{rule.name}: {rule.metric_type} {rule.aggregation_function}={value:.2f} "
        f"{rule.operator} {rule.threshold:g} on {rule.service_id}"
    )


class AlertEvaluator:
    """Evaluates rules against aggregates and drives alert create/update/resolve."""

    def __init__(
        self,
        engine: MetricsQueryEngine,
        alerts: AlertStore,
        instances: InstanceStore,
        *,
        interval_sec: int = 30,
    ):
        self._engine = engine
        self._alerts = alerts
        self._instances = instances
        self._interval = max(1, int(interval_sec))

    @property
    def interval_sec(self) -> int:
        return self._interval

    # PUBLIC_INTERFACE
    async def evaluate(self, rule_id: str, now: Optional[datetime] = None) -> EvaluationResult:
        """
        Evaluate one rule over `[now - window_sec, now]`.

        - condition true, no active alert: create one
        - condition true, active alert: refresh current_value only
        - condition false, active alert: resolve it
        """
        # The rule lock serializes this with edits, deletion and other evaluations of the rule.
        async with self._alerts.rule_lock(rule_id):
            rule = self._alerts.get_rule(rule_id)
            return await self._evaluate_locked(rule, now or utc_now())

    async def _evaluate_locked(self, rule: AlertRuleOut, now: datetime) -> EvaluationResult:
        if not rule.is_active:
            return EvaluationResult(rule_id=rule.id, outcome="skipped")
        if self._instances.is_removed(rule.service_id):
            raise NotFoundError(
                f"service {rule.service_id} was removed; rule {rule.id} cannot be evaluated",
                meta={"rule_id": rule.id, "service_id": rule.service_id},
            )

        window_start = now - timedelta(seconds=max(1, int(rule.window_sec)))
        agg = await self._engine.aggregate(rule.service_id, rule.metric_type, window_start, now, rule.function)
        met = OPERATORS[rule.operator](agg.value, rule.threshold)
        active = self._alerts.active_alert(rule.id)

        if met and active is None:
            alert = await self._alerts.save_alert(
                AlertOut(
                    id=str(ObjectId()),
                    rule_id=rule.id,
                    status="active",
                    current_value=agg.value,
                    triggered_at=now,
                    updated_at=now,
                    message=_alert_message(rule, agg.value),
                    service_id=rule.service_id,
                    metric_type=rule.metric_type,
                    severity=rule.severity,
                    threshold=rule.threshold,
                )
            )
            logger.info("Alert %s triggered for rule id=%s value=%.3f", alert.id, rule.id, agg.value)
            outcome = "created"
        elif met and active is not None:
            alert = await self._alerts.save_alert(
                active.model_copy(
                    update={"current_value": agg.value, "updated_at": now, "message": _alert_message(rule, agg.value)}
                )
            )
            outcome = "updated"
        elif active is not None:
            alert = await self._alerts.save_alert(
                active.model_copy(update={"status": "resolved", "resolved_at": now, "updated_at": now})
            )
            logger.info("Alert %s resolved for rule id=%s value=%.3f", alert.id, rule.id, agg.value)
            outcome = "resolved"
        else:
            alert = None
            outcome = "unchanged"

        return EvaluationResult(
            rule_id=rule.id,
            outcome=outcome,
            value=agg.value,
            condition_met=met,
            sample_count=agg.sample_count,
            alert=alert,
        )

    # PUBLIC_INTERFACE
    async def evaluate_all(self, now: Optional[datetime] = None) -> List[EvaluationResult]:
        """Evaluate every active rule once; per-rule failures are logged and skipped."""
        now = now or utc_now()
        results: List[EvaluationResult] = []
        for rule in self._alerts.list_rules():
            if not rule.is_active:
                continue
            try:
                results.append(await self.evaluate(rule.id, now))
            except Exception:
                logger.exception("Alerts eval failed for rule id=%s service_id=%s", rule.id, rule.service_id)
        return results


# PUBLIC_INTERFACE
async def alerts_evaluator_loop(evaluator: AlertEvaluator, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that evaluates all active alert rules.

    Each tick reduces every rule's lookback window with its aggregation function and creates, refreshes or
    resolves that rule's alert.
    """
    interval = evaluator.interval_sec
    logger.info("Alerts evaluator started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await evaluator.evaluate_all()
        except Exception:
            logger.exception("Alerts evaluator tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Alerts evaluator stopped")
