from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from bson import ObjectId

from src.api.db.mongo import DocumentStore, WriteThrough
from src.api.errors import NotFoundError
from src.api.schemas.alerts import AlertOut, AlertRuleCreate, AlertRuleOut, AlertRuleUpdate, AlertStatus
from src.api.schemas.common import SEVERITY_RANK, as_utc, utc_now

logger = logging.getLogger(__name__)


def _alert_sort_key(alert: AlertOut):
    # Critical first, then newest first.
    return (SEVERITY_RANK[alert.severity], -as_utc(alert.triggered_at).timestamp())


class AlertStore(WriteThrough):
    """
    Alert rules and the alerts they raise.

    Invariant: at most one alert with status `active` per rule_id. Rule edits, deletion and evaluation of
    one rule are serialized by that rule's lock.
    """

    def __init__(self, rules_persist: Optional[DocumentStore] = None, alerts_persist: Optional[DocumentStore] = None):
        self._rules: Dict[str, AlertRuleOut] = {}
        self._alerts: Dict[str, AlertOut] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._rules_persist = rules_persist
        self._alerts_persist = alerts_persist

    async def hydrate(self) -> None:
        """Load persisted rules and alerts (startup only)."""
        if self._rules_persist is not None:
            for doc in await self._rules_persist.load_all():
                rule = AlertRuleOut.model_validate(doc)
                self._rules[rule.id] = rule
        if self._alerts_persist is not None:
            for doc in await self._alerts_persist.load_all():
                alert = AlertOut.model_validate(doc)
                self._alerts[alert.id] = alert
        logger.info("Hydrated %s alert rules and %s alerts", len(self._rules), len(self._alerts))

    # PUBLIC_INTERFACE
    def list_rules(self, service_id: Optional[str] = None) -> List[AlertRuleOut]:
        """List rules, newest first, optionally only those watching `service_id`."""
        rules = [r for r in self._rules.values() if service_id is None or r.service_id == service_id]
        return sorted(rules, key=lambda r: as_utc(r.created_at), reverse=True)

    # PUBLIC_INTERFACE
    def get_rule(self, rule_id: str) -> AlertRuleOut:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"alert rule {rule_id} not found", meta={"rule_id": rule_id})
        return rule

    def rule_lock(self, rule_id: str) -> asyncio.Lock:
        """Lock for one existing rule; unknown ids raise NotFoundError and get no lock."""
        self.get_rule(rule_id)
        return self._locks.setdefault(rule_id, asyncio.Lock())

    async def _store_rule(self, rule: AlertRuleOut) -> AlertRuleOut:
        self._rules[rule.id] = rule
        await self._save(self._rules_persist, rule.model_dump(mode="json"))
        if not rule.is_active:
            await self._resolve_active(rule.id)
        return rule

    async def _resolve_active(self, rule_id: str) -> Optional[AlertOut]:
        active = self.active_alert(rule_id)
        if active is None:
            return None
        now = utc_now()
        resolved = await self.save_alert(
            active.model_copy(update={"status": "resolved", "resolved_at": now, "updated_at": now})
        )
        logger.info("Alert %s resolved for rule id=%s (rule inactive or deleted)", resolved.id, rule_id)
        return resolved

    # PUBLIC_INTERFACE
    async def create_rule(self, payload: AlertRuleCreate) -> AlertRuleOut:
        """Create a new alert rule."""
        now = utc_now()
        data = payload.model_dump()
        data["name"] = payload.name.strip()
        rule = AlertRuleOut(id=str(ObjectId()), created_at=now, updated_at=now, **data)
        logger.info("Created alert rule id=%s service_id=%s metric=%s", rule.id, rule.service_id, rule.metric_type)
        return await self._store_rule(rule)

    # PUBLIC_INTERFACE
    async def put_rule(self, rule_id: str, payload: AlertRuleCreate) -> AlertRuleOut:
        """Full replace of a rule's editable fields. Deactivating a rule resolves its active alert."""
        async with self.rule_lock(rule_id):
            existing = self.get_rule(rule_id)
            data = payload.model_dump()
            data["name"] = payload.name.strip()
            rule = AlertRuleOut(id=rule_id, created_at=existing.created_at, updated_at=utc_now(), **data)
            return await self._store_rule(rule)

    # PUBLIC_INTERFACE
    async def patch_rule(self, rule_id: str, payload: AlertRuleUpdate) -> AlertRuleOut:
        """Partial update; only fields sent (and non-null) change."""
        async with self.rule_lock(rule_id):
            existing = self.get_rule(rule_id)
            changes = payload.model_dump(exclude_unset=True, exclude_none=True)
            if "name" in changes:
                changes["name"] = changes["name"].strip()
            changes["updated_at"] = utc_now()
            # Re-validate so the merged rule obeys the same field constraints.
            rule = AlertRuleOut.model_validate({**existing.model_dump(), **changes})
            return await self._store_rule(rule)

    # PUBLIC_INTERFACE
    async def delete_rule(self, rule_id: str) -> Optional[AlertOut]:
        """
        Delete a rule; its active alert (if any) is resolved and returned.

        Waits for an in-flight evaluation of the rule, so an alert that evaluation raises is resolved here too.
        """
        async with self.rule_lock(rule_id):
            # A concurrent delete may have won the lock first.
            self.get_rule(rule_id)
            resolved = await self._resolve_active(rule_id)
            self._rules.pop(rule_id, None)
            await self._drop(self._rules_persist, rule_id)
        self._locks.pop(rule_id, None)
        logger.info("Deleted alert rule id=%s", rule_id)
        return resolved

    # PUBLIC_INTERFACE
    def active_alert(self, rule_id: str) -> Optional[AlertOut]:
        for alert in self._alerts.values():
            if alert.rule_id == rule_id and alert.status == "active":
                return alert
        return None

    async def save_alert(self, alert: AlertOut) -> AlertOut:
        self._alerts[alert.id] = alert
        await self._save(self._alerts_persist, alert.model_dump(mode="json"))
        return alert

    # PUBLIC_INTERFACE
    def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        rule_id: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> List[AlertOut]:
        """Alerts ordered by severity (critical > warning > info), then newest first."""
        items = [
            a
            for a in self._alerts.values()
            if (status is None or a.status == status)
            and (rule_id is None or a.rule_id == rule_id)
            and (service_id is None or a.service_id == service_id)
        ]
        return sorted(items, key=_alert_sort_key)
