from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


APP_DB_NAME = "service_console"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    alert_rules: Collection
    alerts: Collection
    dashboards: Collection
    spending_limits: Collection

    # Read-only when METRICS_SOURCE=mongo; written by an external collector.
    metrics_samples: Collection


class MongoManager:
    """MongoDB connection manager; one MongoClient for the console's own database."""

    def __init__(self, app_mongo_uri: str):
        self._app_mongo_uri = app_mongo_uri
        self._app_client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._app_client = MongoClient(self._app_mongo_uri, connect=True, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the app Mongo client."""
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except Exception:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        """Return the console database handle."""
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[APP_DB_NAME]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            alert_rules=db["alert_rules"],
            alerts=db["alerts"],
            dashboards=db["dashboards"],
            spending_limits=db["spending_limits"],
            metrics_samples=db["metrics_samples"],
        )

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        cols.alert_rules.create_index([("id", ASCENDING)], unique=True, name="idx_alert_rules_id")
        cols.alert_rules.create_index([("service_id", ASCENDING)], name="idx_alert_rules_service")

        cols.alerts.create_index([("id", ASCENDING)], unique=True, name="idx_alerts_id")
        cols.alerts.create_index([("rule_id", ASCENDING), ("status", ASCENDING)], name="idx_alerts_rule_status")
        cols.alerts.create_index([("triggered_at", DESCENDING)], name="idx_alerts_triggered_desc")

        cols.dashboards.create_index([("id", ASCENDING)], unique=True, name="idx_dashboards_id")
        cols.spending_limits.create_index([("period", ASCENDING)], unique=True, name="idx_spending_limits_period")

        cols.metrics_samples.create_index(
            [("serviceId", ASCENDING), ("metricType", ASCENDING), ("ts", ASCENDING)],
            name="idx_samples_service_metric_ts",
        )


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


class DocumentStore:
    """
    Write-through persistence of whole documents keyed by one field.

    The in-memory services stay authoritative; this only mirrors their records so a restart can hydrate them.
    """

    def __init__(self, mongo: MongoManager, collection: str, key: str = "id"):
        self._mongo = mongo
        self._collection = collection
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    def _col(self) -> Collection:
        return self._mongo.app_db()[self._collection]

    async def upsert(self, doc: Dict[str, Any]) -> None:
        key_value = doc[self._key]
        await _run_in_thread(self._col().replace_one, {self._key: key_value}, dict(doc), upsert=True)

    async def delete(self, key_value: Any) -> None:
        await _run_in_thread(self._col().delete_one, {self._key: key_value})

    async def load_all(self) -> List[Dict[str, Any]]:
        return await _run_in_thread(lambda: list(self._col().find({}, projection={"_id": 0})))


class WriteThrough:
    """Mixin for in-memory services mirrored to an optional DocumentStore; mirror failures are logged."""

    def _mirror_failed(self, action: str, key_value: Any) -> None:
        logger.exception("Write-through %s failed for %s id=%s", action, type(self).__name__, key_value)

    async def _save(self, persist: Optional[DocumentStore], doc: Dict[str, Any]) -> None:
        if persist is None:
            return
        try:
            await persist.upsert(doc)
        except PyMongoError:
            self._mirror_failed("upsert", doc.get(persist.key))

    async def _drop(self, persist: Optional[DocumentStore], key_value: Any) -> None:
        if persist is None:
            return
        try:
            await persist.delete(key_value)
        except PyMongoError:
            self._mirror_failed("delete", key_value)
