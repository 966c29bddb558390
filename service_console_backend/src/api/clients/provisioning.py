from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from src.api.config import BackendConfig
from src.api.errors import NotFoundError, TransientNetworkError, ValidationError
from src.api.schemas.instances import ServiceKind
from src.api.services.resilience import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KindRoute:
    """Where a kind lives on the orchestrator."""

    collection: str  # path prefix for list/get/remove/health
    list_key: Optional[str]  # envelope key of the list response; None for a bare list
    launch_path: str


KIND_ROUTES: Dict[ServiceKind, KindRoute] = {
    ServiceKind.bucket: KindRoute("/bucket-services", "bucket_services", "/launchBucket"),
    ServiceKind.sql_database: KindRoute("/db-services", "db_services", "/launchDB"),
    ServiceKind.document_store: KindRoute("/nosql-services", "nosql_services", "/launchNoSQL"),
    ServiceKind.queue: KindRoute("/queue-services", "queue_services", "/launchQueue"),
    ServiceKind.secrets_vault: KindRoute("/secrets-services", "secrets_services", "/launchSecrets"),
    ServiceKind.compute: KindRoute("/containers", None, "/launch"),
}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except Exception:
        return f"HTTP {response.status_code}: {response.reason_phrase}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {response.status_code}: {response.reason_phrase}"


class ProvisioningClient:
    """
    Async client for the orchestrator's per-kind provisioning API.

    Transport failures, timeouts and 5xx map to TransientNetworkError (retried for idempotent calls),
    404 maps to NotFoundError and any other 4xx to ValidationError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: BackendConfig) -> "ProvisioningClient":
        return cls(
            config.provisioning_api_url,
            timeout_sec=config.http_timeout_sec,
            retry_policy=RetryPolicy.from_config(config),
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request_once(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{method} {path} timed out", meta={"path": path}) from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{method} {path} failed: {exc}", meta={"path": path}) from exc

        if response.status_code >= 500:
            raise TransientNetworkError(_error_detail(response), meta={"path": path, "status": response.status_code})
        if response.status_code == 404:
            raise NotFoundError(_error_detail(response), meta={"path": path})
        if response.status_code >= 400:
            raise ValidationError(_error_detail(response), meta={"path": path, "status": response.status_code})
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ValidationError(f"{method} {path} returned a non-JSON body", meta={"path": path}) from exc

    async def _request(self, method: str, path: str, *, retry: bool = True, **kwargs: Any) -> Any:
        if not retry:
            return await self._request_once(method, path, **kwargs)
        return await retry_async(
            lambda: self._request_once(method, path, **kwargs),
            policy=self._retry_policy,
            what=f"{method} {path}",
        )

    # PUBLIC_INTERFACE
    async def list_services(self, kind: ServiceKind) -> List[Any]:
        """Return the raw, kind-specific list of provisioned records."""
        route = KIND_ROUTES[kind]
        if kind == ServiceKind.compute:
            body = await self._request("GET", route.collection, params={"all": "true"})
        else:
            body = await self._request("GET", route.collection)

        if route.list_key is None:
            if isinstance(body, dict):
                body = body.get("containers", [])
        else:
            if not isinstance(body, dict):
                raise ValidationError(f"list response for {kind.value} is not an object")
            body = body.get(route.list_key, [])
        if not isinstance(body, list):
            raise ValidationError(f"list response for {kind.value} is not a list")
        return body

    # PUBLIC_INTERFACE
    async def get_service(self, kind: ServiceKind, service_id: str) -> Dict[str, Any]:
        """Return one raw record."""
        route = KIND_ROUTES[kind]
        path = f"{route.collection}/{service_id}/status" if kind == ServiceKind.compute else f"{route.collection}/{service_id}"
        return await self._request("GET", path)

    # PUBLIC_INTERFACE
    async def launch(self, kind: ServiceKind, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Launch a new instance of `kind`. Not retried: launching is not idempotent."""
        route = KIND_ROUTES[kind]
        body = {k: v for k, v in (payload or {}).items() if v is not None}
        if kind == ServiceKind.compute:
            config = {k: body[k] for k in ("image", "env", "cpu", "memory") if k in body}
            if "instance_name" in body:
                config["name"] = body["instance_name"]
            body = {"user_id": body.get("user_id"), "config": config}
        kwargs: Dict[str, Any] = {"json": body} if body else {}
        logger.info("Launching %s instance via %s", kind.value, route.launch_path)
        return await self._request("POST", route.launch_path, retry=False, **kwargs)

    # PUBLIC_INTERFACE
    async def remove(self, kind: ServiceKind, service_id: str) -> Dict[str, Any]:
        """Remove an instance upstream."""
        route = KIND_ROUTES[kind]
        return await self._request("DELETE", f"{route.collection}/{service_id}")

    # PUBLIC_INTERFACE
    async def check_health(self, kind: ServiceKind, service_id: str) -> Dict[str, Any]:
        """
        Return `{is_healthy, last_check}` from the kind's health endpoint.

        Compute has no health endpoint; its container status is probed instead and `running` counts as healthy.
        """
        route = KIND_ROUTES[kind]
        if kind == ServiceKind.compute:
            body = await self._request("GET", f"{route.collection}/{service_id}/status")
            if not isinstance(body, dict):
                raise ValidationError(f"status response for container {service_id} is not an object")
            status = str(body.get("status") or "").strip().lower()
            return {"service_id": service_id, "is_healthy": status == "running", "last_check": None}

        body = await self._request("GET", f"{route.collection}/{service_id}/health")
        if not isinstance(body, dict) or "is_healthy" not in body:
            raise ValidationError(f"health response for {service_id} lacks is_healthy")
        return body

