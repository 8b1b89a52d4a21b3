from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

import httpx

from flowpod.logging import get_logger, mask_url_password
from flowpod.service.errors import BridgeInitError, GatewayError

logger = get_logger(__name__)

POD_SECRET_HEADER = "X-Pod-Secret"


class GatewayBridge:
    """Authenticated channel from the pod back into the gateway.

    Bound to one ``(gateway_url, tenant_id, pod_secret)`` triple; a new
    bridge is built on every load. Gateway calls reach internal services on
    purpose and do not pass through the egress guard.
    """

    def __init__(
        self,
        gateway_url: str,
        tenant_id: str,
        pod_secret: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.gateway_url = (gateway_url or "").rstrip("/")
        self.tenant_id = tenant_id
        self._pod_secret = pod_secret
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def ready(self) -> bool:
        return self._client is not None and not self._client.is_closed

    async def start(self) -> "GatewayBridge":
        try:
            parsed = urlparse(self.gateway_url)
        except ValueError as exc:
            raise BridgeInitError("gateway url is malformed") from exc
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise BridgeInitError(
                "gateway url must be an absolute http(s) url",
                detail={"gateway_url": mask_url_password(self.gateway_url)},
            )
        if not self.tenant_id:
            raise BridgeInitError("bridge requires a tenant id")
        if not self._pod_secret:
            raise BridgeInitError("bridge requires a pod secret")
        try:
            self._client = httpx.AsyncClient(
                base_url=self.gateway_url,
                headers={
                    "Content-Type": "application/json",
                    POD_SECRET_HEADER: self._pod_secret,
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        except (ValueError, TypeError, httpx.HTTPError) as exc:
            raise BridgeInitError(f"bridge client setup failed: {exc}") from exc
        logger.info(
            "gateway_bridge_ready",
            gateway_url=mask_url_password(self.gateway_url),
            tenant_id=self.tenant_id,
        )
        return self

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        if self._client is None:
            raise GatewayError("gateway bridge is not initialized")
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise GatewayError(f"gateway {method} {path} failed: {exc}") from exc
        if response.is_error:
            raise GatewayError(
                f"gateway {method} {path} failed: {response.status_code}",
                detail={"status": response.status_code, "body": response.text[:500]},
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(f"gateway {method} {path} returned invalid json") from exc

    async def call_llm(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self._call(
            "POST",
            "/internal/llm",
            json={
                "messages": messages,
                "tools": tools,
                "config": config,
                "userId": self.tenant_id,
            },
        )

    async def get_llm_config(self, tier: str) -> Any:
        return await self._call(
            "GET", "/internal/llm-config", params={"userId": self.tenant_id, "tier": tier}
        )

    async def call_mcp_tool(self, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        data = await self._call(
            "POST",
            "/internal/mcp-tool",
            json={"name": name, "args": args or {}, "userId": self.tenant_id},
        )
        return data.get("result") if isinstance(data, dict) else data

    async def list_mcp_tools(self) -> List[Dict[str, Any]]:
        data = await self._call("GET", "/internal/mcp-tools")
        if isinstance(data, dict):
            return data.get("tools") or []
        return []

    async def get_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        return await self._call("GET", f"/internal/agents/{quote(agent_id, safe='')}")

    async def storage_get(self, agent_id: str, key: str) -> Any:
        data = await self._call(
            "GET",
            "/internal/storage",
            params={"agentId": agent_id, "userId": self.tenant_id, "key": key},
        )
        return data.get("value") if isinstance(data, dict) else None

    async def storage_set(self, agent_id: str, key: str, value: Any) -> None:
        await self._call(
            "POST",
            "/internal/storage",
            json={"agentId": agent_id, "userId": self.tenant_id, "key": key, "value": value},
        )

    async def storage_delete(self, agent_id: str, key: str) -> None:
        await self._call(
            "DELETE",
            "/internal/storage",
            params={"agentId": agent_id, "userId": self.tenant_id, "key": key},
        )


__all__ = ["GatewayBridge", "POD_SECRET_HEADER"]
