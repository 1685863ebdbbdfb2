"""Tavus avatar-video API client.

Authenticated with a static ``x-api-key`` header. Responses are sometimes
wrapped in ``{"data": ...}`` and sometimes not; ``_unwrap`` accepts both.
"""

import logging
from typing import Any

import httpx

from app.config import get_settings
from app.errors import AppError, AuthExpired, NotFound, PermissionDenied, ProviderError, RateLimited

logger = logging.getLogger(__name__)

# Shown when the provider's stock catalogue cannot be reached
STOCK_REPLICAS = [
    {"replica_id": "r1fbfc941b", "replica_name": "Nathan - Professional Male",
     "thumbnail_url": "https://tavusapi.com/avatars/nathan.jpg"},
    {"replica_id": "r4c41453d2", "replica_name": "Anna - Business Female",
     "thumbnail_url": "https://tavusapi.com/avatars/anna.jpg"},
    {"replica_id": "r94e875b92", "replica_name": "Marcus - Corporate Professional",
     "thumbnail_url": "https://tavusapi.com/avatars/marcus.jpg"},
    {"replica_id": "r68920c31a", "replica_name": "Sarah - Marketing Specialist",
     "thumbnail_url": "https://tavusapi.com/avatars/sarah.jpg"},
    {"replica_id": "r5e3f7a9c1", "replica_name": "James - Technical Expert",
     "thumbnail_url": "https://tavusapi.com/avatars/james.jpg"},
    {"replica_id": "r2d8b4f6e7", "replica_name": "Emily - Customer Support",
     "thumbnail_url": "https://tavusapi.com/avatars/emily.jpg"},
]

STOCK_PERSONAS = [
    {
        "persona_id": "pb8bb46b",
        "name": "Sales Agent",
        "description": "Professional sales representative focused on converting leads",
        "system_prompt": (
            "You are a professional sales agent. Your goal is to understand customer needs "
            "and present solutions that provide value."
        ),
        "context": "Sales conversations, product demonstrations, lead qualification",
        "avatar_url": "https://tavusapi.com/personas/sales-agent.jpg",
    },
    {
        "persona_id": "p7697228",
        "name": "Customer Support Specialist",
        "description": "Helpful support agent focused on resolving customer issues",
        "system_prompt": (
            "You are a customer support specialist. Your goal is to help customers resolve "
            "their issues quickly and effectively."
        ),
        "context": "Customer support, troubleshooting, issue resolution",
        "avatar_url": "https://tavusapi.com/personas/support-specialist.jpg",
    },
    {
        "persona_id": "pe930b05",
        "name": "Personal Agent",
        "description": "Friendly personal assistant for general inquiries",
        "system_prompt": (
            "You are a personal assistant. Your goal is to be helpful, friendly, and provide "
            "accurate information."
        ),
        "context": "General assistance, information requests, personal tasks",
        "avatar_url": "https://tavusapi.com/personas/personal-agent.jpg",
    },
]


def normalize_tavus_error(status_code: int, body: Any) -> AppError:
    message = ""
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or ""
    message = str(message) or f"HTTP {status_code}"
    details = {"provider_status": status_code}

    if status_code == 401:
        return AuthExpired(f"Authentication failed: {message}. Please check your API key.", details=details)
    if status_code == 402:
        return ProviderError(
            f"Payment required: {message}. Please check your Tavus credits.",
            provider_code=402,
            details=details,
        )
    if status_code == 403:
        return PermissionDenied(f"Access forbidden: {message}. Please check your permissions.", details=details)
    if status_code == 404:
        return NotFound(message, details=details)
    if status_code == 429:
        return RateLimited(f"Rate limit exceeded: {message}. Please try again later.", details=details)
    return ProviderError(f"Tavus API error: {message}", provider_code=status_code, details=details)


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class TavusGateway:
    def __init__(self, api_key: str, *, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.api_key = api_key
        self.base_url = settings.tavus_base_url.rstrip("/")
        self.timeout = settings.tavus_request_timeout
        self._transport = transport

    async def _request(self, method: str, path: str, *, params: dict | None = None, json: dict | None = None) -> Any:
        headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(
                    method, f"{self.base_url}{path}", params=params, json=json, headers=headers
                )
        except httpx.TimeoutException as e:
            raise RateLimited("Tavus API request timed out", details={"timeout": True}) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Could not reach Tavus API: {e}") from e

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            raise normalize_tavus_error(resp.status_code, body)
        return _unwrap(body)

    # -- Replicas ----------------------------------------------------------

    async def list_replicas(self, replica_type: str = "user") -> list[dict]:
        data = await self._request(
            "GET", "/replicas", params={"replica_type": replica_type, "verbose": "true"}
        )
        return data if isinstance(data, list) else []

    async def get_replica(self, replica_id: str) -> dict:
        return await self._request("GET", f"/replicas/{replica_id}")

    async def create_replica(self, train_video_url: str, replica_name: str, callback_url: str | None = None) -> dict:
        payload = {"train_video_url": train_video_url, "replica_name": replica_name}
        if callback_url:
            payload["callback_url"] = callback_url
        data = await self._request("POST", "/replicas", json=payload)
        if not isinstance(data, dict) or not data.get("replica_id"):
            raise ProviderError("Tavus did not return a replica id")
        return data

    async def delete_replica(self, replica_id: str) -> None:
        await self._request("DELETE", f"/replicas/{replica_id}")

    # -- Personas ----------------------------------------------------------

    async def create_persona(
        self,
        persona_name: str,
        system_prompt: str,
        context: str | None = None,
        default_replica_id: str | None = None,
    ) -> dict:
        payload = {"persona_name": persona_name, "system_prompt": system_prompt, "context": context or ""}
        if default_replica_id:
            payload["default_replica_id"] = default_replica_id
        data = await self._request("POST", "/personas", json=payload)
        if not isinstance(data, dict) or not data.get("persona_id"):
            raise ProviderError("Tavus did not return a persona id")
        return data

    # -- Videos ------------------------------------------------------------

    async def create_video(
        self, replica_id: str, script: str, video_name: str, background_url: str | None = None,
    ) -> dict:
        payload = {"replica_id": replica_id, "script": script, "video_name": video_name}
        if background_url:
            payload["background_url"] = background_url
        data = await self._request("POST", "/videos", json=payload)
        if not isinstance(data, dict) or not data.get("video_id"):
            raise ProviderError("Tavus did not return a video id")
        return data

    async def get_video(self, video_id: str) -> dict:
        return await self._request("GET", f"/videos/{video_id}")
