from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from chatbridge.config.settings import Settings
from chatbridge.services.permissions import PermissionRule

logger = logging.getLogger(__name__)


class AgentError(RuntimeError):
    pass


@dataclass
class AgentHealth:
    healthy: bool
    version: str | None = None


class AgentClient:
    """Async client for the backend agent's HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        directory: str | None = None,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers: dict[str, str] = {}
        if directory:
            headers["x-opencode-directory"] = directory
        auth = httpx.BasicAuth(username, password) if username and password else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> AgentClient:
        return cls(
            settings.opencode_url,
            directory=settings.opencode_directory,
            username=settings.opencode_username,
            password=settings.opencode_password,
            timeout=settings.opencode_timeout_seconds,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise AgentError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise AgentError(f"{method} {path} returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as exc:
            raise AgentError(f"{method} {path} returned invalid JSON") from exc

    async def health(self) -> AgentHealth:
        payload = await self._request("GET", "/global/health")
        return AgentHealth(healthy=bool(payload.get("healthy")), version=payload.get("version"))

    async def create_session(self, title: str, permission_rules: list[PermissionRule]) -> str:
        payload = await self._request(
            "POST",
            "/session",
            json={"title": title, "permission": [rule.as_dict() for rule in permission_rules]},
        )
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not session_id:
            raise AgentError("Failed to create session")
        return session_id

    async def prompt(self, session_id: str, text: str) -> str:
        payload = await self._request(
            "POST",
            f"/session/{session_id}/message",
            json={"parts": [{"type": "text", "text": text}]},
        )
        parts = (payload.get("parts") if isinstance(payload, dict) else None) or []
        return "\n".join(
            part.get("text") or ""
            for part in parts
            if part.get("type") == "text" and not part.get("ignored")
        ).strip()

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> None:
        await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json={"response": response},
        )

    async def subscribe_events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield events from the agent's server-sent event stream until it ends.

        Each event is the JSON object carried by its ``data:`` lines; events
        whose payload is not a JSON object are skipped.
        """
        try:
            async with self._client.stream("GET", "/event", timeout=httpx.Timeout(None)) as response:
                if response.status_code >= 400:
                    raise AgentError(f"GET /event returned {response.status_code}")
                data: list[str] = []
                async for line in response.aiter_lines():
                    if line.startswith("data:"):
                        data.append(line[5:].lstrip())
                        continue
                    if line or not data:
                        continue
                    event = _parse_event("\n".join(data))
                    data = []
                    if event is not None:
                        yield event
                if data:
                    event = _parse_event("\n".join(data))
                    if event is not None:
                        yield event
        except httpx.HTTPError as exc:
            raise AgentError(f"GET /event failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_event(raw: str) -> dict[str, Any] | None:
    try:
        event = json.loads(raw)
    except ValueError:
        logger.debug("Skipping malformed agent event: %.200s", raw)
        return None
    if not isinstance(event, dict):
        return None
    # Global streams wrap each event in a payload envelope
    payload = event.get("payload")
    if isinstance(payload, dict) and "type" in payload:
        return payload
    return event if "type" in event else None
