# app/clients/video_provider.py
"""
HTTP client for the Daily.co REST API.

Only the three endpoints the room provisioner needs are wrapped:
    GET  /rooms/{name}
    POST /rooms
    POST /meeting-tokens

Every failure (timeout, transport error, non-2xx) surfaces as
ProviderUnavailable; a missing API key surfaces as MissingCredentialError
before any request is made. A create rejected because the name is taken
raises RoomAlreadyExists so callers can treat the room as present.
"""

from typing import Any, Optional

import httpx

from common import (
    MissingCredentialError,
    ProviderUnavailable,
    VideoProviderConfig,
    get_app_logger,
)
from common.logger.logger_middleware import track_call

logger = get_app_logger(__name__)

PROVIDER_NAME = "video provider"


class RoomAlreadyExists(ProviderUnavailable):
    """POST /rooms was rejected because a room with that name exists."""

    def __init__(self, room_name: str):
        self.room_name = room_name
        super().__init__(PROVIDER_NAME, f"a room named {room_name} already exists")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("info") or body.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


def _is_duplicate_room(response: httpx.Response) -> bool:
    return response.status_code in (400, 409) and "already exists" in _error_detail(response)


class DailyClient:
    """
    Long-lived async client; build one at startup and close it on shutdown.

    Usage:
        client = DailyClient(config.video)
        room = await client.get_room("appointment-42-1736517600000")
        await client.aclose()
    """

    def __init__(
        self,
        config: VideoProviderConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def domain(self) -> str:
        return self._config.domain

    def _auth_headers(self) -> dict[str, str]:
        api_key = self._config.api_key_value
        if not api_key:
            raise MissingCredentialError("DAILY_API_KEY", PROVIDER_NAME)
        return {"Authorization": f"Bearer {api_key}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = self._auth_headers()
        try:
            with track_call("video"):
                return await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Video provider timed out", method=method, path=path)
            raise ProviderUnavailable(PROVIDER_NAME, "request timed out") from exc
        except httpx.TransportError as exc:
            logger.warning(
                "Video provider transport error",
                method=method,
                path=path,
                error=str(exc),
            )
            raise ProviderUnavailable(PROVIDER_NAME, str(exc) or "transport error") from exc

    async def get_room(self, name: str) -> Optional[dict[str, Any]]:
        """Return the room payload, or None when the provider answers 404."""
        response = await self._request("GET", f"/rooms/{name}")
        if response.status_code == 404:
            return None
        if response.is_error:
            raise ProviderUnavailable(PROVIDER_NAME, _error_detail(response))
        return response.json()

    async def create_room(self, name: str, properties: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST", "/rooms", json={"name": name, "properties": properties}
        )
        if _is_duplicate_room(response):
            logger.info("Room already exists", room_name=name)
            raise RoomAlreadyExists(name)
        if response.is_error:
            logger.error(
                "Room creation rejected",
                room_name=name,
                status_code=response.status_code,
                detail=_error_detail(response),
            )
            raise ProviderUnavailable(PROVIDER_NAME, _error_detail(response))
        return response.json()

    async def create_meeting_token(self, properties: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST", "/meeting-tokens", json={"properties": properties}
        )
        if response.is_error:
            raise ProviderUnavailable(PROVIDER_NAME, _error_detail(response))

        payload = response.json()
        if not isinstance(payload, dict) or not payload.get("token"):
            raise ProviderUnavailable(PROVIDER_NAME, "meeting token missing from response")
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["DailyClient", "RoomAlreadyExists", "PROVIDER_NAME"]
