# app/services/v1/room_provisioner.py
"""
Video room provisioning on top of the Daily.co client.

The provider's create call is not immediately consistent: a freshly
created room can 404 for several seconds. ensure_room() therefore waits
on a fixed propagation schedule (5s, re-check, 10s) and then returns
optimistically; mint_token() retries a failed token request once after
re-asserting the room.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from app.auth import Identity
from app.clients import DailyClient, RoomAlreadyExists
from app.db.schemas import AccessToken, ProvisioningState, RoomDescriptor
from common import ProviderUnavailable, ValidationError, VideoProviderConfig, get_app_logger
from common.retry import BoundedRetry, Clock, SystemClock

logger = get_app_logger(__name__)

_INVALID_ROOM_CHARS = re.compile(r"[^a-zA-Z0-9-]")


def sanitize_room_name(name: str) -> str:
    """Replace anything outside [a-zA-Z0-9-] with '-', then lowercase."""
    sanitized = _INVALID_ROOM_CHARS.sub("-", name).lower()
    if not sanitized:
        raise ValidationError("Room name must not be empty")
    return sanitized


def _from_epoch(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


@dataclass
class _Attempt:
    room_name: str
    state: ProvisioningState = ProvisioningState.NOT_CHECKED

    def advance(self, state: ProvisioningState) -> None:
        self.state = state
        logger.debug("Room provisioning", room_name=self.room_name, state=state.value)


class RoomProvisioner:
    """
    Usage:
        provisioner = RoomProvisioner(daily_client, config.video)
        room = await provisioner.ensure_room("appointment-42-1736517600000")
        token = await provisioner.mint_token(room.name, identity)
    """

    def __init__(
        self,
        client: DailyClient,
        config: VideoProviderConfig,
        clock: Optional[Clock] = None,
    ):
        self._client = client
        self._config = config
        self._clock = clock or SystemClock()
        self._propagation = BoundedRetry(config.propagation_delays, self._clock)
        self._token_retry = BoundedRetry((config.retry_delay_seconds,), self._clock)

    def room_url(self, room_name: str) -> str:
        return f"https://{self._config.domain}/{room_name}"

    def room_ttl_minutes(self, emergency: bool = False) -> int:
        if emergency:
            return self._config.emergency_token_ttl_minutes
        return self._config.room_ttl_minutes

    def _expiry(self, minutes: int) -> int:
        return int(self._clock.now()) + minutes * 60

    def _descriptor(
        self,
        room_name: str,
        payload: Optional[dict[str, Any]],
        state: ProvisioningState,
        fallback_exp: Optional[int] = None,
    ) -> RoomDescriptor:
        exp = ((payload or {}).get("config") or {}).get("exp", fallback_exp)
        # Provider URLs are ignored in favour of the canonical tenant URL
        return RoomDescriptor(
            name=room_name,
            url=self.room_url(room_name),
            expires_at=_from_epoch(exp),
            state=state,
        )

    async def _is_visible(self, room_name: str) -> bool:
        try:
            return await self._client.get_room(room_name) is not None
        except ProviderUnavailable:
            return False

    async def ensure_room(self, name: str, ttl_minutes: Optional[int] = None) -> RoomDescriptor:
        """
        Make sure the room exists and return its descriptor.

        Safe to call repeatedly: an existing room is returned as-is and
        never recreated, including one the provider still reports as
        missing but refuses to create twice. Any other failed create
        propagates as ProviderUnavailable.
        """
        room_name = sanitize_room_name(name)
        if room_name != name:
            logger.debug("Room name sanitized", original=name, room_name=room_name)

        attempt = _Attempt(room_name)
        attempt.advance(ProvisioningState.CHECKING)

        existing = await self._client.get_room(room_name)
        if existing is not None:
            attempt.advance(ProvisioningState.EXISTS)
            return self._descriptor(room_name, existing, attempt.state)

        attempt.advance(ProvisioningState.CREATING)
        exp = self._expiry(ttl_minutes or self._config.room_ttl_minutes)
        try:
            created = await self._client.create_room(
                room_name,
                {
                    "exp": exp,
                    "enable_chat": True,
                    "enable_screenshare": True,
                    "enable_knocking": False,
                    "enable_prejoin_ui": False,
                    "start_audio_off": False,
                    "start_video_off": False,
                },
            )
        except RoomAlreadyExists:
            # Created earlier (or concurrently) but not yet readable
            attempt.advance(ProvisioningState.EXISTS)
            return self._descriptor(room_name, None, attempt.state, exp)

        attempt.advance(ProvisioningState.CREATED)
        logger.info("Video room created", room_name=room_name, exp=exp)

        visible = await self._propagation.wait_for(lambda: self._is_visible(room_name))
        if visible:
            attempt.advance(ProvisioningState.CONFIRMED_VISIBLE)
        else:
            attempt.advance(ProvisioningState.ASSUMED_VISIBLE)
            logger.warning(
                "Room not confirmed visible, proceeding",
                room_name=room_name,
                waited_seconds=self._propagation.budget_seconds,
            )
        return self._descriptor(room_name, created, attempt.state, exp)

    async def mint_token(
        self,
        name: str,
        participant: Identity,
        *,
        emergency: bool = False,
    ) -> AccessToken:
        """
        Mint a meeting token for ``participant``; owners are doctors only.

        A failed token request is retried exactly once, after the room is
        re-asserted and the retry delay has passed.
        """
        room_ttl = self.room_ttl_minutes(emergency)
        room = await self.ensure_room(name, room_ttl)
        is_owner = participant.is_doctor
        ttl = (
            self._config.emergency_token_ttl_minutes
            if emergency
            else self._config.token_ttl_minutes
        )

        async def request_token() -> tuple[str, int]:
            exp = self._expiry(ttl)
            properties: dict[str, Any] = {
                "room_name": room.name,
                "user_id": str(participant.id),
                "user_name": participant.display_name,
                "exp": exp,
                "is_owner": is_owner,
                "enable_screenshare": True,
                "start_video_off": False,
                "start_audio_off": False,
            }
            if is_owner:
                properties["enable_recording"] = "cloud"
            payload = await self._client.create_meeting_token(properties)
            return payload["token"], exp

        async def reassert_room(exc: BaseException, attempt: int) -> None:
            logger.warning(
                "Meeting token request failed, retrying",
                room_name=room.name,
                attempt=attempt,
                error=str(exc),
            )
            await self.ensure_room(room.name, room_ttl)

        try:
            token, exp = await self._token_retry.call(
                request_token,
                retry_on=(ProviderUnavailable,),
                before_retry=reassert_room,
            )
        except ProviderUnavailable:
            logger.error("Meeting token unavailable after retry", room_name=room.name)
            raise

        logger.info(
            "Meeting token minted",
            room_name=room.name,
            participant_id=participant.id,
            is_owner=is_owner,
            emergency=emergency,
        )
        return AccessToken(
            token=token,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            is_owner=is_owner,
            room_name=room.name,
        )


__all__ = ["RoomProvisioner", "sanitize_room_name", "ProvisioningState"]
