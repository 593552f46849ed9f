from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import aiohttp


class SessionJoinError(RuntimeError):
    pass


@dataclass(frozen=True)
class Credential:
    room_name: str
    token: str


class SessionJoinClient:
    """Exchanges a room name for an access credential over HTTP."""

    def __init__(self, url: str, http: aiohttp.ClientSession, timeout: float = 10.0) -> None:
        self._url = url
        self._http = http
        self._timeout = timeout
        self._logger = logging.getLogger("roomscribe.join")

    async def fetch_credential(self, room_name: str) -> Credential:
        if not room_name or not room_name.strip():
            raise SessionJoinError("Room name is required")
        self._logger.debug("Requesting credential: room=%s url=%s", room_name, self._url)
        try:
            async with self._http.post(
                self._url,
                json={"roomName": room_name},
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise SessionJoinError(f"Failed to fetch token: HTTP {resp.status} - {text[:200]}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SessionJoinError(f"Failed to fetch token: {exc}") from exc
        except ValueError as exc:
            raise SessionJoinError(f"Join response was not valid JSON: {exc}") from exc

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise SessionJoinError("Join response did not include a token")
        self._logger.info("Credential received for room=%s", room_name)
        return Credential(room_name=room_name, token=str(token))
