"""Spot interruption monitor.

Polls the EC2 instance metadata service (IMDSv2) for a Spot
``instance-action`` notice. A notice arrives roughly two minutes before the
instance is reclaimed; the handler drains the worker pool so in-flight
messages are released for redelivery elsewhere.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger("spot_monitor")

TOKEN_PATH = "/latest/api/token"
INSTANCE_ACTION_PATH = "/latest/meta-data/spot/instance-action"
TOKEN_TTL_SECONDS = 21600


class SpotInterruptionMonitor:
    """Watches for a Spot interruption notice and invokes a handler once."""

    def __init__(
        self,
        metadata_url: str,
        on_interruption: Callable[[Dict[str, Any]], Awaitable[None]],
        interval_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.metadata_url = metadata_url.rstrip("/")
        self.on_interruption = on_interruption
        self.interval_seconds = interval_seconds
        self.client = client or httpx.AsyncClient(base_url=self.metadata_url, timeout=2.0)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _get_token(self) -> str:
        if self._token is None or time.monotonic() >= self._token_expires_at:
            response = await self.client.put(
                TOKEN_PATH,
                headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
            )
            response.raise_for_status()
            self._token = response.text
            # Refresh a minute early.
            self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS - 60
        return self._token

    async def check(self) -> Optional[Dict[str, Any]]:
        """Return the interruption notice, or ``None`` if there is none."""
        token = await self._get_token()
        response = await self.client.get(INSTANCE_ACTION_PATH, headers={"X-aws-ec2-metadata-token": token})
        if response.status_code == 401:
            self._token = None
            return None
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def run(self, stop_event: asyncio.Event) -> Optional[Dict[str, Any]]:
        """Poll until a notice arrives or ``stop_event`` is set."""
        logger.info("Spot interruption monitor started", interval_seconds=self.interval_seconds)
        while not stop_event.is_set():
            try:
                notice = await self.check()
            except httpx.HTTPError as e:
                logger.warning("Instance metadata check failed", error=str(e))
                notice = None

            if notice is not None:
                logger.warning("Spot interruption notice received", action=notice.get("action"), time=notice.get("time"))
                await self.on_interruption(notice)
                return notice

            try:
                await asyncio.wait_for(stop_event.wait(), self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        return None

    async def close(self) -> None:
        await self.client.aclose()
