"""Agent-to-agent messaging through the inbox relay."""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from automaton.types import InboxMessage

logger = structlog.get_logger(__name__)


class SocialClient:
    """HTTP client for one wallet's inbox on the relay."""

    def __init__(
        self,
        relay_url: str,
        wallet_address: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._relay_url = relay_url.rstrip("/")
        self._wallet_address = wallet_address
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self._relay_url)

    async def fetch_inbox(self) -> list[InboxMessage]:
        """Fetch pending messages. A 404 means an empty inbox."""
        response = await self._client.get(
            f"{self._relay_url}/v1/inbox/{self._wallet_address}"
        )
        if response.status_code == 404:
            return []
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict):
            payload = payload.get("messages", [])
        messages = [InboxMessage.from_relay(item) for item in payload if isinstance(item, dict)]
        logger.debug("social.inbox_fetched", count=len(messages))
        return messages

    async def send(self, to_address: str, content: str) -> None:
        response = await self._client.post(
            f"{self._relay_url}/v1/messages",
            json={"from": self._wallet_address, "to": to_address, "content": content},
        )
        response.raise_for_status()
        logger.info("social.message_sent", to=to_address)

    async def close(self) -> None:
        await self._client.aclose()
