"""
Heartbeat tasks — the short jobs the scheduler runs on cron.

Each task is a coroutine taking the entry's params and returning a one-line
result for the heartbeat log. Network calls (credits, chain, relay, git)
happen before the store lock is taken; the lock only covers the writes.

Tasks that find something the turn loop must react to leave a one-shot
signal (``survival_alert`` or ``wake_reason``) and clear ``sleep_until`` so
a sleeping agent wakes on its next poll.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from automaton.api.chain import fetch_usdc_balance
from automaton.api.conway import ConwayClient
from automaton.api.social import SocialClient
from automaton.errors import UnknownTaskError
from automaton.self_mod import upstream
from automaton.state.store import SharedStore
from automaton.survival import DEFAULT_USDC_BALANCE, parse_balance
from automaton.types import SurvivalTier, utcnow

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[dict[str, Any]], Awaitable[str]]


class HeartbeatTasks:
    """Registry of task identifier -> coroutine, resolved once per entry."""

    def __init__(
        self,
        shared: SharedStore,
        sandbox: ConwayClient,
        wallet_address: str = "",
        base_rpc_url: str = "",
        social: Optional[SocialClient] = None,
        rpc_client: Optional[httpx.AsyncClient] = None,
        clock: Callable = utcnow,
    ):
        self._shared = shared
        self._sandbox = sandbox
        self._wallet_address = wallet_address
        self._base_rpc_url = base_rpc_url
        self._social = social
        self._rpc_client = rpc_client
        self._clock = clock
        self._handlers: dict[str, TaskHandler] = {
            "heartbeat_ping": self.heartbeat_ping,
            "check_credits": self.check_credits,
            "check_usdc_balance": self.check_usdc_balance,
            "check_social_inbox": self.check_social_inbox,
            "check_upstream": self.check_upstream,
        }

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, name: str, handler: TaskHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Heartbeat task '{name}' is already registered.")
        self._handlers[name] = handler

    def resolve(self, name: str) -> TaskHandler:
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownTaskError(f"Unknown heartbeat task: {name}")
        return handler

    async def run(self, name: str, params: Optional[dict[str, Any]] = None) -> str:
        return await self.resolve(name)(params or {})

    # -------------------------------------------------------------------------
    # Built-in tasks
    # -------------------------------------------------------------------------

    async def heartbeat_ping(self, params: dict[str, Any]) -> str:
        await self._shared.kv_set("last_heartbeat", self._clock().isoformat())
        return "pong"

    async def check_credits(self, params: dict[str, Any]) -> str:
        balance = await self._sandbox.check_credits()

        async with self._shared.locked() as db:
            db.kv_set("credits_balance", str(balance.credits))
            usdc = parse_balance(db.kv_get("usdc_balance"), DEFAULT_USDC_BALANCE)
            tier = SurvivalTier.from_balance(balance.credits + usdc)
            db.kv_set("survival_tier", tier.value)
            if tier in (SurvivalTier.CRITICAL, SurvivalTier.DEAD):
                db.kv_set(
                    "survival_alert",
                    f"Credits critically low: {balance.credits} {balance.currency}. Tier: {tier.value}",
                )
                db.kv_delete("sleep_until")

        if tier in (SurvivalTier.CRITICAL, SurvivalTier.DEAD):
            logger.warning("heartbeat.survival_alert", credits=balance.credits, tier=tier.value)
        return f"{balance.credits} {balance.currency} (tier: {tier.value})"

    async def check_usdc_balance(self, params: dict[str, Any]) -> str:
        if not self._wallet_address or not self._base_rpc_url:
            return "Skipped: no wallet or RPC configured"

        balance = await fetch_usdc_balance(
            self._base_rpc_url, self._wallet_address, client=self._rpc_client
        )
        await self._shared.kv_set("usdc_balance", str(balance))
        return f"{balance:.6f} USDC"

    async def check_social_inbox(self, params: dict[str, Any]) -> str:
        if self._social is None or not self._social.configured:
            return "Skipped: no social relay configured"

        messages = await self._social.fetch_inbox()

        async with self._shared.locked() as db:
            # Relay redeliveries are dropped by message id.
            new_count = sum(1 for message in messages if db.save_inbox_message(message))
            if new_count > 0:
                db.kv_delete("sleep_until")
                db.kv_set("wake_reason", f"{new_count} new messages in inbox")

        if new_count:
            logger.info("heartbeat.inbox_wake", new_messages=new_count)
        return f"{new_count} new messages"

    async def check_upstream(self, params: dict[str, Any]) -> str:
        commits = await upstream.check_upstream(self._sandbox)

        async with self._shared.locked() as db:
            new_count = sum(
                1 for commit in commits if db.record_upstream_commit(commit.hash, commit.message)
            )
        return f"{new_count} new upstream commits"
