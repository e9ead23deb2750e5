"""
Survival — mapping money to behavior.

The automaton's balance decides how it may act. The tier function is pure and
total; the monitor reads the balances the heartbeat scheduler last persisted
and combines them.

    balance <= 0.00          -> dead         (halt)
    0.00 < balance < 0.10    -> critical     (essentials only)
    0.10 <= balance < 0.50   -> low_compute  (cheaper model)
    balance >= 0.50          -> normal
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from automaton.state.store import SharedStore
from automaton.types import SurvivalTier, utcnow

logger = structlog.get_logger(__name__)

# Credits are assumed healthy until the first balance check lands.
DEFAULT_CREDITS_BALANCE = 1.0
DEFAULT_USDC_BALANCE = 0.0


def tier_for_balance(balance: float) -> SurvivalTier:
    """Deterministic tier for a combined balance in USD."""
    return SurvivalTier.from_balance(balance)


def parse_balance(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("survival.unparseable_balance", value=raw, default=default)
        return default


@dataclass(frozen=True)
class SurvivalState:
    credits_balance: float
    usdc_balance: float
    tier: SurvivalTier

    @property
    def total_balance(self) -> float:
        return self.credits_balance + self.usdc_balance


class SurvivalMonitor:
    """Aggregates persisted balances into a survival tier."""

    def __init__(self, shared: SharedStore):
        self._shared = shared

    async def check(self) -> SurvivalState:
        async with self._shared.locked() as db:
            credits_raw = db.kv_get("credits_balance")
            usdc_raw = db.kv_get("usdc_balance")

        credits = parse_balance(credits_raw, DEFAULT_CREDITS_BALANCE)
        usdc = parse_balance(usdc_raw, DEFAULT_USDC_BALANCE)
        return SurvivalState(
            credits_balance=credits,
            usdc_balance=usdc,
            tier=tier_for_balance(credits + usdc),
        )

    async def request_funding(self, message: str) -> None:
        """Leave a funding request for the creator to pick up."""
        async with self._shared.locked() as db:
            db.kv_set("funding_request", message)
            db.kv_set("funding_request_at", utcnow().isoformat())
        logger.warning("survival.funding_requested", message=message)
