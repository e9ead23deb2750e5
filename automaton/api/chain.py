"""On-chain balance lookup: USDC on Base via a plain JSON-RPC ``eth_call``."""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

USDC_CONTRACT_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_DECIMALS = 6
# keccak256("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"


def balance_of_calldata(wallet_address: str) -> str:
    address = wallet_address.lower().removeprefix("0x")
    return f"{BALANCE_OF_SELECTOR}{address.rjust(64, '0')}"


def parse_token_amount(result_hex: Optional[str], decimals: int = USDC_DECIMALS) -> float:
    """Convert an ``eth_call`` hex result to a token amount. Malformed -> 0."""
    if not result_hex:
        return 0.0
    digits = result_hex.removeprefix("0x") or "0"
    try:
        raw = int(digits, 16)
    except ValueError:
        logger.warning("chain.unparseable_result", result=result_hex[:80])
        return 0.0
    return raw / (10 ** decimals)


async def fetch_usdc_balance(
    rpc_url: str,
    wallet_address: str,
    client: Optional[httpx.AsyncClient] = None,
) -> float:
    """Return the wallet's USDC balance.

    Raises httpx errors on transport failure and ValueError on an RPC error.
    """
    payload = {
        "jsonrpc": "2.0",
        "method": "eth_call",
        "params": [
            {"to": USDC_CONTRACT_BASE, "data": balance_of_calldata(wallet_address)},
            "latest",
        ],
        "id": 1,
    }
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await http.post(rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
    finally:
        if owns_client:
            await http.aclose()

    if "error" in body:
        raise ValueError(f"eth_call failed: {body['error']}")
    return parse_token_amount(body.get("result"))
