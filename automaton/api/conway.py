"""
Conway Client — the sandbox the automaton lives in.

A thin httpx adapter over the compute provider's REST API: shell execution,
file I/O, port exposure, sandbox creation and the compute-credit balance.
Errors are raised as SandboxError carrying the HTTP status so the retry layer
can tell transient failures from permanent ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from automaton.errors import SandboxError

logger = structlog.get_logger(__name__)


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    def render(self) -> str:
        """Flatten into the text the agent sees as tool output."""
        output = self.stdout
        if self.stderr:
            if output:
                output += "\n"
            output += f"[stderr] {self.stderr}"
        if not output:
            output = f"(exit code: {self.exit_code})"
        return output


@dataclass
class CreditBalance:
    credits: float
    currency: str = "USD"


class ConwayClient:
    """REST client for one sandbox on the compute provider."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        sandbox_id: str = "",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._sandbox_id = sandbox_id
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    def _sandbox_url(self, path: str) -> str:
        return f"{self._base_url}/v1/sandboxes/{self._sandbox_id}/{path}"

    async def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise SandboxError(f"Conway {operation} request failed: {e}") from e
        if response.is_error:
            raise SandboxError(
                f"Conway {operation} failed ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    async def exec(self, command: str, timeout_ms: Optional[int] = None) -> ExecResult:
        payload: dict[str, Any] = {"command": command}
        if timeout_ms is not None:
            payload["timeout_ms"] = int(timeout_ms)
        # Give the HTTP call a little longer than the command itself.
        http_timeout = (timeout_ms / 1000.0 + 10.0) if timeout_ms else None
        logger.debug("conway.exec", command=command[:200], timeout_ms=timeout_ms)
        kwargs: dict[str, Any] = {"json": payload}
        if http_timeout is not None:
            kwargs["timeout"] = http_timeout
        response = await self._request("POST", self._sandbox_url("exec"), "exec", **kwargs)
        data = response.json()
        return ExecResult(
            stdout=str(data.get("stdout", "")),
            stderr=str(data.get("stderr", "")),
            exit_code=int(data.get("exit_code", 0)),
        )

    async def read_file(self, path: str) -> str:
        response = await self._request(
            "GET", self._sandbox_url("files"), "read_file", params={"path": path}
        )
        return str(response.json().get("content", ""))

    async def write_file(self, path: str, content: str) -> None:
        await self._request(
            "PUT",
            self._sandbox_url("files"),
            "write_file",
            json={"path": path, "content": content},
        )

    async def expose_port(self, port: int) -> str:
        response = await self._request(
            "POST", self._sandbox_url("ports"), "expose_port", json={"port": int(port)}
        )
        return str(response.json().get("url", ""))

    async def create_sandbox(self, name: str) -> str:
        response = await self._request(
            "POST", f"{self._base_url}/v1/sandboxes", "create_sandbox", json={"name": name}
        )
        return str(response.json().get("sandbox_id", ""))

    async def check_credits(self) -> CreditBalance:
        response = await self._request(
            "GET", f"{self._base_url}/v1/credits/balance", "check_credits"
        )
        data = response.json()
        try:
            credits = float(data["credits"])
        except (KeyError, TypeError, ValueError) as e:
            raise SandboxError(f"Malformed credit balance response: {data!r}") from e
        return CreditBalance(credits=credits, currency=str(data.get("currency", "USD")))

    async def close(self) -> None:
        await self._client.aclose()
