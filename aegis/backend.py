"""
Guardian Backend Client - Unsigned Override Transactions

The guardian backend owns vault/transaction records and builds the unsigned
override transaction (it knows the vault's current override sequence and
account list). This client only speaks the one endpoint the orchestrator
needs:

    POST {base}/override/transaction
         {vault, destination, amount, reason, signer}
      -> {transaction: <base64>, blockhash, lastValidBlockHeight}
      -> {error: "..."} on failure (surfaced verbatim)

Credentials travel per call in a RequestContext. The client holds no
"current user".
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from .errors import BuildFailed, MalformedEnvelope, NodeUnavailable

logger = logging.getLogger("aegis.backend")

OVERRIDE_TRANSACTION_PATH = "/override/transaction"


@dataclass(frozen=True)
class RequestContext:
    """Per-call credentials. Nothing here outlives the request."""
    api_key: str = ""
    user_id: str = ""
    idempotency_key: str = ""
    extra_headers: dict = field(default_factory=dict)

    def headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        if self.idempotency_key:
            headers["Idempotency-Key"] = self.idempotency_key
        headers.update(self.extra_headers)
        return headers


@dataclass(frozen=True)
class UnsignedTransactionEnvelope:
    transaction: bytes
    blockhash: str
    last_valid_block_height: int

    @classmethod
    def from_response(cls, body: dict) -> "UnsignedTransactionEnvelope":
        """
        Parse the builder's success body.
        A missing transaction is a BuildFailed (the backend didn't build one);
        anything present but unusable is a MalformedEnvelope.
        """
        encoded = body.get("transaction")
        if not encoded:
            raise BuildFailed("No transaction returned from server", payload=body)
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise MalformedEnvelope(f"transaction is not valid base64: {e}") from e

        blockhash = body.get("blockhash")
        height = body.get("lastValidBlockHeight")
        if not isinstance(blockhash, str) or not blockhash:
            raise MalformedEnvelope("response is missing blockhash")
        try:
            last_valid = int(height)
        except (TypeError, ValueError) as e:
            raise MalformedEnvelope(f"invalid lastValidBlockHeight: {height!r}") from e
        return cls(transaction=raw, blockhash=blockhash, last_valid_block_height=last_valid)


class GuardianClient:
    """
    Async client for the guardian backend.

    Usage:
        async with GuardianClient("http://localhost:3000/api") as backend:
            env = await backend.build_override_transaction(...)
    """

    def __init__(self, base_url: str, timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "GuardianClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def build_override_transaction(self, vault: str, destination: str, amount_lamports: int,
                                         reason: str, signer: str,
                                         context: Optional[RequestContext] = None
                                         ) -> UnsignedTransactionEnvelope:
        ctx = context or RequestContext()
        url = f"{self.base_url}{OVERRIDE_TRANSACTION_PATH}"
        body = {
            "vault": vault,
            "destination": destination,
            "amount": str(amount_lamports),
            "reason": reason,
            "signer": signer,
        }
        session = await self._get_session()
        try:
            async with session.post(url, json=body, headers=ctx.headers()) as resp:
                status = resp.status
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NodeUnavailable(f"guardian backend unreachable: {type(e).__name__}: {e}") from e

        if status < 200 or status >= 300:
            message = ""
            if isinstance(data, dict):
                err = data.get("error")
                # Some routes nest {error: {message}}; surface whatever was sent.
                if isinstance(err, dict):
                    message = str(err.get("message", "")) or str(err)
                elif err:
                    message = str(err)
            if not message:
                message = f"Failed to build transaction: {status}"
            logger.warning(f"Override build rejected [{status}]: {message}")
            raise BuildFailed(message, payload=data, status=status)

        if not isinstance(data, dict):
            raise BuildFailed("No transaction returned from server", payload=data, status=status)
        return UnsignedTransactionEnvelope.from_response(data)
