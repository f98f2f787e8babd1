"""
Ledger Client - Solana JSON-RPC over aiohttp

Thin async client for the handful of node methods aegis needs:
- getBalance / getMultipleAccounts    (balance monitor)
- sendTransaction                      (override broadcast)
- getSignatureStatuses / getBlockHeight (confirmation polling)

Design:
- One aiohttp session per client, created lazily, closed by close()
- Connect failures and unusable replies to reads → NodeUnavailable
- A broadcast whose reply is lost after the request was written → BroadcastUncertain
- JSON-RPC error objects → RpcError (the node answered, it said no)
- confirm_transaction() polls until the signature reaches the requested
  commitment or the blockhash validity window (last_valid_block_height) is
  exceeded. There is no wall-clock timeout: expiry is decided by the ledger.
"""

import asyncio
import base64
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from .config import MAX_MULTIPLE_ACCOUNTS
from .errors import BlockHeightExceeded, BroadcastUncertain, InvalidInput, NodeUnavailable, RpcError

logger = logging.getLogger("aegis.ledger")

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


@dataclass
class SendOptions:
    skip_preflight: bool = False
    preflight_commitment: str = "confirmed"
    max_retries: Optional[int] = 3

    def to_rpc(self) -> dict:
        opts = {
            "encoding": "base64",
            "skipPreflight": self.skip_preflight,
            "preflightCommitment": self.preflight_commitment,
        }
        if self.max_retries is not None:
            opts["maxRetries"] = self.max_retries
        return opts


@dataclass
class ConfirmationResult:
    """Settled signature status. err is None on success."""
    signature: str
    slot: int = 0
    err: Any = None
    confirmation_status: str = ""


class LedgerClient:
    """
    Async JSON-RPC client for a Solana-compatible ledger node.

    Usage:
        ledger = LedgerClient("https://api.devnet.solana.com")
        lamports = await ledger.get_balance("4Nd1m...")
        await ledger.close()
    """

    def __init__(self, rpc_url: str, timeout_seconds: float = 30.0,
                 commitment: str = "confirmed", poll_interval: float = 2.0):
        if commitment not in COMMITMENT_RANK:
            raise InvalidInput(f"unknown commitment {commitment!r}")
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ============================================================
    # TRANSPORT
    # ============================================================

    async def _rpc(self, method: str, params: Optional[list] = None, broadcast: bool = False) -> Any:
        """
        One JSON-RPC round trip.

        Connect failures always raise NodeUnavailable: nothing left this
        process. Once the request is written, a lost or unreadable reply to a
        broadcast (timeout, disconnect, 5xx/429, bad body) raises
        BroadcastUncertain, because the node may already hold the transaction.
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        lost = BroadcastUncertain if broadcast else NodeUnavailable
        session = await self._get_session()
        try:
            async with session.post(self.rpc_url, json=payload) as resp:
                if resp.status >= 500 or resp.status == 429:
                    raise lost(f"{method}: node returned HTTP {resp.status}")
                body = await resp.json(content_type=None)
        except (NodeUnavailable, BroadcastUncertain):
            raise
        except (aiohttp.ClientConnectorError, aiohttp.ConnectionTimeoutError) as e:
            raise NodeUnavailable(f"{method}: {type(e).__name__}: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise lost(f"{method}: {type(e).__name__}: {e}") from e

        if not isinstance(body, dict):
            raise lost(f"{method}: unexpected response shape {type(body).__name__}")
        if body.get("error"):
            err = body["error"]
            if not isinstance(err, dict):
                raise RpcError(-1, str(err))
            raise RpcError(int(err.get("code", -1)), str(err.get("message", "")), err.get("data"))
        if "result" not in body:
            raise lost(f"{method}: response has neither result nor error")
        return body["result"]

    # ============================================================
    # READS
    # ============================================================

    @staticmethod
    def _malformed(method: str, detail: str) -> NodeUnavailable:
        return NodeUnavailable(f"{method}: malformed result ({detail})")

    def _context_value(self, method: str, result: Any) -> Any:
        """`result.value` of a context-wrapped reply."""
        if not isinstance(result, dict) or "value" not in result:
            raise self._malformed(method, f"expected {{context, value}}, got {type(result).__name__}")
        return result["value"]

    @staticmethod
    def _lamports(method: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise LedgerClient._malformed(method, f"lamports {value!r}")
        return value

    async def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        result = await self._rpc("getBalance", [str(address), {"commitment": commitment or self.commitment}])
        return self._lamports("getBalance", self._context_value("getBalance", result))

    async def get_multiple_balances(self, addresses: list[str],
                                    commitment: Optional[str] = None) -> list[int]:
        """
        Lamport balances for many accounts in one getMultipleAccounts call.
        Order follows the input; accounts that don't exist report 0.
        Any reply that doesn't line up with the request raises NodeUnavailable.
        """
        if len(addresses) > MAX_MULTIPLE_ACCOUNTS:
            raise InvalidInput(
                f"getMultipleAccounts accepts at most {MAX_MULTIPLE_ACCOUNTS} addresses, got {len(addresses)}"
            )
        if not addresses:
            return []
        config = {
            "commitment": commitment or self.commitment,
            "encoding": "base64",
            "dataSlice": {"offset": 0, "length": 0},
        }
        method = "getMultipleAccounts"
        result = await self._rpc(method, [[str(a) for a in addresses], config])
        accounts = self._context_value(method, result)
        if not isinstance(accounts, list) or len(accounts) != len(addresses):
            got = len(accounts) if isinstance(accounts, list) else type(accounts).__name__
            raise self._malformed(method, f"{got} entries for {len(addresses)} addresses")
        balances = []
        for acc in accounts:
            if acc is None:
                balances.append(0)
            elif isinstance(acc, dict):
                balances.append(self._lamports(method, acc.get("lamports")))
            else:
                raise self._malformed(method, f"account entry {type(acc).__name__}")
        return balances

    async def get_block_height(self, commitment: Optional[str] = None) -> int:
        height = await self._rpc("getBlockHeight", [{"commitment": commitment or self.commitment}])
        if isinstance(height, bool) or not isinstance(height, int):
            raise self._malformed("getBlockHeight", f"height {height!r}")
        return height

    async def get_signature_status(self, signature: str) -> Optional[dict]:
        method = "getSignatureStatuses"
        result = await self._rpc(method, [[signature], {"searchTransactionHistory": False}])
        statuses = self._context_value(method, result)
        if not isinstance(statuses, list) or len(statuses) != 1:
            raise self._malformed(method, f"statuses {statuses!r}")
        status = statuses[0]
        if status is not None and not isinstance(status, dict):
            raise self._malformed(method, f"status entry {type(status).__name__}")
        return status

    # ============================================================
    # WRITES
    # ============================================================

    async def send_raw_transaction(self, raw: bytes, options: Optional[SendOptions] = None) -> str:
        """
        Broadcast a signed, serialized transaction. Returns its signature.
        Raises NodeUnavailable only when nothing reached the node.
        """
        opts = (options or SendOptions()).to_rpc()
        encoded = base64.b64encode(raw).decode("ascii")
        signature = await self._rpc("sendTransaction", [encoded, opts], broadcast=True)
        if not isinstance(signature, str) or not signature:
            raise BroadcastUncertain(f"sendTransaction: node returned no signature ({signature!r})")
        logger.info(f"Broadcast {signature[:16]}... ({len(raw)} bytes)")
        return signature

    async def confirm_transaction(self, signature: str, blockhash: str,
                                  last_valid_block_height: int,
                                  commitment: Optional[str] = None) -> ConfirmationResult:
        """
        Poll until `signature` reaches `commitment` (or fails on-chain).

        Raises BlockHeightExceeded once the node's block height passes
        last_valid_block_height and the signature is still unknown. The
        transaction may still land in that case; the caller must treat the
        outcome as unknown.
        """
        target = commitment or self.commitment
        target_rank = COMMITMENT_RANK[target]
        logger.debug(f"Confirming {signature[:16]}... blockhash={blockhash[:8]}... "
                     f"valid_until={last_valid_block_height}")

        while True:
            settled = await self._check_status(signature, target_rank)
            if settled is not None:
                return settled

            height = await self.get_block_height(target)
            if height > last_valid_block_height:
                # The status may have landed between the two reads.
                settled = await self._check_status(signature, target_rank)
                if settled is not None:
                    return settled
                raise BlockHeightExceeded(signature, last_valid_block_height, height)

            await asyncio.sleep(self.poll_interval)

    async def _check_status(self, signature: str, target_rank: int) -> Optional[ConfirmationResult]:
        status = await self.get_signature_status(signature)
        if not status:
            return None
        reached = COMMITMENT_RANK.get(status.get("confirmationStatus") or "processed", 0)
        if reached < target_rank:
            return None
        return ConfirmationResult(
            signature=signature,
            slot=int(status.get("slot") or 0),
            err=status.get("err"),
            confirmation_status=status.get("confirmationStatus") or "",
        )
