"""
Override Orchestrator - Build → Sign → Broadcast → Confirm

Drives one owner-approved override from intent to settled outcome:

    IDLE → BUILDING → SIGNING → CONFIRMING → SUCCESS | ERROR

1. BUILDING    guardian backend builds the unsigned transaction; the payload
               is parsed as a VersionedTransaction before we move on
2. SIGNING     injected wallet signer (may wait on the owner, may reject)
3. CONFIRMING  one broadcast, then poll inside the blockhash validity window

Rules:
- No state is entered twice in a run and nothing is retried internally.
  Retry is the caller's call, and a retry after CONFIRMATION_UNCERTAIN must
  start with a fresh blockhash (a new run).
- CONFIRMATION_UNCERTAIN is only reachable after sendTransaction was called.
  It means "may still land", never "failed".
- An abandoned run keeps awaiting whatever is in flight but writes nothing
  the caller can observe.
"""

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .backend import GuardianClient, RequestContext, UnsignedTransactionEnvelope
from .config import U64_MAX
from .errors import (
    AegisError,
    BlockHeightExceeded,
    FailureDetail,
    FailureKind,
    InvalidInput,
    MalformedEnvelope,
    NodeUnavailable,
    RpcError,
)
from .ledger import LedgerClient, SendOptions
from .pdas import PubkeyLike, to_pubkey
from .wallet import SigningCancelled, SigningRejected, WalletSigner

logger = logging.getLogger("aegis.orchestrator")


# ============================================================
# DATA TYPES
# ============================================================

class OverrideStatus(Enum):
    IDLE = "idle"
    BUILDING = "building"
    SIGNING = "signing"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (OverrideStatus.SUCCESS, OverrideStatus.ERROR)


class OverrideReason(Enum):
    """Why the agent's request was blocked. Wire value is sent to the backend."""
    EXCEEDED_DAILY_LIMIT = "exceeded_daily_limit"
    NOT_WHITELISTED = "not_whitelisted"
    VAULT_PAUSED = "vault_paused"
    MANUAL = "manual"


@dataclass(frozen=True)
class OverrideRequest:
    vault: str
    destination: str
    amount_lamports: int
    reason_code: OverrideReason
    requested_by: str

    @classmethod
    def create(cls, vault: PubkeyLike, destination: PubkeyLike, amount_lamports: int,
               reason_code, requested_by: PubkeyLike) -> "OverrideRequest":
        """Normalize and validate. Raises InvalidInput."""
        try:
            reason = reason_code if isinstance(reason_code, OverrideReason) else OverrideReason(reason_code)
        except ValueError as e:
            raise InvalidInput(f"unknown override reason {reason_code!r}") from e
        request = cls(
            vault=str(to_pubkey(vault, "vault")),
            destination=str(to_pubkey(destination, "destination")),
            amount_lamports=amount_lamports,
            reason_code=reason,
            requested_by=str(to_pubkey(requested_by, "requested_by")),
        )
        request.validate()
        return request

    def validate(self) -> None:
        to_pubkey(self.vault, "vault")
        to_pubkey(self.destination, "destination")
        to_pubkey(self.requested_by, "requested_by")
        if isinstance(self.amount_lamports, bool) or not isinstance(self.amount_lamports, int):
            raise InvalidInput("amount_lamports must be an integer number of lamports")
        if self.amount_lamports <= 0:
            raise InvalidInput(f"amount must be positive, got {self.amount_lamports}")
        if self.amount_lamports > U64_MAX:
            raise InvalidInput("amount does not fit in an unsigned 64-bit integer")
        if self.destination == self.vault:
            raise InvalidInput("destination cannot be the vault itself")
        if not isinstance(self.reason_code, OverrideReason):
            raise InvalidInput(f"unknown override reason {self.reason_code!r}")

    @property
    def key(self) -> tuple:
        return (self.vault, self.destination, self.amount_lamports, self.reason_code.value)

    @property
    def idempotency_key(self) -> str:
        return hashlib.sha256("|".join(str(p) for p in self.key).encode()).hexdigest()


@dataclass(frozen=True)
class TransactionOutcome:
    signature: str
    confirmed: bool
    error_detail: Optional[FailureDetail] = None


class InFlightOverrides:
    """
    Keys of overrides currently between BUILDING and a terminal state.
    Share one instance between orchestrators that must not race on the
    same (vault, destination, amount, reason), e.g. a double-clicked button.
    """

    def __init__(self):
        self._keys: set = set()

    def claim(self, key: tuple) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release(self, key: tuple) -> None:
        self._keys.discard(key)

    def __contains__(self, key) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)


# ============================================================
# ORCHESTRATOR
# ============================================================

class OverrideOrchestrator:
    """
    One instance per approval flow. Not reusable until reset().

    Usage:
        orch = OverrideOrchestrator(backend, ledger)
        status = await orch.execute(request, signer)
        if status is OverrideStatus.SUCCESS:
            print(orch.signature)
        else:
            print(describe_failure(orch.error))
    """

    def __init__(self, backend: GuardianClient, ledger: LedgerClient,
                 in_flight: Optional[InFlightOverrides] = None,
                 send_options: Optional[SendOptions] = None,
                 commitment: str = "confirmed"):
        self._backend = backend
        self._ledger = ledger
        self._in_flight = in_flight
        self._send_options = send_options or SendOptions()
        self._commitment = commitment
        self._listeners: list[Callable[[OverrideStatus], None]] = []
        self._abandoned = False
        self.status = OverrideStatus.IDLE
        self.history: list[OverrideStatus] = [OverrideStatus.IDLE]
        self.error: Optional[FailureDetail] = None
        self.signature: Optional[str] = None
        self.outcome: Optional[TransactionOutcome] = None
        self.broadcast_count = 0

    def add_listener(self, fn: Callable[[OverrideStatus], None]) -> None:
        self._listeners.append(fn)

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def abandon(self) -> None:
        """Stop reporting. In-flight awaits still complete; their results are dropped."""
        if not self._abandoned:
            logger.info(f"Override run abandoned in state {self.status.value}")
        self._abandoned = True

    def reset(self) -> None:
        if not self.status.terminal and self.status is not OverrideStatus.IDLE:
            raise InvalidInput(f"cannot reset while override is {self.status.value}")
        self._abandoned = False
        self.status = OverrideStatus.IDLE
        self.history = [OverrideStatus.IDLE]
        self.error = None
        self.signature = None
        self.outcome = None
        self.broadcast_count = 0

    # ------------------------------------------------------------
    # state writes (all of them go through here)
    # ------------------------------------------------------------

    def _transition(self, status: OverrideStatus) -> None:
        if self._abandoned:
            return
        if status in self.history:
            raise RuntimeError(f"override run re-entered {status.value}")
        self.status = status
        self.history.append(status)
        for fn in list(self._listeners):
            try:
                fn(status)
            except Exception as e:
                logger.warning(f"Override status listener failed: {e}")

    def _fail(self, detail: FailureDetail) -> OverrideStatus:
        if self._abandoned:
            return self.status
        self.error = detail
        if self.broadcast_count and self.signature:
            self.outcome = TransactionOutcome(signature=self.signature, confirmed=False, error_detail=detail)
        log_fn = logger.info if detail.kind is FailureKind.USER_REJECTED else logger.warning
        log_fn(f"Override ERROR [{detail.kind.value}]: {detail.message}")
        self._transition(OverrideStatus.ERROR)
        return self.status

    # ------------------------------------------------------------
    # run
    # ------------------------------------------------------------

    async def execute(self, request: OverrideRequest, signer: WalletSigner,
                      context: Optional[RequestContext] = None) -> OverrideStatus:
        """
        Run the override to a terminal state and return it.
        Raises InvalidInput for a malformed request or a non-idle orchestrator;
        every other failure ends in ERROR with a typed detail.
        """
        if self.status is not OverrideStatus.IDLE:
            raise InvalidInput(f"orchestrator is {self.status.value}; call reset() first")
        request.validate()
        signer_key = str(signer.public_key)

        key = request.key
        if self._in_flight is not None and not self._in_flight.claim(key):
            self._transition(OverrideStatus.BUILDING)
            return self._fail(FailureDetail(
                kind=FailureKind.DUPLICATE_REQUEST,
                message="An identical override is already being processed",
            ))
        try:
            return await self._run(request, signer, signer_key, context)
        finally:
            if self._in_flight is not None:
                self._in_flight.release(key)

    async def _run(self, request: OverrideRequest, signer: WalletSigner, signer_key: str,
                   context: Optional[RequestContext]) -> OverrideStatus:
        # ---- BUILDING ----
        self._transition(OverrideStatus.BUILDING)
        ctx = context or RequestContext()
        if not ctx.idempotency_key:
            ctx = RequestContext(
                api_key=ctx.api_key,
                user_id=ctx.user_id,
                idempotency_key=request.idempotency_key,
                extra_headers=ctx.extra_headers,
            )
        logger.info(
            f"Building override: vault={request.vault[:8]}... dest={request.destination[:8]}... "
            f"amount={request.amount_lamports} reason={request.reason_code.value}"
        )
        try:
            envelope = await self._backend.build_override_transaction(
                vault=request.vault,
                destination=request.destination,
                amount_lamports=request.amount_lamports,
                reason=request.reason_code.value,
                signer=signer_key,
                context=ctx,
            )
            transaction = self._deserialize(envelope)
        except AegisError as e:
            return self._fail(e.to_detail())
        if self._abandoned:
            return self.status

        # ---- SIGNING ----
        self._transition(OverrideStatus.SIGNING)
        try:
            signed = await signer.sign(transaction)
        except SigningRejected as e:
            return self._fail(FailureDetail(FailureKind.USER_REJECTED, str(e) or "Signature request rejected"))
        except SigningCancelled as e:
            return self._fail(FailureDetail(
                FailureKind.USER_REJECTED, str(e) or "Signature request cancelled", cancelled=True,
            ))
        except Exception as e:
            return self._fail(FailureDetail(FailureKind.SIGNER_FAILED, f"{type(e).__name__}: {e}"))
        if self._abandoned:
            return self.status

        try:
            raw = self._serialize_signed(signed)
        except MalformedEnvelope as e:
            return self._fail(e.to_detail())

        # ---- CONFIRMING ----
        self._transition(OverrideStatus.CONFIRMING)
        # the first signature is the transaction id, known before the node answers
        expected_signature = str(signed.signatures[0])
        try:
            self.broadcast_count += 1
            signature = await self._ledger.send_raw_transaction(raw, self._send_options)
        except NodeUnavailable as e:
            # Connect failure: the request never reached the node.
            return self._fail(e.to_detail())
        except RpcError as e:
            # Preflight/simulation rejection: the node refused it, nothing landed.
            return self._fail(FailureDetail(FailureKind.LEDGER_REJECTED, e.message, payload=e.data))
        except Exception as e:
            # Written to the node, reply lost. It may still land.
            if not self._abandoned:
                self.signature = expected_signature
            message = e.message if isinstance(e, AegisError) else f"{type(e).__name__}: {e}"
            return self._fail(FailureDetail(
                FailureKind.CONFIRMATION_UNCERTAIN,
                f"Sent {expected_signature[:16]}... but the node did not acknowledge it: {message}",
            ))
        if self._abandoned:
            return self.status
        self.signature = signature

        try:
            result = await self._ledger.confirm_transaction(
                signature,
                envelope.blockhash,
                envelope.last_valid_block_height,
                self._commitment,
            )
        except BlockHeightExceeded as e:
            return self._fail(FailureDetail(FailureKind.CONFIRMATION_UNCERTAIN, e.message))
        except Exception as e:
            # Broadcast already happened: any failure while polling leaves the outcome unknown.
            message = e.message if isinstance(e, AegisError) else f"{type(e).__name__}: {e}"
            return self._fail(FailureDetail(
                FailureKind.CONFIRMATION_UNCERTAIN,
                f"Lost track of {signature[:16]}... while confirming: {message}",
                payload=e.payload if isinstance(e, AegisError) else None,
            ))

        if result.err is not None:
            return self._fail(FailureDetail(
                FailureKind.LEDGER_REJECTED,
                f"Transaction failed: {result.err}",
                payload=result.err,
            ))

        if self._abandoned:
            return self.status
        self.outcome = TransactionOutcome(signature=signature, confirmed=True)
        logger.info(f"Override SUCCESS: {signature[:16]}... slot={result.slot}")
        self._transition(OverrideStatus.SUCCESS)
        return self.status

    @staticmethod
    def _deserialize(envelope: UnsignedTransactionEnvelope) -> VersionedTransaction:
        try:
            return VersionedTransaction.from_bytes(envelope.transaction)
        except Exception as e:
            raise MalformedEnvelope(f"cannot deserialize transaction: {e}") from e

    @staticmethod
    def _serialize_signed(signed) -> bytes:
        if not isinstance(signed, VersionedTransaction):
            raise MalformedEnvelope(f"signer returned {type(signed).__name__}, not a VersionedTransaction")
        signatures = list(signed.signatures)
        if not signatures or any(sig == Signature.default() for sig in signatures):
            raise MalformedEnvelope("signed transaction is missing required signatures")
        try:
            return bytes(signed)
        except Exception as e:
            raise MalformedEnvelope(f"cannot serialize signed transaction: {e}") from e


# ============================================================
# USER-FACING WORDING
# ============================================================

def describe_failure(detail: Optional[FailureDetail]) -> str:
    """Message for the owner. Never implies blame or lost funds for rejection/uncertain."""
    if detail is None:
        return ""
    kind = detail.kind
    message = detail.message or ""

    if kind is FailureKind.USER_REJECTED:
        if detail.cancelled:
            return "The signature request was closed before it was approved. No funds were moved."
        return "Transaction was rejected by wallet. No funds were moved."
    if kind is FailureKind.CONFIRMATION_UNCERTAIN:
        return ("Transaction was sent but not yet confirmed. It may still succeed - "
                "please check your vault before trying again.")
    if kind is FailureKind.DUPLICATE_REQUEST:
        return "This override is already being processed."
    if kind is FailureKind.NODE_UNAVAILABLE:
        return "Network error. Please check your connection and try again."
    if kind is FailureKind.MALFORMED_ENVELOPE:
        return "The server returned a transaction that could not be read. Please report this issue."
    if kind is FailureKind.SIGNER_FAILED:
        return "Your wallet could not sign this transaction. Please reconnect it and try again."

    lowered = message.lower()
    if "only the vault owner" in lowered:
        return "Only the vault owner can approve this override. Please connect with the correct wallet."
    if "simulation failed" in lowered:
        return "Transaction simulation failed. The transaction parameters may be invalid."
    if kind is FailureKind.BUILD_FAILED:
        return message or "Failed to build transaction."
    if kind is FailureKind.LEDGER_REJECTED:
        return message or "Transaction failed on-chain."
    return message or "An unknown error occurred"
