"""
Error taxonomy shared by the deriver, clients and orchestrator.

Exceptions are raised at the seams (deriver, HTTP/RPC clients, signer).
The orchestrator never lets them escape a run: it converts each one into a
FailureDetail carrying a FailureKind, and only InvalidInput (a caller bug)
is raised out of it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class FailureKind(Enum):
    INVALID_INPUT = "invalid_input"
    BUILD_FAILED = "build_failed"
    MALFORMED_ENVELOPE = "malformed_envelope"
    USER_REJECTED = "user_rejected"
    SIGNER_FAILED = "signer_failed"
    LEDGER_REJECTED = "ledger_rejected"
    CONFIRMATION_UNCERTAIN = "confirmation_uncertain"
    NODE_UNAVAILABLE = "node_unavailable"
    DUPLICATE_REQUEST = "duplicate_request"

    @property
    def recoverable(self) -> bool:
        return self not in (FailureKind.INVALID_INPUT, FailureKind.MALFORMED_ENVELOPE)

    @property
    def retry_safe(self) -> bool:
        """True when retrying cannot double-spend (nothing reached the ledger)."""
        return self in (
            FailureKind.BUILD_FAILED,
            FailureKind.USER_REJECTED,
            FailureKind.SIGNER_FAILED,
            FailureKind.NODE_UNAVAILABLE,
            FailureKind.LEDGER_REJECTED,
        )


@dataclass(frozen=True)
class FailureDetail:
    """Typed detail attached to a run that ended in ERROR."""
    kind: FailureKind
    message: str = ""
    payload: Any = None           # ledger err object / backend error body
    cancelled: bool = False       # USER_REJECTED because the prompt was dismissed

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "payload": self.payload,
            "cancelled": self.cancelled,
            "recoverable": self.kind.recoverable,
            "retry_safe": self.kind.retry_safe,
        }


class AegisError(Exception):
    """Base class for all aegis errors."""
    kind: FailureKind = FailureKind.INVALID_INPUT

    def __init__(self, message: str = "", payload: Any = None):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_detail(self) -> FailureDetail:
        return FailureDetail(kind=self.kind, message=self.message, payload=self.payload)


class InvalidInput(AegisError, ValueError):
    """Malformed address, nonce or amount. Always a caller defect."""
    kind = FailureKind.INVALID_INPUT


class BuildFailed(AegisError):
    """Guardian backend refused to build the override transaction."""
    kind = FailureKind.BUILD_FAILED

    def __init__(self, message: str = "", payload: Any = None, status: Optional[int] = None):
        super().__init__(message, payload)
        self.status = status


class MalformedEnvelope(AegisError):
    kind = FailureKind.MALFORMED_ENVELOPE


class NodeUnavailable(AegisError):
    """Transport-level failure talking to the ledger node or backend."""
    kind = FailureKind.NODE_UNAVAILABLE


class BroadcastUncertain(AegisError):
    """sendTransaction was written to the node but no usable reply came back."""
    kind = FailureKind.CONFIRMATION_UNCERTAIN


class LedgerRejected(AegisError):
    """The node or the program rejected the transaction."""
    kind = FailureKind.LEDGER_REJECTED


class BlockHeightExceeded(AegisError):
    """Validity window elapsed without a confirmation. Outcome unknown."""
    kind = FailureKind.CONFIRMATION_UNCERTAIN

    def __init__(self, signature: str, last_valid_block_height: int, block_height: int):
        super().__init__(
            f"Signature {signature} has expired: block height {block_height} "
            f"exceeded {last_valid_block_height}",
        )
        self.signature = signature
        self.last_valid_block_height = last_valid_block_height
        self.block_height = block_height


class RpcError(AegisError):
    """JSON-RPC error object returned by the node."""
    kind = FailureKind.LEDGER_REJECTED

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}", payload=data)
        self.code = code
        self.data = data
