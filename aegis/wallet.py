"""
Wallet Signing Capability

The orchestrator never holds keys. It is handed a WalletSigner whose
sign() may suspend for as long as the owner takes to respond in their
wallet, and which ends in one of three ways:

    signed     -> returns the signed VersionedTransaction
    rejected   -> raises SigningRejected
    cancelled  -> raises SigningCancelled (prompt dismissed / timed out)

Anything else the signer raises (SigningFailed for a key that cannot sign
this message) is a signer fault, never a rejection.

KeypairSigner is the local implementation used by the operator CLI and
tests: it signs with a keypair file and never rejects.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .errors import InvalidInput

logger = logging.getLogger("aegis.wallet")


class SigningRejected(Exception):
    """The owner declined to sign."""


class SigningCancelled(Exception):
    """The signing prompt was dismissed or abandoned before an answer."""


class SigningFailed(Exception):
    """The signer could not produce a signature (wrong key, device fault). Not a rejection."""


class WalletSigner(ABC):
    """Injected signing capability."""

    @property
    @abstractmethod
    def public_key(self) -> Pubkey:
        ...

    @abstractmethod
    async def sign(self, transaction: VersionedTransaction) -> VersionedTransaction:
        """Return a signed copy of `transaction`."""


class KeypairSigner(WalletSigner):
    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_file(cls, path: str) -> "KeypairSigner":
        """Load a keypair file in the ledger CLI format (JSON array of 64 ints)."""
        p = Path(path).expanduser()
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
            keypair = Keypair.from_bytes(bytes(raw))
        except (OSError, ValueError, TypeError) as e:
            raise InvalidInput(f"cannot load keypair from {p}: {e}") from e
        return cls(keypair)

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    async def sign(self, transaction: VersionedTransaction) -> VersionedTransaction:
        message = transaction.message
        required = list(message.account_keys[:message.header.num_required_signatures])
        if self.public_key not in required:
            raise SigningFailed(f"keypair {self.public_key} is not a required signer of this transaction")
        try:
            signed = VersionedTransaction(message, [self._keypair])
        except Exception as e:
            # solders SignerError: e.g. the message needs more signers than this keypair
            raise SigningFailed(f"keypair {self.public_key} cannot sign this transaction: {e}") from e
        logger.debug(f"Signed with {str(self.public_key)[:8]}...")
        return signed
