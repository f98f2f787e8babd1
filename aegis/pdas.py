"""
PDA Derivation - Vault Addressing

Every account the aegis program owns is a program-derived address (PDA):
sha256(seeds || bump || program_id || "ProgramDerivedAddress"), searching the
bump from 255 down until the result is off the ed25519 curve. The search is
delegated to solders so it stays identical to the on-chain runtime.

Seeds (must match the program byte-for-byte):
    vault            ["vault", owner, nonce.to_le_bytes(8)]
    vault_authority  ["vault_authority", vault]            (holds the funds)
    override         ["override", vault, seq.to_le_bytes(8)]
    treasury         ["treasury"]

Getting any of this wrong does not fail loudly: every downstream
instruction just targets the wrong account.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Optional, Union

from solders.pubkey import Pubkey

from .config import PDA_SEEDS, U64_MAX, get_program_id
from .errors import InvalidInput

PubkeyLike = Union[Pubkey, str, bytes]


def to_pubkey(value: PubkeyLike, name: str = "address") -> Pubkey:
    """Coerce base58 str / 32 raw bytes / Pubkey into a Pubkey or raise InvalidInput."""
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise InvalidInput(f"{name} must be 32 bytes, got {len(value)}")
        return Pubkey.from_bytes(bytes(value))
    if isinstance(value, str):
        try:
            return Pubkey.from_string(value.strip())
        except ValueError as e:
            raise InvalidInput(f"{name} is not a valid base58 public key: {value!r}") from e
    raise InvalidInput(f"{name} has unsupported type {type(value).__name__}")


def encode_u64_le(value: int, name: str = "nonce") -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > U64_MAX:
        raise InvalidInput(f"{name} {value} does not fit in an unsigned 64-bit integer")
    return value.to_bytes(8, "little")


def _program(program_id: Optional[PubkeyLike]) -> Pubkey:
    return to_pubkey(program_id if program_id is not None else get_program_id(), "program_id")


def derive_vault_address(owner: PubkeyLike, nonce: int,
                         program_id: Optional[PubkeyLike] = None) -> tuple[Pubkey, int]:
    owner_key = to_pubkey(owner, "owner")
    seeds = [PDA_SEEDS.VAULT, bytes(owner_key), encode_u64_le(nonce)]
    return Pubkey.find_program_address(seeds, _program(program_id))


def derive_custody_address(vault_address: PubkeyLike,
                           program_id: Optional[PubkeyLike] = None) -> tuple[Pubkey, int]:
    vault = to_pubkey(vault_address, "vault_address")
    return Pubkey.find_program_address([PDA_SEEDS.VAULT_AUTHORITY, bytes(vault)], _program(program_id))


def derive_pending_override_address(vault_address: PubkeyLike, override_nonce: int,
                                    program_id: Optional[PubkeyLike] = None) -> tuple[Pubkey, int]:
    vault = to_pubkey(vault_address, "vault_address")
    seeds = [PDA_SEEDS.OVERRIDE, bytes(vault), encode_u64_le(override_nonce, "override_nonce")]
    return Pubkey.find_program_address(seeds, _program(program_id))


def derive_treasury_address(program_id: Optional[PubkeyLike] = None) -> tuple[Pubkey, int]:
    """Protocol fee treasury. Singleton per program."""
    return Pubkey.find_program_address([PDA_SEEDS.TREASURY], _program(program_id))


def generate_vault_nonce() -> int:
    """Millisecond timestamp * 1000 + random suffix. Lets one owner hold unlimited vaults."""
    return int(time.time() * 1000) * 1000 + secrets.randbelow(1000)


@dataclass(frozen=True)
class VaultIdentity:
    """
    A vault's addresses as a function of (owner, nonce).

    Build with VaultIdentity.derive(); the address fields are never
    accepted from outside, so they can't drift from the derivation.
    """
    owner: Pubkey
    nonce: int
    vault_address: Pubkey
    vault_bump: int
    vault_custody_address: Pubkey
    custody_bump: int

    @classmethod
    def derive(cls, owner: PubkeyLike, nonce: int,
               program_id: Optional[PubkeyLike] = None) -> "VaultIdentity":
        owner_key = to_pubkey(owner, "owner")
        vault, vault_bump = derive_vault_address(owner_key, nonce, program_id)
        custody, custody_bump = derive_custody_address(vault, program_id)
        return cls(
            owner=owner_key,
            nonce=nonce,
            vault_address=vault,
            vault_bump=vault_bump,
            vault_custody_address=custody,
            custody_bump=custody_bump,
        )

    def pending_override_address(self, override_nonce: int,
                                 program_id: Optional[PubkeyLike] = None) -> tuple[Pubkey, int]:
        return derive_pending_override_address(self.vault_address, override_nonce, program_id)

    def to_dict(self) -> dict:
        return {
            "owner": str(self.owner),
            "nonce": str(self.nonce),
            "vault_address": str(self.vault_address),
            "vault_bump": self.vault_bump,
            "vault_custody_address": str(self.vault_custody_address),
            "custody_bump": self.custody_bump,
        }
