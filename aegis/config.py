"""
Aegis Configuration - Protocol Constants & Runtime Settings

Two layers:
- Protocol constants: must match the on-chain aegis program byte-for-byte
  (PDA seeds, lamport units). Never read from the environment.
- Runtime settings: RPC endpoint, guardian backend URL, program id, network.
  Read from the environment (.env is loaded by main.py / scripts).

Thresholds that drive balance tiers and health scoring live in frozen
dataclasses so tests can build their own instances for edge cases.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Final

from .errors import InvalidInput


# ============================================================
# PROTOCOL CONSTANTS (match the on-chain program)
# ============================================================

LAMPORTS_PER_SOL: Final[int] = 1_000_000_000
U64_MAX: Final[int] = 2 ** 64 - 1
MAX_MULTIPLE_ACCOUNTS: Final[int] = 100     # getMultipleAccounts hard cap per request


@dataclass(frozen=True)
class PdaSeeds:
    VAULT: Final[bytes] = b"vault"
    VAULT_AUTHORITY: Final[bytes] = b"vault_authority"
    OVERRIDE: Final[bytes] = b"override"
    TREASURY: Final[bytes] = b"treasury"


PDA_SEEDS = PdaSeeds()


@dataclass(frozen=True)
class ProtocolConstants:
    MAX_WHITELIST_SIZE: Final[int] = 20
    MAX_NAME_LENGTH: Final[int] = 50
    DEFAULT_FEE_BASIS_POINTS: Final[int] = 5           # 0.05%
    SECONDS_PER_DAY: Final[int] = 86_400
    DEFAULT_OVERRIDE_EXPIRATION: Final[int] = 3_600    # 1 hour


PROTOCOL = ProtocolConstants()

DEFAULT_PROGRAM_ID: Final[str] = "ET9WDoFE2bf4bSmciLL7q7sKdeSYeNkWbNMHbAMBu2ZJ"


# ============================================================
# THRESHOLDS
# ============================================================

@dataclass(frozen=True)
class MonitorThresholds:
    """Agent wallet liquidity thresholds, all in lamports."""
    critical_balance_threshold: int = 5_000_000      # 0.005 SOL
    low_balance_threshold: int = 10_000_000          # 0.01 SOL
    assumed_unit_cost: int = 5_000                   # conservative fee per transaction
    poll_interval_seconds: float = 60.0

    def __post_init__(self):
        if self.assumed_unit_cost <= 0:
            raise ValueError("assumed_unit_cost must be positive")
        if self.critical_balance_threshold > self.low_balance_threshold:
            raise ValueError("critical threshold must not exceed low threshold")


@dataclass(frozen=True)
class HealthThresholds:
    """Cut-offs used by the vault health scorer."""
    low_vault_balance: int = LAMPORTS_PER_SOL // 10  # 0.1 SOL
    stale_activity_seconds: int = 7 * PROTOCOL.SECONDS_PER_DAY
    idle_activity_seconds: int = 3 * PROTOCOL.SECONDS_PER_DAY
    monitor: MonitorThresholds = field(default_factory=MonitorThresholds)


MONITOR_THRESHOLDS = MonitorThresholds()
HEALTH_THRESHOLDS = HealthThresholds()


# ============================================================
# NETWORKS (display and explorer only, no behavioral branching)
# ============================================================

NETWORK_DEFAULTS = {
    "devnet": {
        "rpc": "https://api.devnet.solana.com",
        "explorer": "https://explorer.solana.com",
        "cluster_param": "?cluster=devnet",
    },
    "testnet": {
        "rpc": "https://api.testnet.solana.com",
        "explorer": "https://explorer.solana.com",
        "cluster_param": "?cluster=testnet",
    },
    "mainnet-beta": {
        "rpc": "https://api.mainnet-beta.solana.com",
        "explorer": "https://explorer.solana.com",
        "cluster_param": "",
    },
}

DEFAULT_NETWORK: Final[str] = "devnet"


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    backend_url: str
    program_id: str
    network: str
    request_timeout_seconds: float = 30.0
    confirm_poll_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "Settings":
        network = os.getenv("SOLANA_NETWORK", DEFAULT_NETWORK)
        defaults = NETWORK_DEFAULTS.get(network, NETWORK_DEFAULTS[DEFAULT_NETWORK])
        return cls(
            rpc_url=os.getenv("SOLANA_RPC_URL", defaults["rpc"]),
            backend_url=os.getenv("GUARDIAN_API_URL", "http://localhost:3000/api").rstrip("/"),
            program_id=os.getenv("AEGIS_PROGRAM_ID", DEFAULT_PROGRAM_ID),
            network=network,
            request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
            confirm_poll_seconds=float(os.getenv("CONFIRM_POLL_SECONDS", "2")),
        )


def get_program_id() -> str:
    """Program id used when callers don't pass one explicitly."""
    return os.getenv("AEGIS_PROGRAM_ID", DEFAULT_PROGRAM_ID)


def explorer_tx_url(signature: str, network: str = DEFAULT_NETWORK) -> str:
    """Get block explorer URL for a transaction signature."""
    net = NETWORK_DEFAULTS.get(network, NETWORK_DEFAULTS[DEFAULT_NETWORK])
    return f"{net['explorer']}/tx/{signature}{net['cluster_param']}"


def explorer_address_url(address: str, network: str = DEFAULT_NETWORK) -> str:
    net = NETWORK_DEFAULTS.get(network, NETWORK_DEFAULTS[DEFAULT_NETWORK])
    return f"{net['explorer']}/address/{address}{net['cluster_param']}"


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol) -> int:
    """Exact conversion. Takes a Decimal, int or numeric string; floats go through their repr."""
    try:
        amount = sol if isinstance(sol, Decimal) else Decimal(str(sol))
    except InvalidOperation as e:
        raise InvalidInput(f"not a SOL amount: {sol!r}") from e
    if not amount.is_finite():
        raise InvalidInput(f"not a SOL amount: {sol!r}")
    lamports = amount * LAMPORTS_PER_SOL
    if lamports != lamports.to_integral_value():
        raise InvalidInput(f"{sol} SOL is not a whole number of lamports (max 9 decimal places)")
    return int(lamports)
