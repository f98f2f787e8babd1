"""
Vault Tool - operator CLI

Derive vault addresses, check agent gas, approve a blocked transaction.

Usage:
    python scripts/vault_tool.py derive --owner <PUBKEY> [--nonce 42]
    python scripts/vault_tool.py balance <AGENT> [<AGENT> ...]
    python scripts/vault_tool.py approve --vault <VAULT> --destination <DEST> \\
        --amount 0.25 --reason exceeded_daily_limit --keypair ~/.config/solana/id.json

`approve` runs the full override flow (build → sign → broadcast → confirm)
with the keypair as the owner's wallet. Exit codes: 0 success,
2 outcome unknown (check the vault before retrying), 1 any other failure.
"""

import os
import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

load_dotenv(ROOT / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("aegis.cli")

from aegis.backend import GuardianClient, RequestContext
from aegis.config import Settings, explorer_tx_url, sol_to_lamports
from aegis.errors import FailureKind, InvalidInput
from aegis.ledger import LedgerClient
from aegis.monitor import BalanceMonitor
from aegis.orchestrator import (
    OverrideOrchestrator,
    OverrideReason,
    OverrideRequest,
    OverrideStatus,
    describe_failure,
)
from aegis.pdas import VaultIdentity, derive_treasury_address, generate_vault_nonce
from aegis.wallet import KeypairSigner

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNCERTAIN = 2


def cmd_derive(args, settings: Settings) -> int:
    nonce = args.nonce if args.nonce is not None else generate_vault_nonce()
    identity = VaultIdentity.derive(args.owner, nonce, settings.program_id)
    treasury, treasury_bump = derive_treasury_address(settings.program_id)
    out = identity.to_dict()
    out["treasury_address"] = str(treasury)
    out["treasury_bump"] = treasury_bump
    out["program_id"] = settings.program_id
    print(json.dumps(out, indent=2))
    return EXIT_OK


async def cmd_balance(args, settings: Settings) -> int:
    async with LedgerClient(settings.rpc_url, timeout_seconds=settings.request_timeout_seconds) as ledger:
        snapshots = await BalanceMonitor(ledger).check_many(args.agents)
    print(json.dumps([s.to_dict() for s in snapshots], indent=2))
    return EXIT_OK


async def cmd_approve(args, settings: Settings) -> int:
    signer = KeypairSigner.from_file(args.keypair)
    request = OverrideRequest.create(
        vault=args.vault,
        destination=args.destination,
        amount_lamports=args.amount,
        reason_code=args.reason,
        requested_by=signer.public_key,
    )
    context = RequestContext(api_key=os.getenv("GUARDIAN_API_KEY", ""))

    async with GuardianClient(settings.backend_url, settings.request_timeout_seconds) as backend, \
            LedgerClient(settings.rpc_url, timeout_seconds=settings.request_timeout_seconds,
                         poll_interval=settings.confirm_poll_seconds) as ledger:
        orchestrator = OverrideOrchestrator(backend, ledger)
        orchestrator.add_listener(lambda status: logger.info(f"Override → {status.value}"))
        status = await orchestrator.execute(request, signer, context)

    if status is OverrideStatus.SUCCESS:
        print(f"Override confirmed: {orchestrator.signature}")
        print(explorer_tx_url(orchestrator.signature, settings.network))
        return EXIT_OK

    print(describe_failure(orchestrator.error))
    if orchestrator.signature:
        print(explorer_tx_url(orchestrator.signature, settings.network))
    if orchestrator.error and orchestrator.error.kind is FailureKind.CONFIRMATION_UNCERTAIN:
        return EXIT_UNCERTAIN
    return EXIT_FAILED


def sol_amount(text: str) -> int:
    """argparse type: decimal SOL string -> exact lamports."""
    try:
        return sol_to_lamports(text.strip())
    except InvalidInput as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Aegis vault operator tool")
    sub = parser.add_subparsers(dest="command", required=True)

    derive = sub.add_parser("derive", help="Derive vault PDAs for an owner")
    derive.add_argument("--owner", required=True, help="Owner public key (base58)")
    derive.add_argument("--nonce", type=int, default=None,
                        help="Vault nonce (default: generate a fresh one)")

    balance = sub.add_parser("balance", help="Check agent wallet gas runway")
    balance.add_argument("agents", nargs="+", help="Agent public keys")

    approve = sub.add_parser("approve", help="Approve an override with a local keypair")
    approve.add_argument("--vault", required=True)
    approve.add_argument("--destination", required=True)
    approve.add_argument("--amount", type=sol_amount, required=True,
                         help="Amount in SOL, up to 9 decimal places (converted exactly to lamports)")
    approve.add_argument("--reason", default=OverrideReason.EXCEEDED_DAILY_LIMIT.value,
                         choices=[r.value for r in OverrideReason])
    approve.add_argument("--keypair", default="~/.config/solana/id.json",
                         help="Owner keypair file (JSON byte array)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    try:
        if args.command == "derive":
            return cmd_derive(args, settings)
        if args.command == "balance":
            return asyncio.run(cmd_balance(args, settings))
        return asyncio.run(cmd_approve(args, settings))
    except InvalidInput as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
