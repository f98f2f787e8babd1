"""Operator CLI tests (offline subcommands only)."""

import io
import json
import unittest
from contextlib import redirect_stderr, redirect_stdout

from solders.keypair import Keypair

from aegis.config import U64_MAX
from aegis.pdas import VaultIdentity
from scripts.vault_tool import EXIT_FAILED, EXIT_OK, build_parser, main, sol_amount


class VaultToolTests(unittest.TestCase):
    def test_derive_prints_identity(self) -> None:
        owner = Keypair().pubkey()
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(["derive", "--owner", str(owner), "--nonce", "42"])
        self.assertEqual(code, EXIT_OK)
        body = json.loads(out.getvalue())
        identity = VaultIdentity.derive(owner, 42, body["program_id"])
        self.assertEqual(body["vault_address"], str(identity.vault_address))
        self.assertEqual(body["nonce"], "42")
        self.assertIn("treasury_address", body)

    def test_derive_invalid_owner(self) -> None:
        self.assertEqual(main(["derive", "--owner", "nope", "--nonce", "1"]), EXIT_FAILED)

    def test_approve_missing_keypair_file(self) -> None:
        code = main([
            "approve", "--vault", str(Keypair().pubkey()), "--destination", str(Keypair().pubkey()),
            "--amount", "0.1", "--keypair", "/nonexistent/id.json",
        ])
        self.assertEqual(code, EXIT_FAILED)

    def test_reason_choices(self) -> None:
        with self.assertRaises(SystemExit), redirect_stdout(io.StringIO()):
            build_parser().parse_args(["approve", "--vault", "v", "--destination", "d",
                                       "--amount", "1", "--reason", "because"])

    def test_amount_is_exact_lamports(self) -> None:
        self.assertEqual(sol_amount("18446744073.709551615"), U64_MAX)
        self.assertEqual(sol_amount("0.1"), 100_000_000)
        args = build_parser().parse_args(["approve", "--vault", "v", "--destination", "d",
                                          "--amount", "123456789.123456789"])
        self.assertEqual(args.amount, 123_456_789_123_456_789)

    def test_sub_lamport_amount_rejected(self) -> None:
        with self.assertRaises(SystemExit), redirect_stderr(io.StringIO()):
            build_parser().parse_args(["approve", "--vault", "v", "--destination", "d",
                                       "--amount", "0.0000000001"])


if __name__ == "__main__":
    unittest.main()
