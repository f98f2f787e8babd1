"""Scoring, bounds and monotonicity tests for the vault health scorer."""

import dataclasses
import itertools
import unittest

from aegis.config import LAMPORTS_PER_SOL, HealthThresholds, MonitorThresholds
from aegis.errors import InvalidInput
from aegis.health import HealthStatus, VaultHealthInputs, calculate_vault_health, status_for_score

NOW = 1_700_000_000.0
DAY = 86_400


def healthy(**overrides) -> VaultHealthInputs:
    base = VaultHealthInputs(
        vault_balance=5 * LAMPORTS_PER_SOL,
        agent_balance=LAMPORTS_PER_SOL,
        daily_limit=1_000_000_000,
        daily_spent=100_000_000,
        is_paused=False,
        last_activity=NOW - 3600,
        total_transactions=100,
        successful_transactions=100,
        has_whitelist=True,
        whitelist_count=3,
        has_agent_signer=True,
    )
    return dataclasses.replace(base, **overrides)


class HealthScoreTests(unittest.TestCase):
    def test_perfect_vault(self) -> None:
        report = calculate_vault_health(healthy(), now=NOW)
        self.assertEqual(report.score, 100)
        self.assertEqual(report.status, HealthStatus.EXCELLENT)
        self.assertEqual((report.issues, report.warnings), ([], []))

    def test_empty_new_vault_example(self) -> None:
        inputs = VaultHealthInputs(
            vault_balance=0, agent_balance=0, daily_limit=1000, daily_spent=0,
            is_paused=False, total_transactions=0, has_whitelist=False, has_agent_signer=False,
        )
        report = calculate_vault_health(inputs, now=NOW)
        self.assertLessEqual(report.score, 100 - 20 - 15 - 10 - 3)
        self.assertIn(report.status, (HealthStatus.FAIR, HealthStatus.POOR, HealthStatus.CRITICAL))
        self.assertTrue(report.issues)
        self.assertIn("Vault has zero balance", report.issues)
        self.assertIn("No agent signer configured", report.issues)

    def test_single_deductions(self) -> None:
        cases = [
            (dict(vault_balance=0), 80, "issues"),
            (dict(vault_balance=LAMPORTS_PER_SOL // 20), 90, "warnings"),
            (dict(agent_balance=1_000_000), 80, "issues"),
            (dict(agent_balance=7_000_000), 90, "warnings"),
            (dict(is_paused=True), 85, "warnings"),
            (dict(last_activity=NOW - 8 * DAY), 85, "warnings"),
            (dict(last_activity=NOW - 4 * DAY), 95, "warnings"),
            (dict(successful_transactions=40), 85, "issues"),
            (dict(successful_transactions=60), 90, "warnings"),
            (dict(successful_transactions=85), 95, "warnings"),
            (dict(daily_spent=960_000_000), 90, "warnings"),
            (dict(daily_spent=850_000_000), 95, "warnings"),
            (dict(has_whitelist=False), 97, "warnings"),
            (dict(whitelist_count=0), 98, "warnings"),
        ]
        for overrides, expected, bucket in cases:
            with self.subTest(**{k: str(v) for k, v in overrides.items()}):
                report = calculate_vault_health(healthy(**overrides), now=NOW)
                self.assertEqual(report.score, expected)
                self.assertEqual(len(getattr(report, bucket)), 1)

    def test_missing_signer_is_an_issue(self) -> None:
        report = calculate_vault_health(healthy(has_agent_signer=False), now=NOW)
        self.assertEqual(report.score, 85)
        self.assertEqual(report.issues, ["No agent signer configured"])

    def test_no_transactions(self) -> None:
        report = calculate_vault_health(
            healthy(total_transactions=0, successful_transactions=0, last_activity=None), now=NOW,
        )
        self.assertEqual(report.score, 90)
        self.assertIn("No transactions yet", report.warnings)

    def test_zero_daily_limit_skips_utilization(self) -> None:
        report = calculate_vault_health(healthy(daily_limit=0, daily_spent=0), now=NOW)
        self.assertEqual(report.score, 100)

    def test_zero_daily_limit_with_spend_is_unscored(self) -> None:
        capped = calculate_vault_health(healthy(daily_limit=LAMPORTS_PER_SOL, daily_spent=990_000_000), now=NOW)
        unlimited = calculate_vault_health(healthy(daily_limit=0, daily_spent=990_000_000), now=NOW)
        self.assertEqual(capped.score, 90)
        self.assertEqual(unlimited.score, 100)
        self.assertNotIn("Daily limit nearly exhausted", unlimited.warnings)

    def test_tiers_apply_worst_only(self) -> None:
        report = calculate_vault_health(healthy(successful_transactions=10), now=NOW)
        self.assertEqual(report.score, 85)
        self.assertEqual(report.warnings, [])

    def test_status_boundaries(self) -> None:
        self.assertEqual(status_for_score(90), HealthStatus.EXCELLENT)
        self.assertEqual(status_for_score(89), HealthStatus.GOOD)
        self.assertEqual(status_for_score(75), HealthStatus.GOOD)
        self.assertEqual(status_for_score(74), HealthStatus.FAIR)
        self.assertEqual(status_for_score(50), HealthStatus.FAIR)
        self.assertEqual(status_for_score(49), HealthStatus.POOR)
        self.assertEqual(status_for_score(25), HealthStatus.POOR)
        self.assertEqual(status_for_score(24), HealthStatus.CRITICAL)
        self.assertEqual(status_for_score(0), HealthStatus.CRITICAL)

    def test_custom_thresholds(self) -> None:
        strict = HealthThresholds(monitor=MonitorThresholds(
            critical_balance_threshold=2 * LAMPORTS_PER_SOL, low_balance_threshold=3 * LAMPORTS_PER_SOL,
        ))
        report = calculate_vault_health(healthy(), now=NOW, thresholds=strict)
        self.assertEqual(report.score, 80)

    def test_idempotent(self) -> None:
        inputs = healthy(agent_balance=0, is_paused=True)
        self.assertEqual(
            calculate_vault_health(inputs, now=NOW).to_dict(),
            calculate_vault_health(inputs, now=NOW).to_dict(),
        )

    def test_rejects_inconsistent_inputs(self) -> None:
        with self.assertRaises(InvalidInput):
            calculate_vault_health(healthy(successful_transactions=101), now=NOW)
        with self.assertRaises(InvalidInput):
            calculate_vault_health(healthy(vault_balance=-1), now=NOW)
        with self.assertRaises(InvalidInput):
            calculate_vault_health(healthy(whitelist_count=21), now=NOW)


class HealthPropertyTests(unittest.TestCase):
    def _grid(self):
        return itertools.product(
            (0, LAMPORTS_PER_SOL // 20, 5 * LAMPORTS_PER_SOL),   # vault balance
            (0, 7_000_000, LAMPORTS_PER_SOL),                      # agent balance
            (True, False),                                         # paused
            (None, NOW - 4 * DAY, NOW - 8 * DAY),                  # last activity
            (0, 40, 85, 100),                                      # successes out of 100 (0 → no txs)
            (0, 850, 990),                                         # daily spent of 1000
            (True, False),                                         # whitelist
            (True, False),                                         # agent signer
        )

    def test_score_is_bounded(self) -> None:
        for vb, ab, paused, last, ok, spent, wl, signer in self._grid():
            total = 100 if ok else 0
            report = calculate_vault_health(VaultHealthInputs(
                vault_balance=vb, agent_balance=ab, daily_limit=1000, daily_spent=spent,
                is_paused=paused, last_activity=last, total_transactions=total,
                successful_transactions=ok, has_whitelist=wl, whitelist_count=0,
                has_agent_signer=signer,
            ), now=NOW)
            self.assertGreaterEqual(report.score, 0)
            self.assertLessEqual(report.score, 100)

    def test_monotonic_per_factor(self) -> None:
        # (field, better, worse) pairs, all applied to otherwise-fixed inputs
        steps = [
            ("vault_balance", 5 * LAMPORTS_PER_SOL, LAMPORTS_PER_SOL // 20),
            ("vault_balance", LAMPORTS_PER_SOL // 20, 0),
            ("agent_balance", LAMPORTS_PER_SOL, 7_000_000),
            ("agent_balance", 7_000_000, 0),
            ("is_paused", False, True),
            ("last_activity", NOW - 3600, NOW - 4 * DAY),
            ("last_activity", NOW - 4 * DAY, NOW - 8 * DAY),
            ("successful_transactions", 95, 40),
            ("successful_transactions", 75, 65),
            ("daily_spent", 100_000_000, 850_000_000),
            ("daily_spent", 850_000_000, 990_000_000),
            ("whitelist_count", 3, 0),
            ("has_whitelist", True, False),
            ("has_agent_signer", True, False),
        ]
        backgrounds = [
            healthy(),
            healthy(agent_balance=0, is_paused=True, has_whitelist=False),
            healthy(vault_balance=0, successful_transactions=10, last_activity=NOW - 30 * DAY),
        ]
        for background in backgrounds:
            for name, better, worse in steps:
                with self.subTest(field=name, better=str(better), worse=str(worse)):
                    good = calculate_vault_health(dataclasses.replace(background, **{name: better}), now=NOW)
                    bad = calculate_vault_health(dataclasses.replace(background, **{name: worse}), now=NOW)
                    self.assertLessEqual(bad.score, good.score)


if __name__ == "__main__":
    unittest.main()
