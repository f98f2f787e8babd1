"""Tier classification, batch failure handling and poll loop tests for the balance monitor."""

import asyncio
import unittest

from solders.keypair import Keypair

from aegis.config import MonitorThresholds
from aegis.errors import InvalidInput, NodeUnavailable
from aegis.monitor import BalanceMonitor, BalanceTier, classify_balance, unknown_balance
from aegis.tests.fakes import FakeLedger

THRESHOLDS = MonitorThresholds()


def agents(n: int) -> list[str]:
    return [str(Keypair().pubkey()) for _ in range(n)]


class ClassifyTests(unittest.TestCase):
    def test_tiers_at_boundaries(self) -> None:
        critical = THRESHOLDS.critical_balance_threshold
        low = THRESHOLDS.low_balance_threshold
        cases = [
            (0, BalanceTier.CRITICAL),
            (critical - 1, BalanceTier.CRITICAL),
            (critical, BalanceTier.LOW),
            (low - 1, BalanceTier.LOW),
            (low, BalanceTier.HEALTHY),
            (10 ** 12, BalanceTier.HEALTHY),
        ]
        for lamports, tier in cases:
            with self.subTest(lamports=lamports):
                self.assertIs(classify_balance("a", lamports, THRESHOLDS).tier, tier)

    def test_ops_estimate(self) -> None:
        snap = classify_balance("a", 12_345_678, THRESHOLDS)
        self.assertEqual(snap.estimated_ops_remaining, 12_345_678 // 5000)
        self.assertEqual(classify_balance("a", 4_999, THRESHOLDS).estimated_ops_remaining, 0)

    def test_unknown_is_worst_case(self) -> None:
        snap = unknown_balance("a")
        self.assertIs(snap.tier, BalanceTier.CRITICAL)
        self.assertEqual((snap.lamports, snap.estimated_ops_remaining, snap.fetched), (0, 0, False))

    def test_thresholds_validated(self) -> None:
        with self.assertRaises(ValueError):
            MonitorThresholds(critical_balance_threshold=20, low_balance_threshold=10)


class CheckTests(unittest.IsolatedAsyncioTestCase):
    async def test_single_check(self) -> None:
        [addr] = agents(1)
        monitor = BalanceMonitor(FakeLedger(balances={addr: 7_000_000}))
        snap = await monitor.check(addr)
        self.assertEqual(snap.address, addr)
        self.assertIs(snap.tier, BalanceTier.LOW)

    async def test_single_check_propagates_node_errors(self) -> None:
        [addr] = agents(1)
        monitor = BalanceMonitor(FakeLedger(batch_error=NodeUnavailable("down")))
        with self.assertRaises(NodeUnavailable):
            await monitor.check(addr)

    async def test_batch_preserves_order_in_one_request(self) -> None:
        addrs = agents(3)
        ledger = FakeLedger(balances={addrs[0]: 0, addrs[1]: 7_000_000, addrs[2]: 50_000_000})
        snaps = await BalanceMonitor(ledger).check_many(addrs)
        self.assertEqual([s.address for s in snaps], addrs)
        self.assertEqual([s.tier for s in snaps], [BalanceTier.CRITICAL, BalanceTier.LOW, BalanceTier.HEALTHY])
        self.assertEqual(ledger.batch_calls, [addrs])

    async def test_batch_failure_reports_every_address_critical(self) -> None:
        addrs = agents(4)
        monitor = BalanceMonitor(FakeLedger(batch_error=NodeUnavailable("timeout")))
        snaps = await monitor.check_many(addrs)
        self.assertEqual(len(snaps), 4)
        self.assertTrue(all(s.tier is BalanceTier.CRITICAL and not s.fetched for s in snaps))
        self.assertEqual(monitor.last_error, "timeout")

    async def test_empty_batch(self) -> None:
        ledger = FakeLedger()
        self.assertEqual(await BalanceMonitor(ledger).check_many([]), [])
        self.assertEqual(ledger.batch_calls, [])

    async def test_batch_limit(self) -> None:
        monitor = BalanceMonitor(FakeLedger())
        with self.assertRaises(InvalidInput):
            await monitor.check_many(["x"] * 101)

    async def test_invalid_address(self) -> None:
        with self.assertRaises(InvalidInput):
            await BalanceMonitor(FakeLedger()).check_many(["not-a-key"])


class PollTests(unittest.IsolatedAsyncioTestCase):
    async def test_poll_replaces_snapshots(self) -> None:
        first, second = agents(2)
        monitor = BalanceMonitor(FakeLedger(balances={first: 50_000_000, second: 0}))
        await monitor.poll([first])
        self.assertEqual(set(monitor.snapshots), {first})
        await monitor.poll([second])
        self.assertEqual(set(monitor.snapshots), {second})
        status = monitor.get_status()
        self.assertEqual((status["agents"], status["critical"], status["low"]), (1, 1, 0))
        self.assertGreater(status["last_poll"], 0)

    async def test_alerts_for_unhealthy_only(self) -> None:
        addrs = agents(3)
        monitor = BalanceMonitor(FakeLedger(balances={addrs[0]: 0, addrs[1]: 7_000_000, addrs[2]: 50_000_000}))
        alerts = []
        monitor.set_alert_callback(alerts.append)
        await monitor.poll(addrs)
        self.assertEqual([a.address for a in alerts], addrs[:2])

    async def test_failing_callback_does_not_break_poll(self) -> None:
        [addr] = agents(1)
        monitor = BalanceMonitor(FakeLedger(balances={addr: 0}))

        def boom(_snap):
            raise RuntimeError("pager down")

        monitor.set_alert_callback(boom)
        snaps = await monitor.poll([addr])
        self.assertIn(addr, snaps)

    async def test_run_stops_on_event(self) -> None:
        [addr] = agents(1)
        ledger = FakeLedger(balances={addr: 50_000_000})
        monitor = BalanceMonitor(ledger)
        stop = asyncio.Event()
        task = asyncio.create_task(monitor.run(lambda: [addr], stop, interval=0.01))
        for _ in range(100):
            if len(ledger.batch_calls) >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        self.assertGreaterEqual(len(ledger.batch_calls), 2)

    async def test_run_survives_unexpected_poll_error(self) -> None:
        [addr] = agents(1)
        ledger = FakeLedger(batch_error=RuntimeError("reply had no value field"))
        monitor = BalanceMonitor(ledger)
        stop = asyncio.Event()
        task = asyncio.create_task(monitor.run(lambda: [addr], stop, interval=0.01))
        for _ in range(100):
            if len(ledger.batch_calls) >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        self.assertGreaterEqual(len(ledger.batch_calls), 2)
        self.assertTrue(monitor.last_error.startswith("RuntimeError"))

    async def test_run_survives_bad_agent_list(self) -> None:
        monitor = BalanceMonitor(FakeLedger())
        stop = asyncio.Event()
        calls = []

        def addresses():
            calls.append(1)
            if len(calls) >= 2:
                stop.set()
            return ["not-a-key"]

        await asyncio.wait_for(monitor.run(addresses, stop, interval=0.01), timeout=1)
        self.assertEqual(len(calls), 2)
        self.assertTrue(monitor.last_error)


if __name__ == "__main__":
    unittest.main()
