"""
Balance Monitor - Agent Gas Runway

Agents pay network fees from their own wallets. When an agent runs dry its
requests start failing, so we poll balances and classify each wallet:

    CRITICAL  balance < critical threshold
    LOW       balance < low threshold
    HEALTHY   otherwise

estimated_ops_remaining = balance // assumed_unit_cost

Batch failures are "unknown, assume worst": every requested address comes
back CRITICAL with zero lamports, never a partial or empty result.
Each poll replaces the previous snapshot set; nothing is merged.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from .config import MAX_MULTIPLE_ACCOUNTS, MONITOR_THRESHOLDS, MonitorThresholds, lamports_to_sol
from .errors import AegisError, InvalidInput
from .pdas import to_pubkey

logger = logging.getLogger("aegis.monitor")


class BalanceTier(Enum):
    HEALTHY = "healthy"
    LOW = "low"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AgentBalanceSnapshot:
    address: str
    lamports: int
    tier: BalanceTier
    estimated_ops_remaining: int
    fetched: bool = True          # False when the node call failed and we assumed the worst

    @property
    def sol(self) -> float:
        return lamports_to_sol(self.lamports)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "lamports": self.lamports,
            "sol": self.sol,
            "tier": self.tier.value,
            "estimated_ops_remaining": self.estimated_ops_remaining,
            "fetched": self.fetched,
        }


def classify_balance(address: str, lamports: int,
                     thresholds: MonitorThresholds = MONITOR_THRESHOLDS) -> AgentBalanceSnapshot:
    if lamports < thresholds.critical_balance_threshold:
        tier = BalanceTier.CRITICAL
    elif lamports < thresholds.low_balance_threshold:
        tier = BalanceTier.LOW
    else:
        tier = BalanceTier.HEALTHY
    return AgentBalanceSnapshot(
        address=address,
        lamports=lamports,
        tier=tier,
        estimated_ops_remaining=max(0, lamports) // thresholds.assumed_unit_cost,
    )


def unknown_balance(address: str) -> AgentBalanceSnapshot:
    return AgentBalanceSnapshot(
        address=address, lamports=0, tier=BalanceTier.CRITICAL,
        estimated_ops_remaining=0, fetched=False,
    )


class BalanceMonitor:
    """
    Polls agent wallet balances on a fixed cadence.

    Usage:
        monitor = BalanceMonitor(ledger)
        stop = asyncio.Event()
        task = asyncio.create_task(monitor.run(lambda: agents, stop))
        ...
        stop.set(); await task
    """

    def __init__(self, ledger, thresholds: MonitorThresholds = MONITOR_THRESHOLDS):
        self._ledger = ledger
        self.thresholds = thresholds
        self.snapshots: dict[str, AgentBalanceSnapshot] = {}
        self.last_poll: float = 0.0
        self.last_error: str = ""
        self._on_alert: Optional[Callable[[AgentBalanceSnapshot], None]] = None

    def set_alert_callback(self, fn: Callable[[AgentBalanceSnapshot], None]) -> None:
        """Called once per LOW/CRITICAL snapshot on every poll."""
        self._on_alert = fn

    async def check(self, address: str) -> AgentBalanceSnapshot:
        """Single-address query. Node failures propagate (NodeUnavailable)."""
        addr = str(to_pubkey(address, "agent address"))
        lamports = await self._ledger.get_balance(addr)
        return classify_balance(addr, lamports, self.thresholds)

    async def check_many(self, addresses: Sequence[str]) -> list[AgentBalanceSnapshot]:
        """One combined node request. Results follow input order."""
        if len(addresses) > MAX_MULTIPLE_ACCOUNTS:
            raise InvalidInput(f"at most {MAX_MULTIPLE_ACCOUNTS} addresses per batch, got {len(addresses)}")
        addrs = [str(to_pubkey(a, "agent address")) for a in addresses]
        if not addrs:
            return []
        try:
            balances = await self._ledger.get_multiple_balances(addrs)
        except AegisError as e:
            logger.warning(f"Batch balance fetch failed for {len(addrs)} agents, assuming critical: {e}")
            self.last_error = str(e)
            return [unknown_balance(a) for a in addrs]
        return [classify_balance(a, lamports, self.thresholds) for a, lamports in zip(addrs, balances)]

    async def poll(self, addresses: Sequence[str]) -> dict[str, AgentBalanceSnapshot]:
        snapshots = await self.check_many(addresses)
        self.snapshots = {s.address: s for s in snapshots}
        self.last_poll = time.time()

        for snap in snapshots:
            if snap.tier is BalanceTier.HEALTHY:
                continue
            log_fn = logger.error if snap.tier is BalanceTier.CRITICAL else logger.warning
            log_fn(
                f"Agent {snap.address[:8]}... {snap.tier.value.upper()}: "
                f"{snap.sol:.6f} SOL (~{snap.estimated_ops_remaining} ops left)"
                + ("" if snap.fetched else " [balance unknown]")
            )
            if self._on_alert:
                try:
                    self._on_alert(snap)
                except Exception as e:
                    logger.warning(f"Balance alert callback failed: {e}")
        return self.snapshots

    async def run(self, addresses_fn: Callable[[], Sequence[str]], stop: asyncio.Event,
                  interval: Optional[float] = None) -> None:
        """Poll until `stop` is set. Sleeps are interrupted by stop."""
        interval = self.thresholds.poll_interval_seconds if interval is None else interval
        logger.info(f"Balance monitor started (every {interval:.0f}s)")
        while not stop.is_set():
            try:
                await self.poll(list(addresses_fn()))
            except InvalidInput as e:
                logger.error(f"Balance monitor: bad agent list, skipping poll: {e}")
                self.last_error = str(e)
            except Exception as e:
                logger.error(f"Balance monitor poll failed, retrying next interval: {type(e).__name__}: {e}")
                self.last_error = f"{type(e).__name__}: {e}"
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Balance monitor stopped")

    def get_status(self) -> dict:
        return {
            "agents": len(self.snapshots),
            "critical": sum(1 for s in self.snapshots.values() if s.tier is BalanceTier.CRITICAL),
            "low": sum(1 for s in self.snapshots.values() if s.tier is BalanceTier.LOW),
            "last_poll": self.last_poll,
            "last_error": self.last_error,
        }
