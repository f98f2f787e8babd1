"""
Vault Health Scoring

One 0-100 number plus categorized findings, from point-in-time inputs.
Pure: no I/O, no clock unless `now` is omitted. Recomputed from scratch on
every call.

Weighted deductions from 100, clamped to [0, 100]:
- Vault balance      zero -20 (issue) | < 0.1 SOL -10
- Agent signer       absent -15 (issue)
- Agent gas          < critical -20 (issue) | < low -10
- Paused             -15
- Inactivity         > 7 days -15 | > 3 days -5
- No transactions    -10
- Success rate       < 50% -15 (issue) | < 70% -10 | < 90% -5
- Daily utilization  > 95% -10 | > 80% -5 (skipped when daily_limit is 0)
- Whitelist          absent -3 | enabled but empty -2

Rows are independent. Tiered rows apply only the worst matching tier.
Every row is monotonic except utilization: a zero daily_limit means no
limit is configured, so lowering a limit to 0 drops that row even when
something was spent today.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .config import HEALTH_THRESHOLDS, PROTOCOL, HealthThresholds, lamports_to_sol
from .errors import InvalidInput


class HealthStatus(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


# (min_score, status), checked top-down
STATUS_TIERS = (
    (90, HealthStatus.EXCELLENT),
    (75, HealthStatus.GOOD),
    (50, HealthStatus.FAIR),
    (25, HealthStatus.POOR),
)


@dataclass(frozen=True)
class VaultHealthInputs:
    vault_balance: int                 # lamports held by the vault custody account
    agent_balance: int                 # lamports in the agent signer wallet
    daily_limit: int                   # lamports
    daily_spent: int                   # lamports
    is_paused: bool = False
    last_activity: Optional[float] = None   # unix seconds
    total_transactions: int = 0
    successful_transactions: int = 0
    blocked_transactions: int = 0
    has_whitelist: bool = False
    whitelist_count: int = 0
    has_agent_signer: bool = True

    def validate(self) -> None:
        for name in ("vault_balance", "agent_balance", "daily_limit", "daily_spent",
                     "total_transactions", "successful_transactions", "blocked_transactions",
                     "whitelist_count"):
            if getattr(self, name) < 0:
                raise InvalidInput(f"{name} must not be negative")
        if self.successful_transactions > self.total_transactions:
            raise InvalidInput("successful_transactions cannot exceed total_transactions")
        if self.whitelist_count > PROTOCOL.MAX_WHITELIST_SIZE:
            raise InvalidInput(f"whitelist holds at most {PROTOCOL.MAX_WHITELIST_SIZE} entries")


@dataclass
class VaultHealthReport:
    score: int
    status: HealthStatus
    issues: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "status": self.status.value,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
        }


def status_for_score(score: int) -> HealthStatus:
    for floor, status in STATUS_TIERS:
        if score >= floor:
            return status
    return HealthStatus.CRITICAL


def calculate_vault_health(inputs: VaultHealthInputs, now: Optional[float] = None,
                           thresholds: HealthThresholds = HEALTH_THRESHOLDS) -> VaultHealthReport:
    inputs.validate()
    now = time.time() if now is None else now
    gas = thresholds.monitor

    issues: list[str] = []
    warnings: list[str] = []
    recommendations: list[str] = []
    score = 100

    # Vault balance
    if inputs.vault_balance == 0:
        score -= 20
        issues.append("Vault has zero balance")
        recommendations.append("Fund your vault to enable transactions")
    elif inputs.vault_balance < thresholds.low_vault_balance:
        score -= 10
        warnings.append(f"Vault balance is low ({lamports_to_sol(inputs.vault_balance):.4f} SOL)")
        recommendations.append("Consider adding more funds to avoid running out")

    # Agent signer + gas
    if not inputs.has_agent_signer:
        score -= 15
        issues.append("No agent signer configured")
        recommendations.append("Assign an agent signer so the vault can act autonomously")

    if inputs.agent_balance < gas.critical_balance_threshold:
        score -= 20
        issues.append("Agent wallet critically low on gas")
        recommendations.append("Fund agent wallet immediately to avoid transaction failures")
    elif inputs.agent_balance < gas.low_balance_threshold:
        score -= 10
        warnings.append("Agent wallet running low on gas")
        recommendations.append("Top up agent wallet soon")

    if inputs.is_paused:
        score -= 15
        warnings.append("Vault is paused")
        recommendations.append("Resume vault to enable transactions")

    # Recency
    if inputs.last_activity is not None:
        idle = now - inputs.last_activity
        if idle > thresholds.stale_activity_seconds:
            score -= 15
            warnings.append("No activity in over a week")
        elif idle > thresholds.idle_activity_seconds:
            score -= 5
            warnings.append("No recent activity (3+ days)")

    if inputs.total_transactions == 0:
        score -= 10
        warnings.append("No transactions yet")
        recommendations.append("Test your vault with a small transaction")
    else:
        rate = inputs.successful_transactions / inputs.total_transactions
        pct = f"{rate * 100:.0f}%"
        if rate < 0.5:
            score -= 15
            issues.append(f"Low success rate ({pct})")
            recommendations.append("Review your daily limits and whitelist configuration")
        elif rate < 0.7:
            score -= 10
            warnings.append(f"Moderate success rate ({pct})")
        elif rate < 0.9:
            score -= 5
            warnings.append(f"Some blocked transactions ({pct} success)")

    if inputs.daily_limit > 0:
        utilization = inputs.daily_spent / inputs.daily_limit
        if utilization > 0.95:
            score -= 10
            warnings.append("Daily limit nearly exhausted")
            recommendations.append("Consider increasing daily limit or wait for reset")
        elif utilization > 0.8:
            score -= 5
            warnings.append("Daily limit over 80% used")

    if not inputs.has_whitelist:
        score -= 3
        warnings.append("No whitelist configured (lower security)")
        recommendations.append("Enable whitelist for additional security")
    elif inputs.whitelist_count == 0:
        score -= 2
        warnings.append("Whitelist enabled but empty")

    score = max(0, min(100, score))
    return VaultHealthReport(
        score=score,
        status=status_for_score(score),
        issues=issues,
        warnings=warnings,
        recommendations=recommendations,
    )
