"""
aegis - main entry point

Initializes the ledger client and balance monitor, wires the operator API,
starts the polling loop, serves.

Usage:
    python main.py              # Start the operator API
    LOG_LEVEL=DEBUG python main.py
"""

import os
import re
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact secret keys (base58 64-byte keys, JSON byte arrays) from all log output."""
    _PATTERNS = (
        re.compile(r'(?<![1-9A-HJ-NP-Za-km-z])[1-9A-HJ-NP-Za-km-z]{86,88}(?![1-9A-HJ-NP-Za-km-z])'),
        re.compile(r'\[\s*(?:\d{1,3}\s*,\s*){63}\d{1,3}\s*\]'),
    )

    def _mask(self, text: str) -> str:
        for pattern in self._PATTERNS:
            text = pattern.sub('[REDACTED]', text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
                masked = self._mask(formatted)
                if masked != formatted:
                    record.msg = masked
                    record.args = None
            except (TypeError, ValueError):
                pass
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("aegis.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from aegis.config import MONITOR_THRESHOLDS, Settings
from aegis.ledger import LedgerClient
from aegis.monitor import BalanceMonitor
from api.server import create_app


# ============================================================
# GLOBALS (singleton instances)
# ============================================================

settings = Settings.from_env()
ledger = LedgerClient(
    settings.rpc_url,
    timeout_seconds=settings.request_timeout_seconds,
    poll_interval=settings.confirm_poll_seconds,
)
monitor = BalanceMonitor(ledger, MONITOR_THRESHOLDS)


def _agent_addresses() -> list[str]:
    """Comma-separated MONITOR_AGENT_ADDRESSES."""
    raw = os.getenv("MONITOR_AGENT_ADDRESSES", "")
    return [a.strip() for a in raw.split(",") if a.strip()]


@asynccontextmanager
async def lifespan(app):
    logger.info(f"aegis starting | network={settings.network} | program={settings.program_id}")
    logger.info(f"RPC: {settings.rpc_url} | backend: {settings.backend_url}")

    stop = asyncio.Event()
    interval = float(os.getenv("MONITOR_INTERVAL_SECONDS", str(MONITOR_THRESHOLDS.poll_interval_seconds)))
    monitor_task = None
    if _agent_addresses():
        monitor_task = asyncio.create_task(monitor.run(_agent_addresses, stop, interval))
    else:
        logger.warning("No MONITOR_AGENT_ADDRESSES set, balance monitor idle")

    yield

    logger.info("aegis shutting down...")
    stop.set()
    if monitor_task is not None:
        await monitor_task
    await ledger.close()
    logger.info("Goodbye.")


def create_aegis_app():
    """Create the fully wired FastAPI app."""
    app = create_app(settings=settings, monitor=monitor)
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_aegis_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
