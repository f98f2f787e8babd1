"""
Aegis Operator API - FastAPI

Endpoints:
- GET  /health                                  Heartbeat + monitor freshness
- GET  /vaults/derive?owner=&nonce=             Vault / custody / treasury PDAs
- GET  /vaults/{vault}/overrides/{seq}/address  Pending-override PDA
- POST /vaults/health                           Health report for posted inputs
- GET  /agents/balances                         Latest monitor snapshots
- POST /agents/balances                         On-demand batched balance check
- GET  /explorer/tx/{signature}                 Explorer link for the configured network

Read-only: nothing here signs or broadcasts. Override approval needs the
owner's wallet and runs client-side through aegis.orchestrator.
"""

import os
import time
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from aegis.config import PROTOCOL, Settings, explorer_tx_url
from aegis.errors import InvalidInput
from aegis.health import VaultHealthInputs, calculate_vault_health
from aegis.monitor import BalanceMonitor
from aegis.pdas import VaultIdentity, derive_pending_override_address, derive_treasury_address

logger = logging.getLogger("aegis.api")


# ============================================================
# MODELS
# ============================================================

class DerivedAddressesResponse(BaseModel):
    owner: str
    nonce: str
    vault_address: str
    vault_bump: int
    vault_custody_address: str
    custody_bump: int
    treasury_address: str
    treasury_bump: int
    program_id: str


class OverrideAddressResponse(BaseModel):
    vault: str
    override_nonce: str
    address: str
    bump: int


class HealthRequest(BaseModel):
    vault_balance: int = Field(..., ge=0)
    agent_balance: int = Field(..., ge=0)
    daily_limit: int = Field(0, ge=0)
    daily_spent: int = Field(0, ge=0)
    is_paused: bool = False
    last_activity: Optional[float] = None
    total_transactions: int = Field(0, ge=0)
    successful_transactions: int = Field(0, ge=0)
    blocked_transactions: int = Field(0, ge=0)
    has_whitelist: bool = False
    whitelist_count: int = Field(0, ge=0)
    has_agent_signer: bool = True


class HealthResponse(BaseModel):
    score: int
    status: str
    issues: list[str]
    warnings: list[str]
    recommendations: list[str]


class BalancesRequest(BaseModel):
    addresses: list[str] = Field(..., min_length=1, max_length=100)


class BalanceSnapshotModel(BaseModel):
    address: str
    lamports: int
    sol: float
    tier: str
    estimated_ops_remaining: int
    fetched: bool


# ============================================================
# APP
# ============================================================

def create_app(settings: Settings, monitor: BalanceMonitor) -> FastAPI:
    """
    Create the operator API.

    monitor: BalanceMonitor whose snapshots GET /agents/balances serves.
             The polling loop itself is started by main.py's lifespan.
    """
    app = FastAPI(
        title="aegis - vault guardian",
        description="Vault addressing, agent balance monitoring and vault health.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    started_at = time.time()

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        status = monitor.get_status()
        last_poll = status["last_poll"]
        return {
            "alive": True,
            "network": settings.network,
            "program_id": settings.program_id,
            "protocol": asdict(PROTOCOL),
            "uptime_seconds": round(time.time() - started_at, 1),
            "monitor": {
                **status,
                "snapshot_age_seconds": round(time.time() - last_poll, 1) if last_poll else None,
            },
        }

    @app.get("/vaults/derive", response_model=DerivedAddressesResponse)
    async def derive(owner: str = Query(..., max_length=64), nonce: str = Query(..., max_length=20)):
        try:
            identity = VaultIdentity.derive(owner, _parse_u64(nonce, "nonce"), settings.program_id)
            treasury, treasury_bump = derive_treasury_address(settings.program_id)
        except InvalidInput as e:
            raise HTTPException(400, str(e))
        return DerivedAddressesResponse(
            **identity.to_dict(),
            treasury_address=str(treasury),
            treasury_bump=treasury_bump,
            program_id=settings.program_id,
        )

    @app.get("/vaults/{vault}/overrides/{override_nonce}/address", response_model=OverrideAddressResponse)
    async def override_address(vault: str, override_nonce: str):
        try:
            address, bump = derive_pending_override_address(
                vault, _parse_u64(override_nonce, "override_nonce"), settings.program_id,
            )
        except InvalidInput as e:
            raise HTTPException(400, str(e))
        return OverrideAddressResponse(
            vault=vault, override_nonce=override_nonce, address=str(address), bump=bump,
        )

    @app.post("/vaults/health", response_model=HealthResponse)
    async def vault_health(req: HealthRequest):
        try:
            report = calculate_vault_health(VaultHealthInputs(**req.model_dump()))
        except InvalidInput as e:
            raise HTTPException(400, str(e))
        return HealthResponse(**report.to_dict())

    @app.get("/agents/balances", response_model=list[BalanceSnapshotModel])
    async def agent_balances():
        return [BalanceSnapshotModel(**s.to_dict()) for s in monitor.snapshots.values()]

    @app.post("/agents/balances", response_model=list[BalanceSnapshotModel])
    async def check_agent_balances(req: BalancesRequest):
        try:
            snapshots = await monitor.check_many(req.addresses)
        except InvalidInput as e:
            raise HTTPException(400, str(e))
        return [BalanceSnapshotModel(**s.to_dict()) for s in snapshots]

    @app.get("/explorer/tx/{signature}")
    async def explorer_link(signature: str):
        return {"url": explorer_tx_url(signature, settings.network)}

    return app


def _parse_u64(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidInput(f"{name} must be an integer, got {raw!r}") from e
