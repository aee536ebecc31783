# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the escrow marketplace (FastAPI).

Endpoints for escrow lifecycle (create, confirm, dispute, cancel), the
dispute engine (evidence, jurors, votes), reputation queries and the
juror registry.

Every response uses one envelope:
    {"success": true, "data": ..., "message"?: ..., "pagination"?: ...}
    {"success": false, "error": {"code": ..., "message": ...}}
"""

import logging
from typing import Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from protocol import (
    API_VERSION, DEFAULT_PAGE_LIMIT, DEFAULT_LEADERBOARD_LIMIT, DEFAULT_ACTIVITY_LIMIT,
)
from server.config import Settings
from server.disputes import DisputeManager
from server.errors import MarketError
from server.escrow import EscrowManager
from server.jurors import JurorRegistry
from server.reputation import ReputationManager
from server.store import Database

logger = logging.getLogger(__name__)

Amount = Union[str, int, float]


# --- Request models ---

class CreateEscrowRequest(BaseModel):
    buyer: str
    seller: str
    amount: Amount
    terms_hash: str
    arbitrator: Optional[str] = None
    token_address: Optional[str] = None

class PartyRequest(BaseModel):
    user: str

class OpenDisputeRequest(BaseModel):
    user: str
    evidence_hash: str
    evidence_description: Optional[str] = None

class CancelEscrowRequest(BaseModel):
    user: str
    reason: Optional[str] = None

class EvidenceFile(BaseModel):
    name: str = ""
    hash: str
    size: Optional[int] = None
    type: Optional[str] = None

class Evidence(BaseModel):
    hash: str
    description: Optional[str] = None
    files: list[EvidenceFile] = []

class CreateDisputeRequest(BaseModel):
    escrow_id: int
    buyer: str
    seller: str
    evidence: Evidence
    actor: Optional[str] = None

class AddEvidenceRequest(BaseModel):
    files: list[EvidenceFile] = []
    description: Optional[str] = None
    actor: Optional[str] = None

class JurorAssignment(BaseModel):
    address: str
    stake: Amount

class AssignJurorsRequest(BaseModel):
    jurors: list[JurorAssignment]

class VoteRequest(BaseModel):
    juror: str
    vote: str

class CancelDisputeRequest(BaseModel):
    actor: str
    reason: Optional[str] = None

class AwardBadgeRequest(BaseModel):
    name: str
    description: str = ""
    category: str = "Special"

class ReputationUpdateRequest(BaseModel):
    action: str
    change: int
    reason: Optional[str] = None
    related_id: Optional[str] = None

class RegisterJurorRequest(BaseModel):
    address: str
    stake: Amount

class JurorAddressRequest(BaseModel):
    address: str


def envelope(data=None, message: str | None = None, pagination: dict | None = None) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def page(limit: int, offset: int, total: int) -> dict:
    return {"limit": limit, "offset": offset, "total": total}


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    reputation_mgr: ReputationManager | None = None,
    juror_registry: JurorRegistry | None = None,
    dispute_mgr: DisputeManager | None = None,
    escrow_mgr: EscrowManager | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Anything not supplied is built on one shared Database opened from
    settings.db_path.
    """
    _settings = settings or Settings()
    _db = database or Database(_settings.db_path)
    _reputation = reputation_mgr or ReputationManager(_db)
    _jurors = juror_registry or JurorRegistry(_db, _settings)
    _disputes = dispute_mgr or DisputeManager(_db, reputation=_reputation, jurors=_jurors, settings=_settings)
    _escrows = escrow_mgr or EscrowManager(_db, reputation=_reputation, disputes=_disputes, settings=_settings)

    app = FastAPI(title="Escrow Marketplace", version=API_VERSION)

    app.state.settings = _settings
    app.state.db = _db
    app.state.reputation = _reputation
    app.state.jurors = _jurors
    app.state.disputes = _disputes
    app.state.escrows = _escrows

    # --- Error mapping ---

    @app.exception_handler(MarketError)
    async def market_error_handler(request: Request, exc: MarketError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{where}: {first.get('msg', 'invalid value')}" if where else first.get("msg", "invalid value")
        else:
            message = "Invalid request"
        return error_response(400, "VALIDATION_ERROR", message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        return error_response(exc.status_code, code, str(exc.detail))

    @app.get("/health")
    async def health():
        return envelope({"status": "ok", "version": API_VERSION})

    # --- Escrows ---

    @app.get("/escrows")
    async def list_escrows(status: Optional[str] = None, user: Optional[str] = None,
                           limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0):
        items, total = _escrows.list(status=status, user=user, limit=limit, offset=offset)
        return envelope([e.to_dict() for e in items], pagination=page(limit, offset, total))

    @app.get("/escrows/stats/overview")
    async def escrow_stats():
        return envelope(_escrows.stats())

    @app.get("/escrows/{escrow_id}")
    async def get_escrow(escrow_id: int):
        return envelope(_escrows.require(escrow_id).to_dict())

    @app.post("/escrows", status_code=201)
    async def create_escrow(req: CreateEscrowRequest):
        escrow = _escrows.create(
            req.buyer, req.seller, req.amount, req.terms_hash,
            arbitrator=req.arbitrator, token_address=req.token_address,
        )
        return envelope(escrow.to_dict(), "Escrow created successfully")

    @app.post("/escrows/{escrow_id}/confirm")
    async def confirm_escrow(escrow_id: int, req: PartyRequest):
        escrow = _escrows.confirm(escrow_id, req.user)
        return envelope(escrow.to_dict(), "Completion confirmed")

    @app.post("/escrows/{escrow_id}/dispute", status_code=201)
    async def dispute_escrow(escrow_id: int, req: OpenDisputeRequest):
        escrow, dispute = _escrows.open_dispute(escrow_id, req.user, req.evidence_hash, req.evidence_description)
        return envelope({"escrow": escrow.to_dict(), "dispute": dispute.to_dict()}, "Dispute created successfully")

    @app.post("/escrows/{escrow_id}/cancel")
    async def cancel_escrow(escrow_id: int, req: CancelEscrowRequest):
        escrow = _escrows.cancel(escrow_id, req.user, req.reason)
        return envelope(escrow.to_dict(), "Escrow cancelled")

    # --- Disputes ---

    @app.get("/disputes")
    async def list_disputes(status: Optional[str] = None, participant: Optional[str] = None,
                            limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0):
        items, total = _disputes.list(status=status, participant=participant, limit=limit, offset=offset)
        return envelope([d.to_dict() for d in items], pagination=page(limit, offset, total))

    @app.get("/disputes/stats/overview")
    async def dispute_stats():
        return envelope(_disputes.get_stats())

    @app.get("/disputes/{dispute_id}")
    async def get_dispute(dispute_id: int):
        return envelope(_disputes.require(dispute_id).to_dict())

    @app.post("/disputes", status_code=201)
    async def create_dispute(req: CreateDisputeRequest):
        evidence = req.evidence.model_dump(exclude_none=True)
        dispute = _disputes.create(req.escrow_id, req.buyer, req.seller, evidence, actor=req.actor)
        return envelope(dispute.to_dict(), "Dispute created successfully")

    @app.post("/disputes/{dispute_id}/evidence")
    async def add_evidence(dispute_id: int, req: AddEvidenceRequest):
        files = [f.model_dump(exclude_none=True) for f in req.files]
        dispute = _disputes.add_evidence(dispute_id, files, req.description, actor=req.actor)
        return envelope(dispute.to_dict(), "Evidence added")

    @app.post("/disputes/{dispute_id}/jurors")
    async def assign_jurors(dispute_id: int, req: AssignJurorsRequest):
        dispute = _disputes.assign_jurors(dispute_id, [j.model_dump() for j in req.jurors])
        return envelope(dispute.to_dict(), "Jurors assigned")

    @app.post("/disputes/{dispute_id}/vote")
    async def cast_vote(dispute_id: int, req: VoteRequest):
        dispute = _disputes.cast_vote(dispute_id, req.juror, req.vote)
        return envelope(dispute.to_dict(), "Vote cast")

    @app.post("/disputes/{dispute_id}/cancel")
    async def cancel_dispute(dispute_id: int, req: CancelDisputeRequest):
        dispute = _disputes.cancel(dispute_id, req.actor, req.reason)
        return envelope(dispute.to_dict(), "Dispute cancelled")

    # --- Reputation (fixed paths before /{address}) ---

    @app.get("/reputation/leaderboard/top")
    async def leaderboard(limit: int = DEFAULT_LEADERBOARD_LIMIT, offset: int = 0):
        return envelope(_reputation.leaderboard(limit, offset))

    @app.get("/reputation/stats/overview")
    async def reputation_stats():
        return envelope(_reputation.stats())

    @app.get("/reputation/activity/recent")
    async def recent_activity(limit: int = DEFAULT_ACTIVITY_LIMIT, offset: int = 0):
        return envelope(_reputation.recent_activity(limit, offset))

    @app.get("/reputation/tier/{tier}")
    async def reputation_by_tier(tier: str, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0):
        items, total = _reputation.by_tier(tier, limit, offset)
        return envelope([r.to_dict() for r in items], pagination=page(limit, offset, total))

    @app.get("/reputation/{address}")
    async def get_reputation(address: str):
        return envelope(_reputation.require(address).to_dict())

    @app.get("/reputation/{address}/history")
    async def reputation_history(address: str, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0):
        entries, total = _reputation.history(address, limit, offset)
        return envelope(entries, pagination=page(limit, offset, total))

    @app.get("/reputation/{address}/badges")
    async def reputation_badges(address: str):
        return envelope(_reputation.badges(address))

    @app.post("/reputation/{address}/badges")
    async def award_badge(address: str, req: AwardBadgeRequest):
        rep, awarded = _reputation.award_badge(address, req.name, req.description, req.category)
        message = "Badge awarded" if awarded else "Badge already held"
        return envelope({"reputation": rep.to_dict(), "awarded": awarded}, message)

    @app.post("/reputation/{address}/badges/auto")
    async def auto_award_badges(address: str):
        _reputation.require(address)
        awarded = _reputation.auto_award_badges(address)
        return envelope(
            {"awarded": awarded, "reputation": _reputation.require(address).to_dict()},
            f"{len(awarded)} badge(s) awarded",
        )

    @app.post("/reputation/{address}/update")
    async def update_reputation(address: str, req: ReputationUpdateRequest):
        rep = _reputation.apply_update(address, req.action, req.change, req.reason, req.related_id)
        return envelope(rep.to_dict(), "Reputation updated")

    # --- Jurors (fixed paths before /{address}) ---

    @app.get("/jurors")
    async def active_jurors(limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0):
        items, total = _jurors.active(limit, offset)
        return envelope([j.to_dict() for j in items], pagination=page(limit, offset, total))

    @app.get("/jurors/top")
    async def top_jurors(limit: int = DEFAULT_LEADERBOARD_LIMIT, offset: int = 0):
        return envelope([j.to_dict() for j in _jurors.top(limit, offset)])

    @app.get("/jurors/stats/overview")
    async def juror_stats():
        return envelope(_jurors.stats())

    @app.get("/jurors/{address}")
    async def get_juror(address: str):
        return envelope(_jurors.require(address).to_dict())

    @app.post("/jurors/register", status_code=201)
    async def register_juror(req: RegisterJurorRequest):
        juror = _jurors.register(req.address, req.stake)
        return envelope(juror.to_dict(), "Juror registered successfully")

    @app.post("/jurors/unregister")
    async def unregister_juror(req: JurorAddressRequest):
        juror = _jurors.unregister(req.address)
        return envelope(juror.to_dict(), "Juror unregistered")

    @app.put("/jurors/stake")
    async def update_stake(req: RegisterJurorRequest):
        juror = _jurors.update_stake(req.address, req.stake)
        return envelope(juror.to_dict(), "Stake updated")

    return app
