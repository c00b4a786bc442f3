"""API routes: all REST endpoints for the CropAdvisor backend."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile

from cropadvisor.agents.analysis_agent import AnalysisAgent
from cropadvisor.config import settings
from cropadvisor.schemas.analysis import AnalysisRecord, DiagnosisResult, PriceResponse
from cropadvisor.services.payment import normalize_owner
from cropadvisor.services.uploads import StagedUpload, stage_upload

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies: handles are built in main.lifespan and kept on app.state
# ---------------------------------------------------------------------------

def get_agent(request: Request) -> AnalysisAgent:
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="Services not ready. Set CROPADVISOR_MOCK_MODELS=true for dev mode or wait for startup.",
        )
    return agent


def _stage(image: UploadFile) -> StagedUpload:
    return stage_upload(
        image.file,
        image.filename,
        image.content_type,
        settings.UPLOAD_DIR,
        settings.MAX_UPLOAD_BYTES,
    )


# ---------------------------------------------------------------------------
# Analysis endpoints
# ---------------------------------------------------------------------------

@router.post("/analyze", response_model=DiagnosisResult)
def analyze_image(
    image: UploadFile = File(...),
    analysis_id: str = Form(..., alias="analysisId"),
    tx_hash: str | None = Form(None, alias="txHash"),
    agent: AnalysisAgent = Depends(get_agent),
) -> DiagnosisResult:
    """Analyze an image the client paid for on-chain under ``analysisId``."""
    upload = _stage(image)
    return agent.analyze_upload(analysis_id, upload, tx_hash=tx_hash)


@router.post("/analyses", response_model=AnalysisRecord, status_code=201)
def pay_and_analyze(
    image: UploadFile = File(...),
    owner: str = Form(...),
    agent: AnalysisAgent = Depends(get_agent),
) -> AnalysisRecord:
    """Pay from ``owner`` through the backend's ledger connection, then analyze."""
    upload = _stage(image)
    return agent.submit(owner, upload)


@router.get("/analyses/{owner}", response_model=list[AnalysisRecord])
def list_owner_analyses(owner: str, agent: AnalysisAgent = Depends(get_agent)) -> list[AnalysisRecord]:
    return list(agent.store.iter_by_owner(normalize_owner(owner)))


@router.get("/price", response_model=PriceResponse)
def get_price(agent: AnalysisAgent = Depends(get_agent)) -> dict[str, Any]:
    return {"price_wei": agent.payments.analysis_price()}
