import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from tiresync.db import get_session
from tiresync.models import SyncItem, SyncSession
from tiresync.schemas.sync import SyncRequest, SyncSessionDetailResponse, SyncSessionResponse
from tiresync.services.sync_orchestrator import SyncConfig, build_orchestrator

router = APIRouter()


@router.post("")
def run_sync(payload: SyncRequest, session: Session = Depends(get_session)) -> dict:
    """
    동기화를 실행하고 결과를 돌려줍니다.
    상품 단위 실패는 응답의 failed/errors로 보고되며 요청 자체는 성공합니다.
    """
    try:
        config = SyncConfig(
            mode=payload.mode,
            categories=payload.categories,
            dry_run=payload.dry_run,
            validate_first=payload.validate_first,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = build_orchestrator(session, config).run_sync(config)
    return asdict(result)


@router.get("/sessions", response_model=list[SyncSessionResponse])
def list_sync_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    stmt = select(SyncSession).order_by(SyncSession.started_at.desc()).limit(limit)
    return list(session.scalars(stmt).all())


@router.get("/sessions/{session_id}", response_model=SyncSessionDetailResponse)
def get_sync_session(
    session_id: uuid.UUID,
    status: str | None = Query(default=None),
    session: Session = Depends(get_session),
):
    sync_session = session.get(SyncSession, session_id)
    if not sync_session:
        raise HTTPException(status_code=404, detail="동기화 세션을 찾을 수 없습니다")

    stmt = select(SyncItem).where(SyncItem.session_id == session_id).order_by(SyncItem.id.asc())
    if status:
        stmt = stmt.where(SyncItem.status == status)
    return {"session": sync_session, "items": list(session.scalars(stmt).all())}
