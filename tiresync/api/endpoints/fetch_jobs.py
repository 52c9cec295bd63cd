from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from tiresync.db import get_session
from tiresync.enums import FetchJobStatus
from tiresync.schemas.fetch_job import FetchJobCreate, FetchJobProgressResponse, FetchJobResponse
from tiresync.services.fetch_jobs import FetchJobService, start_background_fetch_job
from tiresync.session_factory import session_factory
from tiresync.supplier_client import build_supplier_client

router = APIRouter()


@router.post("", response_model=FetchJobResponse, status_code=202)
def create_fetch_job(
    payload: FetchJobCreate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    """
    수집 작업을 생성하고 백그라운드에서 실행합니다.
    진행 중인 작업이 있으면 409를 돌려줍니다.
    """
    # 자격 증명 누락은 작업 생성 전에 503으로
    supplier = build_supplier_client()
    service = FetchJobService(session, supplier=supplier)
    try:
        job = service.create_job(payload.categories, payload.triggered_by)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    background_tasks.add_task(start_background_fetch_job, session_factory, lambda: supplier, job.id)
    return job


@router.get("", response_model=list[FetchJobResponse])
def list_fetch_jobs(
    limit: int = Query(default=10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    return FetchJobService(session).get_job_history(limit)


@router.get("/active", response_model=FetchJobResponse | None)
def get_active_fetch_job(session: Session = Depends(get_session)):
    return FetchJobService(session).get_active_job()


@router.get("/{job_id}", response_model=FetchJobProgressResponse)
def get_fetch_job(job_id: int, session: Session = Depends(get_session)):
    return asdict(FetchJobService(session).get_job_progress(job_id))


@router.post("/{job_id}/cancel", response_model=FetchJobResponse)
def cancel_fetch_job(job_id: int, session: Session = Depends(get_session)):
    return FetchJobService(session).cancel_job(job_id)


@router.post("/{job_id}/retry", response_model=FetchJobResponse, status_code=202)
def retry_fetch_job(
    job_id: int,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    service = FetchJobService(session)
    job = service.get_job(job_id)
    if job.status != FetchJobStatus.RATE_LIMITED.value:
        raise HTTPException(
            status_code=409,
            detail=f"rate_limited 상태의 작업만 재개할 수 있습니다 (현재: {job.status})",
        )
    supplier = build_supplier_client()
    background_tasks.add_task(start_background_fetch_job, session_factory, lambda: supplier, job.id, True)
    return job
