"""
공급사 카탈로그 수집(Fetch Job) 컨트롤러.

상태 머신: pending → running → {completed | failed | cancelled}, running ⇄ rate_limited.
completed_categories를 재개 커서로 사용하여, 재시작/재개 시 첫 미완료 카테고리부터 다시 시작합니다.
카테고리 내부 페이지 위치는 저장하지 않으므로 재개 시 해당 카테고리는 1페이지부터 다시 수집합니다.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from tiresync.enums import (
    ACTIVE_JOB_STATUSES,
    ALL_CATEGORIES,
    FetchJobStatus,
    ProductCategory,
    TriggeredBy,
)
from tiresync.exceptions import (
    ConcurrencyConflict,
    ConfigurationError,
    InvalidJobTransition,
    NotFoundError,
    RateLimited,
)
from tiresync.models import FetchJob
from tiresync.services.supplier_products import SupplierProductRepository, UpsertResult
from tiresync.settings import settings
from tiresync.supplier_client import SupplierPage
from tiresync.utils import ensure_aware, utcnow

logger = logging.getLogger(__name__)

WAIT_SECONDS_PATTERN = re.compile(r"(\d+)\s*(?:seconds?|secs?|s)\b", re.IGNORECASE)
CANCELLED_MESSAGE = "cancelled by user"

# 같은 프로세스 안에서 create_job의 확인-후-삽입이 겹치지 않도록 함
_create_lock = threading.Lock()


class SupplierFeed(Protocol):
    def fetch_page(self, category: str, page: int, page_size: int) -> SupplierPage: ...


@dataclass
class FetchJobProgress:
    job_id: int
    status: str
    categories: list[str]
    total_categories: int
    completed_categories: int
    current_category: str | None
    progress_percent: int
    products_fetched: int
    products_created: int
    products_updated: int
    products_unchanged: int
    products_failed: int
    retry_count: int
    max_retries: int
    retry_after: Any
    seconds_until_retry: int | None
    rate_limit_category: str | None
    error_message: str | None
    started_at: Any
    finished_at: Any


def extract_wait_seconds(message: str | None, default: int = 60) -> int:
    """'retry after 30 seconds' 형태의 메시지에서 대기 시간을 추출합니다."""
    if not message:
        return default
    match = WAIT_SECONDS_PATTERN.search(message)
    return int(match.group(1)) if match else default


class _JobCancelled(Exception):
    pass


class FetchJobService:
    def __init__(
        self,
        session: Session,
        supplier: SupplierFeed | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        max_retries: int | None = None,
        default_wait_seconds: int | None = None,
    ):
        self.session = session
        self.supplier = supplier
        self.page_size = page_size or settings.supplier_page_size
        self.max_pages = max_pages or settings.fetch_max_pages
        self.max_retries = settings.fetch_max_retries if max_retries is None else max_retries
        self.default_wait_seconds = default_wait_seconds or settings.fetch_default_wait_seconds
        self.repository = SupplierProductRepository(session)
        # 이 컨트롤러 인스턴스가 처리 중인 작업이 있는지
        self._processing = threading.Lock()

    @property
    def is_processing(self) -> bool:
        return self._processing.locked()

    # ------------------------------------------------------------------
    # 생성 / 조회
    # ------------------------------------------------------------------

    def get_active_job(self) -> FetchJob | None:
        stmt = (
            select(FetchJob)
            .where(FetchJob.status.in_([s.value for s in ACTIVE_JOB_STATUSES]))
            .order_by(FetchJob.id.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def create_job(
        self,
        categories: list[str] | None = None,
        triggered_by: TriggeredBy | str = TriggeredBy.MANUAL,
    ) -> FetchJob:
        """
        새 수집 작업을 pending 상태로 생성합니다.

        활성 작업(pending/running/rate_limited)이 있으면 ConcurrencyConflict를 던지고 아무것도 만들지 않습니다.
        """
        resolved = [ProductCategory.parse(c).value for c in (categories or [c.value for c in ALL_CATEGORIES])]
        # 순서를 유지하며 중복 제거
        resolved = list(dict.fromkeys(resolved))
        triggered = TriggeredBy(triggered_by).value

        with _create_lock:
            active = self.get_active_job()
            if active is not None:
                raise ConcurrencyConflict(
                    f"이미 진행 중인 수집 작업이 있습니다 (job_id={active.id}, status={active.status})",
                    active_job_id=active.id,
                )
            job = FetchJob(
                job_type="full_fetch" if len(resolved) == len(ALL_CATEGORIES) else "category_fetch",
                status=FetchJobStatus.PENDING.value,
                categories=resolved,
                total_categories=len(resolved),
                completed_categories=0,
                max_retries=self.max_retries,
                triggered_by=triggered,
                last_activity_at=utcnow(),
            )
            self.session.add(job)
            self.session.commit()

        logger.info(f"[FETCH] Job {job.id} 생성: categories={resolved}, triggered_by={triggered}")
        return job

    def get_job(self, job_id: int) -> FetchJob:
        job = self.session.get(FetchJob, job_id)
        if job is None:
            raise NotFoundError(f"수집 작업을 찾을 수 없습니다: {job_id}", job_id=job_id)
        return job

    def get_job_history(self, limit: int = 10) -> list[FetchJob]:
        stmt = select(FetchJob).order_by(FetchJob.id.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def get_job_progress(self, job_id: int) -> FetchJobProgress:
        job = self.get_job(job_id)
        percent = round(job.completed_categories / job.total_categories * 100) if job.total_categories else 0
        retry_after = ensure_aware(job.retry_after)
        seconds_until_retry = None
        if retry_after is not None and job.status == FetchJobStatus.RATE_LIMITED.value:
            seconds_until_retry = max(0, int((retry_after - utcnow()).total_seconds()))
        return FetchJobProgress(
            job_id=job.id,
            status=job.status,
            categories=list(job.categories or []),
            total_categories=job.total_categories,
            completed_categories=job.completed_categories,
            current_category=job.current_category,
            progress_percent=percent,
            products_fetched=job.products_fetched,
            products_created=job.products_created,
            products_updated=job.products_updated,
            products_unchanged=job.products_unchanged,
            products_failed=job.products_failed,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            retry_after=retry_after,
            seconds_until_retry=seconds_until_retry,
            rate_limit_category=job.rate_limit_category,
            error_message=job.error_message,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

    def check_retry_jobs(self) -> list[int]:
        """retry_after가 지난 rate_limited 작업 ID 목록."""
        now = utcnow()
        stmt = (
            select(FetchJob)
            .where(FetchJob.status == FetchJobStatus.RATE_LIMITED.value)
            .order_by(FetchJob.id.asc())
        )
        ready = []
        for job in self.session.scalars(stmt).all():
            retry_after = ensure_aware(job.retry_after)
            if retry_after is None or retry_after <= now:
                ready.append(job.id)
        return ready

    # ------------------------------------------------------------------
    # 제어
    # ------------------------------------------------------------------

    def cancel_job(self, job_id: int) -> FetchJob:
        job = self.get_job(job_id)
        self.session.refresh(job)
        job.transition_to(FetchJobStatus.CANCELLED)
        now = utcnow()
        job.finished_at = now
        job.last_activity_at = now
        job.error_message = CANCELLED_MESSAGE
        self.session.commit()
        logger.info(f"[FETCH] Job {job_id} 취소 요청 처리")
        return job

    def retry_job(self, job_id: int) -> FetchJob:
        """rate_limited 작업을 running으로 되돌리고 첫 미완료 카테고리부터 재개합니다."""
        job = self.get_job(job_id)
        self.session.refresh(job)
        if job.job_status != FetchJobStatus.RATE_LIMITED:
            raise InvalidJobTransition(job.status, FetchJobStatus.RUNNING.value, job_id=job_id)
        job.transition_to(FetchJobStatus.RUNNING)
        job.retry_after = None
        job.rate_limit_wait_seconds = None
        job.last_activity_at = utcnow()
        self.session.commit()
        logger.info(
            f"[FETCH] Job {job_id} 재개: {job.completed_categories}/{job.total_categories} 카테고리 완료 상태"
        )
        return self.process_job(job_id)

    def _current_status(self, job_id: int) -> FetchJobStatus:
        status = self.session.execute(select(FetchJob.status).where(FetchJob.id == job_id)).scalar_one()
        return FetchJobStatus(status)

    def _checkpoint(self, job: FetchJob) -> None:
        """페이지/카테고리 경계에서 외부 취소 여부를 확인합니다."""
        if self._current_status(job.id) == FetchJobStatus.CANCELLED:
            self.session.refresh(job)
            raise _JobCancelled()

    def _touch(self, job: FetchJob) -> None:
        job.last_activity_at = utcnow()
        self.session.commit()

    # ------------------------------------------------------------------
    # 처리
    # ------------------------------------------------------------------

    def process_job(self, job_id: int) -> FetchJob:
        """
        작업을 실행합니다. 같은 인스턴스에서 동시에 두 작업을 처리하지 않습니다.

        rate limit은 작업을 rate_limited로 일시정지시키고, 그 외 오류는 작업을 failed로 종료합니다.
        어떤 경우든 종료 상태에는 error_message와 finished_at이 기록됩니다.
        """
        if self.supplier is None:
            raise ConfigurationError("공급사 클라이언트가 설정되지 않았습니다", missing=["supplier"])

        if not self._processing.acquire(blocking=False):
            raise ConcurrencyConflict("이 컨트롤러는 이미 다른 작업을 처리 중입니다")
        try:
            return self._run(job_id)
        finally:
            self._processing.release()

    def _run(self, job_id: int) -> FetchJob:
        job = self.get_job(job_id)
        self.session.refresh(job)

        status = job.job_status
        if status.is_terminal:
            logger.warning(f"[FETCH] Job {job_id}는 이미 종료 상태({status.value})입니다.")
            return job
        if status != FetchJobStatus.RUNNING:
            # pending → running, rate_limited는 retry_job을 통해서만 재개
            if status == FetchJobStatus.RATE_LIMITED:
                raise InvalidJobTransition(status.value, FetchJobStatus.RUNNING.value, job_id=job_id)
            job.transition_to(FetchJobStatus.RUNNING)
        if job.started_at is None:
            job.started_at = utcnow()
        self._touch(job)

        categories: list[str] = list(job.categories or [])
        try:
            for index in range(job.completed_categories, len(categories)):
                category = categories[index]
                self._checkpoint(job)
                job.current_category = category
                self._touch(job)
                logger.info(f"[FETCH] Job {job_id}: {category} 수집 시작 ({index + 1}/{len(categories)})")

                self._fetch_category_products(job, category)

                job.completed_categories = index + 1
                job.current_category_page = 0
                self._touch(job)

            self._checkpoint(job)
            job.transition_to(FetchJobStatus.COMPLETED)
            job.current_category = None
            job.finished_at = utcnow()
            self._touch(job)
            logger.info(
                f"[FETCH] Job {job_id} 완료: 수집 {job.products_fetched}, 신규 {job.products_created}, "
                f"변경 {job.products_updated}, 동일 {job.products_unchanged}, 실패 {job.products_failed}"
            )
        except _JobCancelled:
            logger.info(f"[FETCH] Job {job_id} 취소됨 ({job.completed_categories}/{len(categories)})")
        except RateLimited as e:
            self._handle_rate_limit(job, e)
        except Exception as e:
            logger.exception(f"[FETCH] Job {job_id} 실패: {e}")
            self.session.rollback()
            self.session.refresh(job)
            if not job.job_status.is_terminal:
                job.transition_to(FetchJobStatus.FAILED)
                job.error_message = str(e) or e.__class__.__name__
                job.finished_at = utcnow()
                self._touch(job)
        return job

    def _handle_rate_limit(self, job: FetchJob, error: RateLimited) -> None:
        wait_seconds = error.wait_seconds or extract_wait_seconds(str(error), self.default_wait_seconds)
        self.session.refresh(job)
        if job.job_status.is_terminal:
            return
        job.retry_count += 1
        now = utcnow()
        if job.retry_count > job.max_retries:
            job.transition_to(FetchJobStatus.FAILED)
            job.error_message = f"Rate limit: max retries ({job.max_retries}) exceeded"
            job.finished_at = now
            logger.error(f"[FETCH] Job {job.id}: rate limit 재시도 한도 초과 ({job.max_retries})")
        else:
            job.transition_to(FetchJobStatus.RATE_LIMITED)
            job.retry_after = now + timedelta(seconds=wait_seconds)
            job.rate_limit_category = job.current_category
            job.rate_limit_wait_seconds = wait_seconds
            logger.warning(
                f"[FETCH] Job {job.id}: {job.current_category} 수집 중 rate limit, "
                f"{wait_seconds}초 후 재개 가능 (retry {job.retry_count}/{job.max_retries})"
            )
        job.last_activity_at = now
        self.session.commit()

    def _fetch_category_products(self, job: FetchJob, category: str) -> None:
        """
        카테고리를 1페이지부터 수집하며 페이지마다 카운터를 반영하고 커밋합니다.

        rate limit 후 재개되면 같은 카테고리를 1페이지부터 다시 읽습니다. 이미 집계한 페이지는
        신규/변경 건만 더하고 수집/동일/실패 건은 다시 세지 않습니다.
        """
        counted_pages = job.current_category_page or 0
        for page in range(1, self.max_pages + 1):
            self._checkpoint(job)
            supplier_page = self.supplier.fetch_page(category, page, self.page_size)
            batch = UpsertResult()
            if supplier_page.products:
                batch = self.repository.upsert_many(supplier_page.products, category, fetch_job_id=job.id)

            job.products_created += batch.created
            job.products_updated += batch.updated
            if page > counted_pages:
                job.products_fetched += len(supplier_page.products)
                job.products_unchanged += batch.unchanged
                job.products_failed += batch.failed
                job.current_category_page = page
            self._touch(job)
            if not supplier_page.has_more:
                break
        else:
            logger.warning(f"[FETCH] Job {job.id}: {category} 최대 페이지({self.max_pages}) 도달, 수집 중단")


def start_background_fetch_job(
    session_factory: Callable[[], Session],
    supplier_factory: Callable[[], SupplierFeed],
    job_id: int,
    resume: bool = False,
) -> threading.Thread:
    """
    수집 작업을 백그라운드 스레드에서 실행합니다.
    """

    def _run() -> None:
        # Job 레코드 대기 (트랜잭션 커밋 지연 대응)
        for _ in range(50):
            with session_factory() as session:
                if session.get(FetchJob, job_id) is not None:
                    break
            time.sleep(0.1)
        else:
            logger.error(f"Job {job_id} not found after waiting.")
            return

        try:
            with session_factory() as session:
                service = FetchJobService(session, supplier=supplier_factory())
                if resume:
                    service.retry_job(job_id)
                else:
                    service.process_job(job_id)
        except Exception as e:
            logger.exception(f"수집 백그라운드 작업 중 오류 발생 ({job_id}): {e}")
            with session_factory() as session:
                job = session.get(FetchJob, job_id)
                if job and not job.job_status.is_terminal:
                    job.status = FetchJobStatus.FAILED.value
                    job.error_message = str(e)
                    job.finished_at = utcnow()
                    session.commit()

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    return t


class JobScheduler:
    """retry_after가 지난 rate_limited 작업을 주기적으로 재개합니다."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        supplier_factory: Callable[[], SupplierFeed],
        interval_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.supplier_factory = supplier_factory
        self.interval_seconds = settings.scheduler_check_interval if interval_seconds is None else interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> list[int]:
        """재개 가능한 작업을 순서대로 재개하고 재개한 작업 ID를 돌려줍니다."""
        resumed: list[int] = []
        with self.session_factory() as session:
            service = FetchJobService(session, supplier=self.supplier_factory())
            ready = service.check_retry_jobs()
            if ready:
                logger.info(f"[SCHEDULER] 재개 대상 작업 {len(ready)}개: {ready}")
            for job_id in ready:
                try:
                    service.retry_job(job_id)
                    resumed.append(job_id)
                except Exception as e:
                    logger.error(f"[SCHEDULER] Job {job_id} 재개 실패: {e}")
                    session.rollback()
        return resumed

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"[SCHEDULER] 작업 확인 중 오류: {e}")
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self.is_running:
            logger.info("[SCHEDULER] 이미 실행 중입니다.")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        logger.info(f"[SCHEDULER] 시작 (간격 {self.interval_seconds}초)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("[SCHEDULER] 중지")
