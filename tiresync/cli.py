import argparse
import json
import logging
import sys
import time
from dataclasses import asdict

from tiresync.db import engine
from tiresync.models import Base
from tiresync.services.fetch_jobs import FetchJobService, JobScheduler
from tiresync.services.pricing import PricingRulesService
from tiresync.services.sync_orchestrator import SyncConfig, build_orchestrator
from tiresync.services.validation import ValidationService
from tiresync.session_factory import session_factory
from tiresync.supplier_client import build_supplier_client

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("tiresync.cli")


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _categories(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [c.strip() for c in value.split(",") if c.strip()]


def cmd_fetch(args) -> int:
    with session_factory() as session:
        service = FetchJobService(session, supplier=build_supplier_client())
        job = service.create_job(_categories(args.categories), args.triggered_by)
        logger.info(f"[CLI] Fetch job {job.id} 실행")
        job = service.process_job(job.id)
        _print_json(asdict(service.get_job_progress(job.id)))
        return 0 if job.status == "completed" else 2


def cmd_resume(args) -> int:
    with session_factory() as session:
        service = FetchJobService(session, supplier=build_supplier_client())
        job = service.retry_job(args.job_id)
        _print_json(asdict(service.get_job_progress(job.id)))
        return 0 if job.status == "completed" else 2


def cmd_cancel(args) -> int:
    with session_factory() as session:
        job = FetchJobService(session).cancel_job(args.job_id)
        logger.info(f"[CLI] Fetch job {job.id} 취소됨")
        return 0


def cmd_validate(args) -> int:
    with session_factory() as session:
        service = ValidationService(session)
        categories = _categories(args.categories) or [None]
        for category in categories:
            _print_json({"category": category or "all", **asdict(service.validate_all(category))})
        return 0


def cmd_sync(args) -> int:
    config = SyncConfig(
        mode=args.mode,
        categories=_categories(args.categories),
        dry_run=args.dry_run,
        validate_first=not args.skip_validate,
    )
    with session_factory() as session:
        result = build_orchestrator(session, config).run_sync(config)
        _print_json(asdict(result))
        if result.status == "failed":
            return 1
        return 2 if result.status == "completed_with_errors" else 0


def cmd_seed_rules(args) -> int:
    with session_factory() as session:
        created = PricingRulesService(session).seed_default_rules()
        logger.info(f"[CLI] 기본 가격 규칙 {created}개 생성")
        return 0


def cmd_scheduler(args) -> int:
    scheduler = JobScheduler(session_factory, build_supplier_client, interval_seconds=args.interval)
    if args.once:
        resumed = scheduler.tick()
        logger.info(f"[CLI] 재개한 작업: {resumed}")
        return 0
    scheduler.start()
    try:
        while scheduler.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("[CLI] 스케줄러 종료 요청")
    finally:
        scheduler.stop()
    return 0


def cmd_init_db(args) -> int:
    Base.metadata.create_all(bind=engine)
    logger.info("[CLI] 테이블 생성 완료")
    return 0


COMMANDS = {
    "fetch": cmd_fetch,
    "resume": cmd_resume,
    "cancel": cmd_cancel,
    "validate": cmd_validate,
    "sync": cmd_sync,
    "seed-rules": cmd_seed_rules,
    "scheduler": cmd_scheduler,
    "init-db": cmd_init_db,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TireSync Operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    fetch_parser = subparsers.add_parser("fetch", help="공급사 카탈로그 수집")
    fetch_parser.add_argument("--categories", help="쉼표로 구분한 카테고리 (기본: tire,rim,battery)")
    fetch_parser.add_argument("--triggered-by", choices=["manual", "scheduled", "retry"], default="manual")

    resume_parser = subparsers.add_parser("resume", help="rate_limited 작업 재개")
    resume_parser.add_argument("job_id", type=int)

    cancel_parser = subparsers.add_parser("cancel", help="작업 취소")
    cancel_parser.add_argument("job_id", type=int)

    validate_parser = subparsers.add_parser("validate", help="상품 검증")
    validate_parser.add_argument("--categories")

    sync_parser = subparsers.add_parser("sync", help="스토어프론트 동기화")
    sync_parser.add_argument("--mode", choices=["full", "incremental", "validation-only"], default="full")
    sync_parser.add_argument("--categories")
    sync_parser.add_argument("--dry-run", action="store_true")
    sync_parser.add_argument("--skip-validate", action="store_true", help="검증 단계를 건너뜁니다")

    subparsers.add_parser("seed-rules", help="기본 가격 규칙 생성")

    scheduler_parser = subparsers.add_parser("scheduler", help="rate_limited 작업 자동 재개 루프")
    scheduler_parser.add_argument("--interval", type=float, default=None)
    scheduler_parser.add_argument("--once", action="store_true")

    subparsers.add_parser("init-db", help="테이블 생성")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
