import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from tiresync.db import get_session
from tiresync.services.rate_limiter import get_shared_rate_limiter
from tiresync.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
def health() -> dict:
    return {"status": "ok"}


@router.get("/system")
def get_system_health(session: Session = Depends(get_session)) -> dict:
    """
    데이터베이스 연결과 외부 연동 설정 상태를 확인합니다.
    """
    db_ok = False
    try:
        db_ok = session.execute(text("SELECT 1")).scalar_one() == 1
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "database": "ok" if db_ok else "error",
        "supplier": {
            "mock": settings.supplier_use_mock,
            "configured": settings.supplier_use_mock
            or bool(settings.supplier_customer_id and settings.supplier_api_key),
        },
        "storefront": {
            "configured": bool(
                settings.shopify_shop_domain and settings.shopify_access_token and settings.shopify_location_id
            ),
        },
        "rate_limiter": asdict(get_shared_rate_limiter().status()),
    }
