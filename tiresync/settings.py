from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # database_url: str = "postgresql+psycopg://tiresync@/tiresync?host=/var/run/postgresql"
    database_url: str = "postgresql+psycopg://localhost/tiresync"

    # 공급사(Tedarikci) 피드
    supplier_api_base_url: str = "https://api.supplier.example.com/products"
    supplier_customer_id: str = ""
    supplier_api_key: str = ""
    supplier_category_ids: dict[str, str] = {}  # {"tire": "12", "rim": "13", "battery": "14"}
    supplier_use_mock: bool = False
    supplier_page_size: int = 100
    supplier_http_timeout: float = 60.0

    # 스토어프론트(Shopify)
    shopify_shop_domain: str = ""
    shopify_access_token: str = ""
    shopify_location_id: str = ""
    shopify_api_version: str = "2024-10"
    shopify_http_timeout: float = 30.0

    # 비용 기반 rate limiter
    rate_limit_max_cost: int = 2000
    rate_limit_restore_rate: float = 100.0  # 초당 회복 포인트
    rate_limit_safety_margin: int = 100
    rate_limit_max_wait_seconds: float = 60.0

    # 재시도 정책
    retry_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Fetch job
    fetch_max_retries: int = 5
    fetch_default_wait_seconds: int = 60
    fetch_max_pages: int = 500

    # 검증 기본값 (가격은 최소 단위, 50000 = 500.00 TL)
    validation_min_price: int = 50000
    validation_min_stock: int = 2
    validation_require_image: bool = True
    validation_require_brand: bool = False
    validation_settings_cache_ttl: int = 60  # 초

    pricing_default_margin_percent: float = 20.0

    sync_publish_concurrency: int = 5
    sync_error_limit: int = 50

    cache_refresh_interval_hours: int = 6
    scheduler_check_interval: float = 30.0  # 초

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("supplier_api_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v

    @field_validator(
        "rate_limit_max_wait_seconds",
        "retry_base_delay",
        "retry_max_delay",
        "scheduler_check_interval",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("대기 시간은 0 이상이어야 합니다.")
        return v

    @field_validator("supplier_page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if not 1 <= v <= 500:
            raise ValueError("supplier_page_size는 1에서 500 사이여야 합니다.")
        return v

    @field_validator("sync_publish_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 20:
            raise ValueError("sync_publish_concurrency는 1에서 20 사이여야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
