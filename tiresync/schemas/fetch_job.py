from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tiresync.enums import TriggeredBy


class FetchJobCreate(BaseModel):
    categories: Optional[List[str]] = None
    triggered_by: TriggeredBy = TriggeredBy.MANUAL


class FetchJobResponse(BaseModel):
    id: int
    job_type: str
    status: str
    categories: List[str] = Field(default_factory=list)
    total_categories: int
    completed_categories: int
    current_category: Optional[str] = None
    products_fetched: int
    products_created: int
    products_updated: int
    products_unchanged: int
    products_failed: int
    retry_count: int
    max_retries: int
    retry_after: Optional[datetime] = None
    rate_limit_category: Optional[str] = None
    triggered_by: str
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class FetchJobProgressResponse(BaseModel):
    job_id: int
    status: str
    categories: List[str]
    total_categories: int
    completed_categories: int
    current_category: Optional[str] = None
    progress_percent: int
    products_fetched: int
    products_created: int
    products_updated: int
    products_unchanged: int
    products_failed: int
    retry_count: int
    max_retries: int
    retry_after: Optional[datetime] = None
    seconds_until_retry: Optional[int] = None
    rate_limit_category: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
