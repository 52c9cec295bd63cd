import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tiresync.enums import SyncMode


class SyncRequest(BaseModel):
    mode: SyncMode = SyncMode.FULL
    categories: Optional[List[str]] = None
    dry_run: bool = False
    validate_first: bool = True


class SyncSessionResponse(BaseModel):
    id: uuid.UUID
    mode: str
    dry_run: bool
    status: str
    categories: List[str] = Field(default_factory=list)
    stats: dict = Field(default_factory=dict)
    error_summary: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SyncItemResponse(BaseModel):
    id: int
    supplier_sku: str
    action: str
    status: str
    message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SyncSessionDetailResponse(BaseModel):
    session: SyncSessionResponse
    items: List[SyncItemResponse]
