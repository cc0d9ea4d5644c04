from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import Any, Dict
from datetime import datetime
from zoneinfo import ZoneInfo

from config import get_settings


def _now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone))


class TransactionType(str, Enum):
    CHARGE = "CHARGE"
    USE = "USE"


class Balance(BaseModel):
    model_config = ConfigDict(frozen=True)

    userId: int = Field(..., gt=0, description="User identifier")
    amount: int = Field(..., ge=0, description="Current point balance")
    updatedAt: datetime = Field(..., description="Time of the last mutation")


class HistoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Store-assigned record identifier")
    userId: int = Field(..., gt=0, description="Owner of the record")
    amount: int = Field(..., gt=0, description="Transaction magnitude")
    type: TransactionType = Field(..., description="Transaction type")
    timestamp: datetime = Field(..., description="Commit time")


class PointRequest(BaseModel):
    amount: int = Field(..., strict=True, description="Points to charge or use")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    category: str = Field(..., description="Error category")
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=_now)
    users_count: int = Field(..., description="Users with a stored balance")
    history_records: int = Field(..., description="Total history records")
    lock_keys: int = Field(..., description="Keys registered in the lock table")
