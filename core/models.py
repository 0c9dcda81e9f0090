"""
Persistent records: video jobs, credit transactions and users.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class VideoStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.FAILED)


# Forward order of the lifecycle; FAILED is reachable from any non-terminal state
STATUS_ORDER = [
    VideoStatus.PENDING,
    VideoStatus.DOWNLOADED,
    VideoStatus.TRANSCRIBING,
    VideoStatus.COMPLETED,
]


def is_valid_transition(current: VideoStatus, new: VideoStatus) -> bool:
    if current.is_terminal:
        return current == new
    if new == VideoStatus.FAILED:
        return True
    return STATUS_ORDER.index(new) >= STATUS_ORDER.index(current)


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"
    ADMIN_GRANT = "admin_grant"
    ADMIN_DEDUCT = "admin_deduct"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


NEGATIVE_TYPES = (TransactionType.SPEND, TransactionType.ADMIN_DEDUCT)


class User(BaseModel):
    """Minimal user record; the core only reads and adjusts the credit balance"""

    id: str = Field(default_factory=new_id)
    email: Optional[str] = None
    name: Optional[str] = None
    credits: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class VideoJob(BaseModel):
    """One submitted video and everything the pipeline learns about it"""

    id: str = Field(default_factory=new_id)
    user_id: str
    video_url: str

    # Filled by the download stage
    service_video_id: Optional[str] = None
    title: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    download_url: Optional[str] = None

    # Filled by the transcription stage
    transcription_id: Optional[str] = None
    transcription: Optional[str] = None

    # Filled on completion
    dashboard: Optional[Dict[str, Any]] = None
    tokens_used: Optional[int] = None
    credits_charged: Optional[int] = None

    status: VideoStatus = VideoStatus.PENDING
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditTransaction(BaseModel):
    """Ledger entry; negative amounts spend, positive ones credit the user"""

    id: str = Field(default_factory=new_id)
    user_id: str
    type: TransactionType
    amount: int
    status: TransactionStatus = TransactionStatus.COMPLETED
    description: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    tokens_used: Optional[int] = None
    video_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @validator('amount')
    def validate_sign(cls, v, values):
        tx_type = values.get('type')
        if tx_type is None:
            return v
        if tx_type in NEGATIVE_TYPES and v > 0:
            raise ValueError(f"{tx_type.value} transactions must have a negative amount")
        if tx_type not in NEGATIVE_TYPES and v < 0:
            raise ValueError(f"{tx_type.value} transactions must have a positive amount")
        return v
