from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    STOPPED = "STOPPED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class Sentiment(str, Enum):
    POSITIVE = "Positive"
    NEUTRAL = "Neutral"
    NEGATIVE = "Negative"


class AnalysisScopeIn(BaseModel):
    unit_id: int = Field(..., ge=1)
    survey_id: Optional[int] = Field(default=None, ge=1)


class JobProgressOut(BaseModel):
    job_id: Optional[int] = None
    unit_id: int
    survey_id: Optional[int] = None
    status: Optional[JobStatus] = None
    processed: int
    total: int
    percentage: int
    failed_batches: int = 0
    analyzed: int = 0
    running: bool = False
    logs: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class ResetOut(BaseModel):
    unit_id: int
    survey_id: Optional[int] = None
    deleted_segments: int
    jobs_reset: int
