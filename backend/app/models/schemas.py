"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadEvent(BaseModel):
    """Sent by the uploader once a source video is stored."""
    stored_path: str = Field(..., min_length=1, description="File name inside the uploads directory")
    size: int = Field(..., ge=0)
    original_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessRequest(BaseModel):
    """Options for cutting a job into clips."""
    duration: Optional[int] = Field(default=None, gt=0, description="Clip length in seconds")
    custom_duration: Optional[int] = Field(default=None, gt=0, description="Overrides duration")
    generate_subtitles: bool = False
    clips_count: Optional[int] = Field(default=None, ge=0, description="Client-side estimate")


class JobResponse(BaseModel):
    """Schema for job response."""
    id: str
    user_id: str
    input_file: str
    status: str
    progress: int
    credits_charged: int
    error_message: Optional[str]
    settings: Dict[str, Any] = Field(validation_alias="settings_dict")
    output_files: List[Dict[str, Any]] = Field(validation_alias="output_list")
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int


class ClipResponse(BaseModel):
    id: str
    job_id: str
    filename: str
    thumbnail: Optional[str]
    thumbnail_url: Optional[str]
    duration: float
    size: int
    metadata: Dict[str, Any] = Field(validation_alias="metadata_dict")
    is_archived: bool
    created_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BulkDeleteRequest(BaseModel):
    clip_ids: List[str] = Field(..., min_length=1, max_length=500)


class DeleteResponse(BaseModel):
    success: bool = True
    deleted_clips: int = 0


class CreditBalanceResponse(BaseModel):
    total: int
    used: int
    remaining: int

    model_config = ConfigDict(from_attributes=True)


class TransactionResponse(BaseModel):
    id: int
    type: str
    amount: int
    description: str
    job_id: Optional[str]
    clip_id: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PurchaseRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: str = "Credit purchase"


class CostResponse(BaseModel):
    duration: float
    clips: int
    cost: int


class HealthResponse(BaseModel):
    status: str
    queue: Dict[str, Any]
    scheduler: Dict[str, Dict[str, Any]]
    last_sample: Optional[Dict[str, Any]] = None
