"""
Upload Models
Multipart / resumable upload session state
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class UploadState(str, Enum):
    CREATED = "created"
    PARTS_IN_FLIGHT = "parts_in_flight"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class CompletedPart(BaseModel):
    """Completion token for one uploaded part"""
    part_number: int = Field(..., ge=1)
    etag: str = Field(..., description="S3 ETag, block id, or committed offset")
    size: Optional[int] = Field(None, ge=0)


class MultipartUploadSession(BaseModel):
    """Adapter-side bookkeeping for a session or block-list upload"""
    upload_id: str
    key: str
    state: UploadState = UploadState.CREATED
    offset: int = 0
    parts: List[CompletedPart] = Field(default_factory=list)
    backend_ref: Optional[str] = Field(None, description="Session URL or backend session id")
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def next_part_number(self) -> int:
        return len(self.parts) + 1

    @property
    def is_terminal(self) -> bool:
        return self.state in (UploadState.COMPLETED, UploadState.ABORTED)
