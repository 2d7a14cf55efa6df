from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, Field
from pbt.config.models import BatchOptions

class BatchStatus(str, Enum):
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

class BatchPhase(str, Enum):
    DISCOVERY = "discovery"
    UPLOADING = "uploading"
    ANALYSIS = "analysis"
    FINALIZING = "finalizing"

class ErrorType(str, Enum):
    DUPLICATE = "duplicate"
    PROCESSING = "processing"
    UNSUPPORTED = "unsupported"
    ANALYSIS = "analysis"
    RETRY_EXHAUSTED = "retry_exhausted"

class ImageStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

TERMINAL_STATUSES = (BatchStatus.COMPLETED, BatchStatus.ERROR)

# processing <-> paused is the only reversible pair
ALLOWED_TRANSITIONS: Dict[BatchStatus, Tuple[BatchStatus, ...]] = {
    BatchStatus.PROCESSING: (BatchStatus.PAUSED, BatchStatus.COMPLETED, BatchStatus.ERROR),
    BatchStatus.PAUSED: (BatchStatus.PROCESSING, BatchStatus.ERROR),
    BatchStatus.COMPLETED: (),
    BatchStatus.ERROR: (),
}

def utc_now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")

class ErrorRecord(BaseModel):
    file: str
    error: str
    type: ErrorType
    retry_count: Optional[int] = None

class MemoryUsage(BaseModel):
    used: int = 0  # MB, process RSS
    total: int = 0  # MB, system memory
    percentage: int = 0

class ImageRecord(BaseModel):
    id: Optional[int] = None
    filename: str
    original_name: str
    file_path: str
    original_path: str
    thumbnail_path: str
    preview_path: str
    file_size: int
    mime_type: str = "application/octet-stream"
    width: int = 0
    height: int = 0
    uploaded_at: str = Field(default_factory=utc_now)
    status: ImageStatus = ImageStatus.UPLOADED
    error_message: Optional[str] = None
    processed_at: Optional[str] = None

class AnalysisResult(BaseModel):
    description: str
    caption: str
    keywords: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    title: Optional[str] = None
    headline: Optional[str] = None
    instructions: Optional[str] = None
    location: Optional[str] = None

class AnalysisTask(BaseModel):
    image_id: int
    image_path: Path
    retry_count: int = 0
    batch_id: str
    metadata: Optional[Dict[str, Any]] = None

class BatchResult(BaseModel):
    batch_id: str
    total_files: int = 0
    processed_files: int = 0
    successful_files: int = 0
    duplicate_files: int = 0
    error_files: int = 0
    retrying_files: int = 0
    pending_analysis: int = 0
    active_analysis: int = 0
    completed_analysis: int = 0
    failed_analysis: int = 0
    errors: List[ErrorRecord] = Field(default_factory=list)
    processed_images: List[ImageRecord] = Field(default_factory=list)
    status: BatchStatus = BatchStatus.PROCESSING
    current_phase: BatchPhase = BatchPhase.DISCOVERY
    start_time: str = Field(default_factory=utc_now)
    end_time: Optional[str] = None
    estimated_time_remaining: Optional[str] = None
    processing_rate: float = 0.0  # files per minute
    memory_usage: MemoryUsage = Field(default_factory=MemoryUsage)
    pause_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class BatchJob(BaseModel):
    id: str
    folder_path: Path
    options: BatchOptions = Field(default_factory=BatchOptions)
    result: BatchResult
    created_at: str = Field(default_factory=utc_now)
