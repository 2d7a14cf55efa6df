from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SUPPORTED_EXTENSIONS = [
    ".jpg", ".jpeg", ".png", ".tiff", ".tif",
    ".cr2", ".nef", ".arw", ".dng", ".raf", ".orf", ".rw2",
]

class BatchOptions(BaseModel):
    """Per-batch tuning knobs. Accepts snake_case or camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    thumbnail_size: int = Field(default=300, gt=0)
    analysis_image_size: int = Field(default=1024, gt=0)
    quality: int = Field(default=85, ge=1, le=100)
    skip_duplicates: bool = True
    parallel_connections: int = Field(default=1, gt=0)
    max_concurrent_analysis: int = Field(default=5, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=2000, ge=0)  # ms
    retry_backoff: Literal["fixed", "exponential"] = "fixed"
    retry_delay_cap: int = Field(default=30000, ge=0)  # ms
    enable_rate_limit: bool = True
    rate_limit_interval: int = Field(default=100, ge=0)  # ms between analysis groups
    custom_prompt: Optional[str] = None
    gc_every: int = Field(default=10, ge=0)  # 0 disables the hint

    @model_validator(mode="after")
    def validate_delay_cap(self):
        if self.retry_backoff == "exponential" and self.retry_delay_cap < self.retry_delay:
            raise ValueError("retry_delay_cap must be >= retry_delay for exponential backoff")
        return self

class StorageConfig(BaseModel):
    upload_dir: str = "./uploads"
    preview_dir: str = "./uploads/processed"
    thumbnail_dir: str = "./thumbnails"
    database_path: str = "./pbt.sqlite3"

class ProviderConfig(BaseModel):
    """Ollama connection used by the default analysis provider."""
    base_url: str = "http://localhost:11434"
    model: str = "llava:latest"
    timeout_s: float = Field(default=300.0, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    num_predict: int = Field(default=1000, gt=0)

class GeneralConfig(BaseModel):
    log_path: str = "/tmp/pbt/pbt.log"
    debug: bool = False
    max_active_batches: int = Field(default=4, gt=0)
    extensions: List[str] = Field(default_factory=lambda: list(SUPPORTED_EXTENSIONS))

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        normalized = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]
        if not normalized:
            raise ValueError("extensions must not be empty")
        return normalized

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    batch: BatchOptions = Field(default_factory=BatchOptions)
