from typing import List

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: str = "http://localhost:5173,http://localhost:3000"

    # CSV ingestion
    upload_max_file_size_mb: int = 50
    csv_chunk_size: int = 10000  # Rows per pandas chunk between progress reports

    # Format detection
    detection_confidence_threshold: float = 0.5

    # Reconciliation defaults
    default_project_region: str = "UK"

    # Storage collaborator retries
    storage_max_retries: int = 3
    storage_retry_backoff_seconds: float = 1.0  # Doubled on every attempt

    model_config = ConfigDict(env_file=".env", extra="ignore")

    @property
    def upload_max_file_size_bytes(self) -> int:
        return self.upload_max_file_size_mb * 1024 * 1024

    @property
    def allowed_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


settings = Settings()
