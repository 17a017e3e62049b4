from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./data/fraudcheck.db"

    # App settings
    app_name: str = "Loan Document Fraud Check"
    debug: bool = False
    log_level: str = "INFO"

    # Chain dispatch: "queue" runs steps on in-process workers,
    # "http" re-invokes our own endpoint for every step
    chain_dispatch_mode: str = "queue"
    public_base_url: str = "http://localhost:8000"
    chain_workers: int = 2
    chain_dispatch_retries: int = 2
    chain_retry_backoff_seconds: float = 2.0
    chain_request_timeout: float = 10.0
    step_delay_seconds: float = 0.5

    # Document storage
    storage_base_url: str = ""
    storage_bucket: str = "loan-documents"
    storage_api_key: str = ""

    # Fallback analysis provider when none is active in the database
    analysis_provider: str = "gemini"
    analysis_api_key: str = ""
    analysis_model: str = ""
    analysis_base_url: Optional[str] = None
    analysis_timeout: float = 120.0
    max_pdf_pages: int = 3

    # Stalled chain reconciliation
    reconcile_interval_minutes: int = 0
    stale_after_minutes: int = 10
    max_resume_attempts: int = 3

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
