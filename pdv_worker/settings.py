from typing import Optional
from pydantic import validator, Field
from pydantic_settings import BaseSettings


class WorkerSettings(BaseSettings):
    """Settings for the PDV report/delivery worker with validation."""

    # Redis broker
    redis_url: str = Field("redis://localhost:6379/0")
    queue_prefix: str = Field("pdv")
    queue_email: str = Field("EmailQueue")
    queue_report: str = Field("PDVReportQueue")

    # Worker pools
    worker_mode: str = Field("all")  # all|email|report
    email_concurrency: int = Field(1)
    report_concurrency: int = Field(2)
    worker_poll_timeout: int = Field(2)
    delivery_delay_ms: int = Field(300000)  # 5 minutes
    queue_visibility_timeout_s: int = Field(3600)
    watchdog_interval_s: int = Field(60)

    # Record store
    database_dsn: Optional[str] = Field(None)

    # Text generation
    openai_api_key: str = Field("")
    text_model: str = Field("gpt-4.1")
    text_web_search: bool = Field(False)
    text_timeout_seconds: float = Field(120.0)
    text_retry_max: int = Field(3)

    # Document renderer
    renderer_url: Optional[str] = Field(None)
    render_timeout_seconds: float = Field(180.0)
    min_pdf_bytes: int = Field(1000)

    # Mail transport
    postmark_server_token: str = Field("")
    postmark_api_url: str = Field("https://api.postmarkapp.com/email")
    mail_message_stream: str = Field("outbound")
    mail_timeout_seconds: float = Field(30.0)
    sender_email: str = Field("reports@example.com")
    delivery_webhook_template: Optional[str] = Field(None)  # e.g. https://{subdomain}.example.com/api/webhook

    # Per-stage deadline for any single external call
    stage_timeout_seconds: float = Field(300.0)

    log_level: str = Field("INFO")

    @validator('log_level')
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @validator('worker_mode')
    def validate_worker_mode(cls, v):
        allowed = {"all", "email", "report"}
        if v not in allowed:
            raise ValueError(f"WORKER_MODE must be one of {sorted(allowed)}")
        return v

    @validator('email_concurrency', 'report_concurrency')
    def validate_concurrency(cls, v):
        if v < 1:
            raise ValueError("concurrency must be >= 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = WorkerSettings()
