"""
Configuration management for the Video Insights backend

Using pydantic-settings for type-safe configuration with environment variable support.
All settings can be overridden via environment variables with the VIS_ prefix.
A few legacy variable names (OPENAI_API_KEY, ADMIN_CREDIT_HASH, ...) are still honoured.
"""

from typing import Optional
from pydantic import AliasChoices, Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceConfig(BaseSettings):
    """Configuration for the external download/transcription service"""

    model_config = SettingsConfigDict(
        env_prefix='VIS_SERVICE_',
        env_file='.env',
        env_file_encoding='utf-8',
        populate_by_name=True,
        extra='ignore'
    )

    base_url: str = Field(
        default="https://api.videodowncut.com/api",
        validation_alias=AliasChoices('VIS_SERVICE_BASE_URL', 'VIDEO_SERVICE_URL'),
        description="Base URL of the video download/transcription service"
    )

    request_timeout: float = Field(
        default=60.0,
        description="HTTP timeout for a single service request in seconds",
        gt=0,
        le=600
    )

    # Polling of the transcription status endpoint (30 x 10s = 5 minutes)
    poll_interval: float = Field(
        default=10.0,
        description="Seconds between transcription status checks",
        ge=0,
        le=300
    )

    poll_max_attempts: int = Field(
        default=30,
        description="Maximum transcription status checks per polling window",
        ge=1,
        le=1000
    )

    # Options forwarded to the transcription endpoint
    model_size: str = Field(default="large-v3", description="Whisper model size")
    device: str = Field(default="cuda", description="Transcription device")
    compute_type: str = Field(default="float16", description="Transcription compute type")
    language: str = Field(default="en", description="Transcript language")
    save_to_file: bool = Field(default=True, description="Ask the service to keep a transcript file")

    @validator('base_url')
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')


class ProcessingConfig(BaseSettings):
    """Configuration for AI insight generation"""

    model_config = SettingsConfigDict(
        env_prefix='VIS_PROCESSING_',
        env_file='.env',
        env_file_encoding='utf-8',
        populate_by_name=True,
        extra='ignore'
    )

    # OpenAI configuration
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('VIS_PROCESSING_OPENAI_API_KEY', 'OPENAI_API_KEY'),
        description="OpenAI API key for AI processing"
    )

    openai_model: str = Field(
        default="gpt-4-turbo-preview",
        validation_alias=AliasChoices('VIS_PROCESSING_OPENAI_MODEL', 'OPENAI_MODEL'),
        description="OpenAI model to use for insight generation"
    )

    api_timeout: int = Field(
        default=120,
        description="OpenAI API timeout in seconds",
        ge=1,
        le=600
    )

    temperature: float = Field(
        default=0.2,
        description="Sampling temperature for insight generation",
        ge=0.0,
        le=2.0
    )

    max_tokens: int = Field(
        default=2000,
        description="Completion token cap per chunk call",
        ge=100,
        le=16384
    )

    consolidation_max_tokens: int = Field(
        default=2000,
        description="Completion token cap for the consolidation call",
        ge=100,
        le=16384
    )

    # Chunking configuration (estimated tokens, 1 token ~ 4 characters)
    chunking_threshold_tokens: int = Field(
        default=2000,
        description="Estimated token count above which the transcript is chunked",
        ge=50,
        le=100000
    )

    chunk_max_tokens: int = Field(
        default=1000,
        description="Estimated token budget per chunk",
        ge=10,
        le=50000
    )

    dedupe_min_length: int = Field(
        default=8,
        description="Sentences shorter than this are dropped before analysis",
        ge=0,
        le=200
    )

    # Concurrency configuration
    max_concurrent_chunks: int = Field(
        default=3,
        description="Maximum concurrent API calls",
        ge=1,
        le=10
    )

    # Retry configuration
    chunk_max_retries: int = Field(
        default=3,
        description="Attempts per chunk completion",
        ge=1,
        le=10
    )

    max_batch_attempts: int = Field(
        default=3,
        description="Re-split attempts for the whole chunk batch",
        ge=1,
        le=10
    )

    retry_delay: float = Field(
        default=1.0,
        description="Initial retry delay in seconds",
        ge=0,
        le=60
    )

    consolidation_enabled: bool = Field(
        default=True,
        description="Ask the model to consolidate multi-chunk results"
    )

    coverage_warning_threshold: float = Field(
        default=0.3,
        description="Topic coverage ratio below which a warning is logged",
        ge=0.0,
        le=1.0
    )


class CreditConfig(BaseSettings):
    """Configuration for credit accounting"""

    model_config = SettingsConfigDict(
        env_prefix='VIS_CREDITS_',
        env_file='.env',
        env_file_encoding='utf-8',
        populate_by_name=True,
        extra='ignore'
    )

    submission_estimate: int = Field(
        default=5,
        description="Credits reserved when a video is submitted",
        ge=1,
        le=1000
    )

    # credits = clamp(base_service_cost + ceil(tokens / tokens_per_credit), min, max)
    base_service_cost: int = Field(default=2, ge=0)
    tokens_per_credit: int = Field(default=500, ge=1)
    min_credits: int = Field(default=3, ge=0)
    max_credits: int = Field(default=10, ge=1)

    admin_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('VIS_CREDITS_ADMIN_SECRET', 'ADMIN_CREDIT_HASH'),
        description="Shared secret gating administrative grant/deduct"
    )

    min_admin_amount: int = Field(default=1, ge=1)
    max_admin_amount: int = Field(default=10000, ge=1)

    max_history_limit: int = Field(
        default=100,
        description="Upper bound on transactions returned per history page",
        ge=1,
        le=1000
    )

    @validator('max_credits')
    def validate_max_credits(cls, v, values):
        min_credits = values.get('min_credits', 0)
        if v < min_credits:
            raise ValueError("max_credits must not be lower than min_credits")
        return v


class StorageConfig(BaseSettings):
    """Configuration for job and ledger persistence"""

    model_config = SettingsConfigDict(
        env_prefix='VIS_STORAGE_',
        env_file='.env',
        env_file_encoding='utf-8',
        populate_by_name=True,
        extra='ignore'
    )

    backend: str = Field(
        default="sqlite",
        description="Storage backend: 'sqlite' or 'memory'"
    )

    sqlite_path: str = Field(
        default="video_insights.db",
        description="SQLite database file"
    )

    write_retries: int = Field(
        default=3,
        description="Attempts for a persistence write",
        ge=1,
        le=10
    )

    write_backoff: float = Field(
        default=0.5,
        description="Linear backoff step between persistence write attempts (seconds)",
        ge=0,
        le=30
    )

    @validator('backend')
    def validate_backend(cls, v):
        valid_backends = ["sqlite", "memory"]
        if v not in valid_backends:
            raise ValueError(f"Backend must be one of {valid_backends}")
        return v


class AppConfig(BaseSettings):
    """Main application configuration"""

    model_config = SettingsConfigDict(
        env_prefix='VIS_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'  # Ignore unknown environment variables
    )

    # Sub-configurations
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    credits: CreditConfig = Field(default_factory=CreditConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Global settings
    debug: bool = Field(
        default=False,
        description="Enable debug logging"
    )

    report_csv: str = Field(
        default="job_summary.csv",
        description="CSV file receiving one row per finished job"
    )


# Global configuration instance
config = AppConfig()
