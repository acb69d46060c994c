"""
Environment-aware configuration settings for the automation engine.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class RedisSettings(BaseSettings):
    """Redis connection settings (job queue and leader lock backend)."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    enabled: bool = Field(
        default=True,
        description="Disable to run without a queue/lock backend (direct execution, always leader)",
    )
    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=50, description="Maximum connection pool size (prod: 50-100)")
    socket_timeout: float = Field(default=10.0, description="Socket timeout")
    socket_connect_timeout: float = Field(default=5.0, description="Connection timeout")

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="PostgreSQL server hostname")
    port: int = Field(default=5432, description="PostgreSQL server port")
    database: str = Field(default="automation_engine", description="Database name")
    user: str = Field(default="postgres", description="Database user")
    password: str = Field(default="postgres", description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size (prod: 10-20)")
    max_overflow: int = Field(default=20, description="Max overflow connections (prod: 20-30)")
    pool_timeout: float = Field(default=10.0, description="Pool timeout in seconds (fail fast)")
    url_override: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy URL, e.g. sqlite+aiosqlite:///:memory: for tests",
    )

    @property
    def url(self) -> str:
        """Generate PostgreSQL connection URL."""
        if self.url_override:
            return self.url_override
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def sync_url(self) -> str:
        """Generate synchronous PostgreSQL connection URL for migrations."""
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class ExecutorSettings(BaseSettings):
    """Step execution limits."""

    model_config = SettingsConfigDict(env_prefix="EXECUTOR_")

    max_wave_concurrency: int = Field(
        default=10,
        ge=1,
        description="Max steps of one wave running at once; larger waves run in sub-batches",
    )
    while_max_iterations: int = Field(default=100, ge=1, description="Default while-loop iteration cap")
    while_max_duration: float = Field(default=300.0, gt=0, description="While-loop wall-clock cap (seconds)")
    module_timeout: float = Field(default=60.0, gt=0, description="Default per-invocation timeout (seconds)")


class QueueSettings(BaseSettings):
    """Per-organization workflow queue settings."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

    concurrency: Optional[int] = Field(
        default=None,
        ge=1,
        description="Concurrent workflows per organization (default: 20 dev/test, 100 prod)",
    )
    max_jobs_per_minute: int = Field(default=300, ge=1, description="Rate limit per organization")
    attempts: int = Field(default=3, ge=1, description="Attempts per job before it is failed")
    backoff_delay: float = Field(default=10.0, ge=0, description="Base exponential backoff delay (seconds)")
    default_priority: int = Field(default=5, description="Lower number = higher priority")

    # Retention windows for finished jobs
    completed_max_age: int = Field(default=86400, description="Keep completed jobs for 24 hours")
    completed_max_count: int = Field(default=1000, description="Keep at most this many completed jobs")
    failed_max_age: int = Field(default=604800, description="Keep failed jobs for 7 days")
    failed_max_count: int = Field(default=5000, description="Keep at most this many failed jobs")

    poll_interval: float = Field(default=1.0, gt=0, description="Idle poll interval (seconds)")
    stale_job_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Active jobs older than this are returned to the queue (worker died)",
    )
    stale_check_interval: float = Field(default=30.0, gt=0, description="How often to recover stale jobs")
    key_prefix: str = Field(default="wf:queue:", description="Redis key prefix for queue structures")


class SchedulerSettings(BaseSettings):
    """Cron scheduler and leader election settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = Field(default=True, description="Run the cron scheduler in this process")
    leader_lock_key: str = Field(default="workflow-scheduler:leader")
    leader_lock_ttl: int = Field(default=30, ge=1, description="Leader lock TTL (seconds)")
    leader_check_interval: float = Field(default=20.0, gt=0, description="Renew/acquire interval (seconds)")

    # Workflow run retention (leader-only maintenance job)
    cleanup_cron: str = Field(default="0 2 * * *", description="When to purge old workflow runs")
    success_retention_days: int = Field(default=30, ge=1)
    error_retention_days: int = Field(default=90, ge=1)

    @model_validator(mode="after")
    def validate_interval(self) -> "SchedulerSettings":
        """The lock must be renewed before it expires."""
        if self.leader_check_interval >= self.leader_lock_ttl:
            raise ValueError("leader_check_interval must be shorter than leader_lock_ttl")
        return self


class WorkerSettings(BaseSettings):
    """Worker process settings."""

    model_config = SettingsConfigDict(env_prefix="WORKER_")

    graceful_shutdown_timeout: float = Field(default=30.0, description="Graceful shutdown timeout")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,  # REDIS_HOST and redis_host both work
        extra="ignore",        # Ignore unknown environment variables
    )

    # Application
    app_name: str = Field(default="Workflow Automation Engine")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PROD

    @property
    def queue_concurrency(self) -> int:
        """
        Concurrent workflows per organization.

        Development: 20 (single instance). Production: 100 per worker process.
        """
        if self.queue.concurrency:
            return self.queue.concurrency
        return 100 if self.is_production else 20


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
