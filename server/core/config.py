"""Environment-driven configuration with Pydantic v2."""

from typing import List, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")

    # Authentication
    jwt_secret_key: str = Field(env="JWT_SECRET_KEY", min_length=32)
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    jwt_cookie_name: str = Field(default="session_token", env="JWT_COOKIE_NAME")
    realtime_token_ttl: int = Field(default=60, env="REALTIME_TOKEN_TTL", ge=10, le=3600)
    realtime_send_timeout: float = Field(default=5.0, env="REALTIME_SEND_TIMEOUT", gt=0.0, le=60.0)

    # Security
    cors_origins: List[str] = Field(default=["http://localhost:3000"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/workflows.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    cache_ttl: int = Field(default=3600, env="CACHE_TTL", ge=60)

    # Execution Engine
    step_result_ttl: int = Field(default=604800, env="STEP_RESULT_TTL", ge=3600)  # 7 days
    step_lock_timeout: int = Field(default=300, env="STEP_LOCK_TIMEOUT", ge=5)
    node_max_retries: int = Field(default=3, env="NODE_MAX_RETRIES", ge=1, le=10)
    node_retry_delay: float = Field(default=1.0, env="NODE_RETRY_DELAY", ge=0.0, le=60.0)
    recovery_enabled: bool = Field(default=True, env="RECOVERY_ENABLED")
    recovery_interval: int = Field(default=60, env="RECOVERY_INTERVAL", ge=5)
    heartbeat_timeout: int = Field(default=300, env="HEARTBEAT_TIMEOUT", ge=30)
    scheduler_enabled: bool = Field(default=True, env="SCHEDULER_ENABLED")
    scheduler_interval: int = Field(default=60, env="SCHEDULER_INTERVAL", ge=5)

    # Temporal
    temporal_enabled: bool = Field(default=False, env="TEMPORAL_ENABLED")
    temporal_server_address: str = Field(default="localhost:7233", env="TEMPORAL_SERVER_ADDRESS")
    temporal_namespace: str = Field(default="default", env="TEMPORAL_NAMESPACE")
    temporal_task_queue: str = Field(default="workflow-executions", env="TEMPORAL_TASK_QUEUE")

    # Credential Security
    api_key_encryption_key: str = Field(env="API_KEY_ENCRYPTION_KEY", min_length=32)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True, env="RATE_LIMIT_ENABLED")
    webhook_rate_limit: str = Field(default="30/minute", env="WEBHOOK_RATE_LIMIT")
    rate_limit_storage_uri: str = Field(default="memory://", env="RATE_LIMIT_STORAGE_URI")

    # Service Timeouts
    ai_timeout: int = Field(default=60, env="AI_TIMEOUT", ge=5, le=600)
    http_timeout: int = Field(default=30, env="HTTP_TIMEOUT", ge=1, le=300)
    db_connect_timeout: int = Field(default=10, env="DB_CONNECT_TIMEOUT", ge=1, le=120)
    smtp_timeout: int = Field(default=30, env="SMTP_TIMEOUT", ge=1, le=300)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
