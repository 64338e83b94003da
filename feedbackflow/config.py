"""FeedbackFlow configuration."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the storage core and the feedback service."""

    # Service info
    service_name: str = "feedback-service"
    service_port: int = 8000

    # Storage backend: "memory", "document" or anything else for SQL
    db_backend: str = "sql"

    # Relational backend
    database_url: str = "sqlite+aiosqlite:///./feedbackflow.db"
    database_echo: bool = False

    # Document backend (Redis)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_prefix: str = "feedbackflow"

    # Admin-gated debug endpoints
    admin_token: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    class Config:
        env_file = ".env"
        case_sensitive = False
