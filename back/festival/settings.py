from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    This project uses `config.env` (non-dot env file) because some environments
    block creating `.env*` files. If you do have a `.env`, it will also be read.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="festival", validation_alias="DB_USER")
    db_password: str = Field(default="festival", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="festival", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; when set it wins over the DB_* parts (tests use sqlite://)
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    # Connection pool. Acquisition waits db_pool_timeout seconds, then fails.
    db_pool_size: int = Field(default=20, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")
    db_pool_timeout: float = Field(default=10.0, validation_alias="DB_POOL_TIMEOUT")

    # Empty means single-process delivery (no Redis relay)
    redis_url: str = Field(default="", validation_alias="REDIS_URL")

    cors_origins: str = Field(
        default="http://localhost:5173",
        validation_alias="CORS_ORIGINS"
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    # IANA zone the stall runs in; "today" on the dashboard starts at its midnight
    stall_timezone: str = Field(default="Asia/Tokyo", validation_alias="STALL_TIMEZONE")

    order_number_max_attempts: int = Field(default=5, validation_alias="ORDER_NUMBER_MAX_ATTEMPTS")
    stock_mutation_max_attempts: int = Field(default=3, validation_alias="STOCK_MUTATION_MAX_ATTEMPTS")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
