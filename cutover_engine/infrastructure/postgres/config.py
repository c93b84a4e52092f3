#cutover_engine\infrastructure\postgres\config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CUTOVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Full SQLAlchemy URL wins over the PostgreSQL parts below
    database_url_override: Optional[str] = None

    # PostgreSQL connection
    postgres_user: str = "cutover"
    postgres_password: str = "cutover"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "cutover"

    # Connection pool
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600

    # Upper bound on waiting for a row lock (lease and record rows)
    lock_timeout_ms: int = 5000

    # SQLAlchemy
    echo_sql: bool = False

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = DatabaseSettings()
