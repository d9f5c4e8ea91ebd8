"""
Seller Dashboard - Settings

Values come from the environment (or a local .env file). Names match the
environment variables the service has always read: DATABASE_URL,
DATABASE_NAME, JWT_SECRET, PORT, ...
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    project_name: str = "Seller Dashboard API"
    log_level: str = "INFO"
    port: int = 8000

    # Database
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "marketplace"
    mongo_server_selection_timeout_ms: int = 5000
    mongo_connect_timeout_ms: int = 5000
    mongo_socket_timeout_ms: int = 10000

    # Auth
    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"

    # CORS
    allowed_origins: List[str] = ["*"]

    # Feed
    feed_reader_workers: int = 4
    seed_welcome_notifications: bool = True

    # Real-time stream
    stream_keepalive_seconds: float = 15.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
