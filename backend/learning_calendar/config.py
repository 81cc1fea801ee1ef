import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    database_url: Optional[str] = Field(None, alias="LEARNING_CALENDAR_DATABASE_URL")
    database_pool_size: int = Field(10, alias="LEARNING_CALENDAR_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="LEARNING_CALENDAR_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="LEARNING_CALENDAR_DATABASE_ECHO")
    oracle_model: str = Field("gpt-5", alias="LEARNING_CALENDAR_ORACLE_MODEL")
    oracle_reasoning: Literal["minimal", "low", "medium", "high"] = Field(
        "medium",
        alias="LEARNING_CALENDAR_ORACLE_REASONING",
    )
    oracle_timeout_seconds: float = Field(90.0, gt=0, alias="LEARNING_CALENDAR_ORACLE_TIMEOUT_SECONDS")
    default_timezone: str = Field("UTC", alias="LEARNING_CALENDAR_DEFAULT_TIMEZONE")
    upcoming_limit: int = Field(5, ge=1, alias="LEARNING_CALENDAR_UPCOMING_LIMIT")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        settings = Settings()  # type: ignore[arg-type]
        if settings.openai_api_key and not os.getenv("OPENAI_API_KEY"):
            os.environ["OPENAI_API_KEY"] = settings.openai_api_key
        return settings
    except ValidationError as exc:
        raise RuntimeError(f"Invalid calendar configuration: {exc}") from exc
