import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")
    logger_name: str = Field(default="reqlog", alias="REQLOG_LOGGER_NAME")
    trace_id_key: str = Field(default="trace_id", alias="TRACE_ID_KEY")

    access_log_skip_paths: str = Field(default="", alias="ACCESS_LOG_SKIP_PATHS")
    access_log_disable_details: bool = Field(default=False, alias="ACCESS_LOG_DISABLE_DETAILS")
    access_log_details_with_context_keys: bool = Field(
        default=False,
        alias="ACCESS_LOG_DETAILS_WITH_CONTEXT_KEYS",
    )
    access_log_details_with_body: bool = Field(default=False, alias="ACCESS_LOG_DETAILS_WITH_BODY")

    @property
    def skip_paths(self) -> frozenset[str]:
        return frozenset(p.strip() for p in self.access_log_skip_paths.split(",") if p.strip())

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
