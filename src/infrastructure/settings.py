from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Log Reactor"
    environment: str = "dev"
    log_level: str = "INFO"
    selector: Literal["default", "select", "poll", "epoll", "kqueue"] = "default"
    priority_bands: int | None = None
    fill_size: int = 4096
    read_size: int = 4096
    flush_size: int = 65536
    inactivity_timeout: float | None = None
    read_low_watermark: int = 0
    write_limit: int | None = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
