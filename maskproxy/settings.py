from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MP_", env_file=".env", extra="ignore")

    service_name: str = "maskproxy"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    config_path: str = "configs/maskproxy.yaml"
    redis_url: str = "redis://redis:6379/0"

    upstream_base_url: str = "https://api.openai.com"
    upstream_timeout_s: float = 120.0
    presidio_url: str = "http://presidio-analyzer:3000"
    presidio_timeout_s: float = 30.0
    presidio_startup_retries: int = 30


settings = Settings()
