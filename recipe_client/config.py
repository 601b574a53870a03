from typing import Dict
from urllib.parse import urlparse
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Core
    log_level: str = "INFO"
    service_env: str = "dev"  # dev|prod

    # API
    api_base_url: str = "http://localhost:8000"
    recipes_endpoint: str = "/recipes"
    images_endpoint: str = "/images"

    # Transporte
    request_timeout_s: float = 30.0
    max_retries: int = 3          # intentos totales, no reintentos adicionales
    retry_delay_s: float = 1.0    # base del backoff exponencial

    # Query cache
    stale_time_s: float = 300.0   # 5 min
    gc_time_s: float = 600.0      # 10 min

    @property
    def is_dev(self) -> bool:
        return self.service_env == "dev"

    def api_url(self, endpoint: str) -> str:
        return self.api_base_url.rstrip("/") + endpoint

    def request_options(self) -> Dict[str, float]:
        return {
            "timeout": self.request_timeout_s,
            "retries": self.max_retries,
            "retry_delay": self.retry_delay_s,
        }

    @model_validator(mode="after")
    def _validate(self) -> "Settings":
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.gc_time_s < self.stale_time_s:
            raise ValueError("gc_time_s must not be shorter than stale_time_s")
        if self.service_env != "dev":
            parsed = urlparse(self.api_base_url)
            if parsed.scheme == "http" and parsed.hostname not in ("localhost", "127.0.0.1"):
                raise ValueError("api_base_url must use https outside development")
        return self

settings = Settings()
