"""Application settings loaded from .env via pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration — values come from environment / .env file."""

    # Upstream music API
    upstream_base_url: str = "https://dab.yeet.su/api"
    upstream_referer: str = "https://dab.yeet.su/"
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/137.0.0.0 Safari/537.36"
    )

    # Proxies (one per line, see core/proxies.py)
    proxies_file: str = "proxies.txt"

    # Retry / timeouts (seconds)
    max_retries: int = 3
    search_timeout: float = 15.0
    search_backoff_base: float = 1.0
    stream_timeout: float = 10.0
    stream_backoff_base: float = 0.5
    validate_timeout: float = 5.0

    # Progressive loading
    initial_chunk_bytes: int = 8194304
    proactive_switch: bool = True

    # App
    secret_key: str = "change-me"
    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def proxies_abs_path(self) -> Path:
        """Return the proxy list path as an absolute Path."""
        return Path(self.proxies_file).resolve()


@lru_cache
def get_settings() -> Settings:
    """Cached singleton so .env is read only once."""
    return Settings()
