from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    algorithm: str = "HS256"

    # "production" hides upstream error bodies from API clients
    environment: str = "development"
    log_level: str = "INFO"

    cors_origins: List[str] = ["*"]

    # KFTC open banking settings
    kftc_base_url: str = "https://testapi.openbanking.or.kr"
    kftc_client_id: Optional[str] = None
    kftc_client_secret: Optional[str] = None
    kftc_redirect_uri: Optional[str] = None
    kftc_client_use_code: Optional[str] = None
    kftc_timeout_seconds: float = 30.0

    oauth_state_ttl_seconds: int = 600
    token_refresh_buffer_seconds: int = 120

    @field_validator("kftc_base_url")
    @classmethod
    def strip_trailing_slashes(cls, value: str) -> str:
        return (value or "https://testapi.openbanking.or.kr").rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def missing_kftc_settings(self) -> List[str]:
        """Names of the required provider env vars that are not set."""
        missing = []
        if not self.kftc_client_id:
            missing.append("KFTC_CLIENT_ID")
        if not self.kftc_client_secret:
            missing.append("KFTC_CLIENT_SECRET")
        if not self.kftc_redirect_uri:
            missing.append("KFTC_REDIRECT_URI")
        return missing

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
