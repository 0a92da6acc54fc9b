from typing import Annotated, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./data/sessionkeeper.sqlite3"

    # 32-byte key: 64 hex chars or urlsafe base64
    ENCRYPTION_KEY: str = ""
    API_INTERNAL_KEY: str = ""
    INTERNAL_ALLOWED_IPS: Annotated[List[str], NoDecode] = []

    # CORS stays disabled unless set via env
    CORS_ORIGINS: Annotated[List[str], NoDecode] = []

    # Expiry monitor
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300
    RENEWAL_WINDOW_SECONDS: int = 600
    STANDARD_TOKEN_LIFETIME_SECONDS: int = 3600

    # Extraction scheduler
    SCHEDULER_ENABLED: bool = True
    INTER_JOB_DELAY_SECONDS: float = 5.0
    DEFAULT_JOB_SCHEDULE: str = "0 2 * * *"

    COLLABORATOR_TIMEOUT_SECONDS: float = 30.0
    STRICT_TRANSITIONS: bool = False

    # Sheets sink (service account)
    GOOGLE_SERVICE_ACCOUNT_EMAIL: str = ""
    GOOGLE_SERVICE_ACCOUNT_KEY: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("INTERNAL_ALLOWED_IPS", "CORS_ORIGINS", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("GOOGLE_SERVICE_ACCOUNT_KEY", mode="after")
    @classmethod
    def unescape_newlines(cls, v: str) -> str:
        # PEM keys usually arrive with literal "\n" in env files
        return v.replace("\\n", "\n")

settings = Settings()
