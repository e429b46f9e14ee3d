from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    # Application Settings
    APP_NAME: str = "ProctorWatch Integrity Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    @property
    def debug(self) -> bool:
        return self.DEBUG

    # API Settings
    API_V1_PREFIX: str = "/api/v1"
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Supabase Configuration
    SUPABASE_URL: str
    SUPABASE_KEY: str
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    @property
    def supabase_url(self) -> str:
        return self.SUPABASE_URL

    @property
    def supabase_key(self) -> str:
        return self.SUPABASE_KEY

    @property
    def supabase_service_role_key(self) -> Optional[str]:
        return self.SUPABASE_SERVICE_ROLE_KEY

    # CORS Settings
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    @property
    def host(self) -> str:
        return self.HOST

    @property
    def port(self) -> int:
        return self.PORT

    # Override codes
    OVERRIDE_CODE_TTL_SECONDS: int = 300  # 5 minutes
    OVERRIDE_CODE_LENGTH: int = 6

    # Enforcement cadences (seconds)
    PROCESS_ENFORCER_INTERVAL_SECONDS: float = 2.0
    CLIPBOARD_ENFORCER_INTERVAL_SECONDS: float = 1.0
    FOCUS_ENFORCER_INTERVAL_SECONDS: float = 1.0
    KEYBOARD_HOOK_ENABLED: bool = False  # system-wide; keep off unless the kiosk needs it
    EXAM_WINDOW_TITLE: str = "ProctorWatch"

    # Risk scanning
    RISK_SCAN_INTERVAL_SECONDS: float = 10.0
    RISK_FLAG_MEDIUM_THRESHOLD: float = 0.40
    RISK_FLAG_HIGH_THRESHOLD: float = 0.70
    RISK_FLAG_DEBOUNCE_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
