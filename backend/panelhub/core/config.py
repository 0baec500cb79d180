from pydantic_settings import BaseSettings, SettingsConfigDict
import os

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=os.getenv("ENV_FILE", ".env"), extra="ignore")

    APP_NAME: str = "panelhub"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    PANEL_TLS_VERIFY: bool = True
    HTTP_TIMEOUT_SECONDS: float = 20.0
    HTTP_CONNECT_TIMEOUT_SECONDS: float = 5.0

    # Bearer tokens are not introspected; reuse them for a fixed window.
    SESSION_TTL_SECONDS: int = 600
    # 3x-ui session cookies live considerably longer than Marzban tokens.
    XUI_SESSION_TTL_SECONDS: int = 3000

    ROUTEROS_CONNECT_TIMEOUT_SECONDS: float = 5.0
    ROUTEROS_READ_TIMEOUT_SECONDS: float = 30.0

    REDIS_URL: str = "redis://localhost:6379/0"
    SESSION_META_PREFIX: str = "panelhub:session"

settings = Settings()
