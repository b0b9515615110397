from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FALCON_", extra="ignore")

    APP_NAME: str = "Falcon Network Analyzer"
    APP_DESCRIPTION: str = "Job orchestration and stream views for the Falcon capture analysis backend"
    APP_VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    BACKEND_URL: str = "http://localhost:8080"
    REQUEST_TIMEOUT: float = 10.0
    POLL_INTERVAL_MS: int = 1000
    NOT_FOUND_RETRY_LIMIT: int = 5
    FILTER_DEBOUNCE_MS: int = 500
    REPORT_DIR: str = "."
    LOG_LEVEL: str = "INFO"


settings = Settings()
