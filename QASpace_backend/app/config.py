from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8098
    FRONTEND_URL: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_PATH: str = "qaspace.db"
    DATABASE_ECHO: bool = False

    # Auth (tokens are issued by the auth service, only verified here)
    AUTH_JWT_SECRET: str = ""
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_USER_HEADERS: str = "x-user-id"
    AUTH_TOKEN_HEADERS: str = "authorization,x-auth-token"

    # Archiving scheduler
    ARCHIVE_SCHEDULER_ENABLED: bool = True
    ARCHIVE_INTERVAL_SECONDS: int = 300
    ARCHIVE_TIMEOUT_SECONDS: float = 60.0
    ARCHIVE_RUN_ON_START: bool = False

    # Difficulty ranking
    RANKING_ENABLED: bool = True
    RANKING_API_URL: str = ""
    RANKING_API_KEY: str = ""
    RANKING_TIMEOUT_SECONDS: float = 15.0
    RANKING_SUMMARY_URL: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
