from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field("sqlite:///storerate.db")
    api_title: str = Field("Store Rating API")
    api_host: str = Field("127.0.0.1")
    api_port: int = Field(8000)
    session_backend: str = Field("memory", description="memory or database")
    session_ttl_seconds: int = Field(60 * 60 * 24)
    session_cookie_name: str = Field("storerate_session")
    session_cookie_secure: bool = Field(False)
    login_rate_limit: str = Field("5/minute")
    rate_limit_enabled: bool = Field(True)
    seed_demo_data: bool = Field(False)


settings = Settings()
