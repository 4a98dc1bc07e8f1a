from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from urllib.parse import quote_plus
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    # Environment Configuration
    ENVIRONMENT: Environment = Environment.DEVELOPMENT

    # Project Information
    PROJECT_NAME: str = "reminder-service"
    VERSION: str = "0.1.0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Database - PostgreSQL in deployed environments, SQLite file for local runs
    POSTGRES_SERVER: Optional[str] = None
    POSTGRES_PORT: Optional[int] = None
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DB: Optional[str] = None
    SQLALCHEMY_DATABASE_URI: Optional[str] = None

    @model_validator(mode="after")
    def _derive_database_uri(self) -> "Settings":
        if self.SQLALCHEMY_DATABASE_URI:
            return self
        if self.POSTGRES_USER and self.POSTGRES_SERVER and self.POSTGRES_PORT and self.POSTGRES_DB:
            safe_user = quote_plus(self.POSTGRES_USER)
            if self.POSTGRES_PASSWORD:
                safe_password = quote_plus(self.POSTGRES_PASSWORD)
                self.SQLALCHEMY_DATABASE_URI = (
                    f"postgresql://{safe_user}:{safe_password}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
                )
            else:
                self.SQLALCHEMY_DATABASE_URI = (
                    f"postgresql://{safe_user}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
                )
        else:
            self.SQLALCHEMY_DATABASE_URI = "sqlite:///./reminders.db"
        return self

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra='ignore')


settings = Settings()
