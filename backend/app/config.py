"""
FastAPI Application Configuration
"""
import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment"""
    
    model_config = SettingsConfigDict(
        env_file=os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), ".env"),
        case_sensitive=True,
        extra="ignore"
    )
    
    # App
    APP_NAME: str = "TrialGuard API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    
    # Create missing tables on startup
    AUTO_CREATE_TABLES: bool = True
    
    # Run analysis triggered by record ingestion in the background
    ANALYZE_IN_BACKGROUND: bool = True
    
    # CORS
    CORS_ORIGINS: list = ["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
