"""
Configuration management using Pydantic Settings
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    # Database
    DATABASE_URL: str = "sqlite:///./detective.db"
    
    # Redis (persisted case cache tier)
    REDIS_URL: str = "redis://redis:6379/0"
    
    # Application
    APP_NAME: str = "Detective Puzzle API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    
    # Rate Limiting
    RATE_LIMIT_PER_MINUTE: int = 120
    RATE_LIMIT_PER_HOUR: int = 2000
    PAYMENT_RATE_LIMIT_PER_MINUTE: int = 10
    
    # Case cache
    CASE_CACHE_TTL: int = 300  # 5 minutes
    
    # Payment gateway (PortOne V2)
    PORTONE_API_SECRET: Optional[str] = None
    PORTONE_API_URL: str = "https://api.portone.io"
    PORTONE_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_CURRENCY: str = "KRW"
    
    # Auth session settling
    SESSION_POLL_INTERVAL_MS: int = 100
    SESSION_POLL_TIMEOUT_MS: int = 5000
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
