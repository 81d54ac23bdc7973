from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # MongoDB Configuration
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "storefront_db"
    
    # JWT Configuration (tokens are issued by the auth service)
    JWT_SECRET_KEY: str = "change-this-in-production"
    JWT_ALGORITHM: str = "HS256"
    
    # Real-time notifications
    REDIS_URL: str = "redis://localhost:6379/0"
    NOTIFICATIONS_ENABLED: bool = True
    NOTIFICATION_CHANNEL_PREFIX: str = "storefront"
    
    # Pricing rules
    FREE_SHIPPING_THRESHOLD: float = 100.0  # Subtotals above this ship free
    SHIPPING_FLAT_RATE: float = 10.0
    TAX_RATE: float = 0.08
    MAX_CART_ITEM_QUANTITY: int = 100
    
    # Application Settings
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Storefront"
    
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
