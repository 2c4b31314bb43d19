"""
Trashcan Relay — Application Configuration
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "trashcan-relay"
    APP_ENV: str = "development"
    APP_DEBUG: bool = False
    APP_PORT: int = 5000
    APP_HOST: str = "0.0.0.0"

    # Detection store
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/trashcan.db"
    STORE_TIMEOUT_S: float = 5.0

    # MQTT bus
    MQTT_BROKER_URL: str = "mqtt://localhost:1883"
    MQTT_CLIENT_ID: str = "trashcan-relay"
    MQTT_KEEPALIVE_S: int = 60
    MQTT_RECONNECT_MIN_S: int = 1
    MQTT_RECONNECT_MAX_S: int = 30

    # Topics
    TOPIC_HEALTH: str = "trashcan/health"
    TOPIC_ACTIVITY: str = "trashcan/activity"
    TOPIC_DETECTION: str = "ml/detection"
    TOPIC_CONTROL: str = "trashcan/control"
    TOPIC_FEEDBACK: str = "ml/feedback"

    # Auth
    JWT_SECRET: str = "trashcan-dev-secret-change-me-0123456789"
    JWT_EXPIRY_HOURS: int = 12
    RELAY_USERS: str = "admin:password123"

    # Relay / sessions
    RELAY_QUEUE_SIZE: int = 1000
    RELAY_DRAIN_TIMEOUT_S: float = 5.0
    SESSION_QUEUE_SIZE: int = 256
    MAX_SESSIONS: int = 64

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def users(self) -> dict[str, str]:
        """Parse RELAY_USERS ("user:password,user2:password2")."""
        result = {}
        for entry in self.RELAY_USERS.split(","):
            name, sep, password = entry.strip().partition(":")
            if name and sep:
                result[name] = password
        return result


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
