# chatrelay/core/config.py
import os
from typing import List, Literal
from dotenv import load_dotenv

class Settings:
    """
    Setup environment variables.
        - STORE_BACKEND where users, rooms and messages are persisted: "memory" or "redis"
        - REDIS_* connection details for the redis store
        - HISTORY_LIMIT how many persisted messages are replayed on room join
        - DEFAULT_USERNAME display name for clients that connect without one
    """

    # Load environment variables from the .env file
    load_dotenv()

    STORE_BACKEND: Literal["memory", "redis"] = os.getenv("STORE_BACKEND", "memory")

    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_ACCESS_KEY: str = os.getenv("REDIS_ACCESS_KEY", "")
    REDIS_SSL: bool = os.getenv("REDIS_SSL", "false").lower() == "true"
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "chat")

    HISTORY_LIMIT: int = int(os.getenv("HISTORY_LIMIT", "50"))
    DEFAULT_USERNAME: str = os.getenv("DEFAULT_USERNAME", "Anonymous")
    AVATAR_BASE_URL: str = os.getenv("AVATAR_BASE_URL", "https://ui-avatars.com/api/")

    ALLOWED_ORIGINS: List[str] = [
        origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",") if origin.strip()
    ]

    @property
    def redis_url(self) -> str:
        """Explicit REDIS_URL wins, otherwise compose one from host/port/key."""
        if self.REDIS_URL:
            return self.REDIS_URL
        scheme = "rediss" if self.REDIS_SSL else "redis"
        auth = f":{self.REDIS_ACCESS_KEY}@" if self.REDIS_ACCESS_KEY else ""
        return f"{scheme}://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}"

settings = Settings()
