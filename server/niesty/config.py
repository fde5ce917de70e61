import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]


@dataclass
class Settings:
    # Database
    database_url: str

    # Server
    port: int

    # Auth
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"

    # Cloudflare Turnstile
    turnstile_secret_key: Optional[str] = None

    app_env: str = "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


# Global settings instance
_settings: Optional[Settings] = None


def parse_origins(raw: Optional[str]) -> list[str]:
    """Origin allow-list from a comma-separated ALLOWED_ORIGINS value."""
    if not raw:
        return list(DEFAULT_ALLOWED_ORIGINS)
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


def load_settings() -> Settings:
    global _settings
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    # JWT settings
    jwt_secret_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_secret_key:
        import secrets
        jwt_secret_key = secrets.token_urlsafe(32)
        print("[WARNING] JWT_SECRET_KEY not set. Using random key (sessions won't persist across restarts)")

    _settings = Settings(
        database_url=database_url.strip().strip('"'),
        port=int(os.getenv("PORT", "8000")),
        jwt_secret_key=jwt_secret_key,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        turnstile_secret_key=os.getenv("TURNSTILE_SECRET_KEY") or None,
        app_env=os.getenv("APP_ENV", "development").strip().lower(),
    )
    return _settings


def get_settings() -> Settings:
    """Get the loaded settings. Must call load_settings() first."""
    global _settings
    if _settings is None:
        raise RuntimeError("Settings not initialized. Call load_settings() first.")
    return _settings
