import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Hosted backend
    supabase_url: str = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip("/")
    supabase_anon_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    supabase_service_role_key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    supabase_functions_url: Optional[str] = os.getenv("SUPABASE_FUNCTIONS_URL")
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))

    # Storage
    storage_bucket: str = os.getenv("STORAGE_BUCKET", "library")
    cover_folder: str = os.getenv("COVER_FOLDER", "book-covers")
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "5242880"))  # 5MB
    allowed_image_extensions: list = field(default_factory=lambda: [
        ext.strip().lower() for ext in os.getenv("ALLOWED_IMAGE_EXTENSIONS", ".jpg,.jpeg,.png,.gif,.webp").split(",")
        if ext.strip()
    ])

    # Lending
    borrow_period_days: int = int(os.getenv("BORROW_PERIOD_DAYS", "14"))

    # Web server
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    function_port: int = int(os.getenv("FUNCTION_PORT", "8001"))

    # Sessions
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    session_cookie: str = os.getenv("SESSION_COOKIE", "library_session")
    session_max_age: int = int(os.getenv("SESSION_MAX_AGE", "604800"))  # 7 days

    # Query cache
    cache_ttl: int = int(os.getenv("CACHE_TTL", "60"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Lending App")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def functions_url(self) -> str:
        return (self.supabase_functions_url or f"{self.supabase_url}/functions/v1").rstrip("/")


settings = Settings()
