import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Gemini settings
    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY_GEMINI")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    gemini_base_url: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
    gemini_timeout: float = float(os.getenv("GEMINI_TIMEOUT", "30"))

    # HTTP client pool
    http_max_connections: int = int(os.getenv("HTTP_MAX_CONNECTIONS", "20"))
    http_max_keepalive: int = int(os.getenv("HTTP_MAX_KEEPALIVE", "10"))

    # Lending rules
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    min_loan_days: int = 1
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "730"))
    loan_duration_presets: list = field(default_factory=lambda: [7, 14, 30])

    # Placeholder covers, keyed by isbn (or a unique seed when isbn is empty)
    cover_image_template: str = os.getenv("COVER_IMAGE_TEMPLATE", "https://picsum.photos/seed/{seed}/400/600")

    # Upload settings
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB
    spreadsheet_extensions: list = field(default_factory=lambda: [".xlsx", ".xls", ".csv", ".txt"])

    # Application settings
    app_name: str = os.getenv("APP_NAME", "School Library Manager")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    seed_on_startup: bool = os.getenv("SEED_ON_STARTUP", "True").lower() in ("true", "1", "yes")

    # Feature flags
    enable_ai_features: bool = os.getenv("ENABLE_AI_FEATURES", "True").lower() in ("true", "1", "yes")


settings = Settings()
