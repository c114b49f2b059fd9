# core/config.py
import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
import logging
from typing import Dict, List

# Load variables from .env file located in the project root directory
dotenv_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)
else:
    load_dotenv() # Fallback

class Settings(BaseSettings):
    """Loads configuration settings from environment variables and .env file."""

    # --- Database Configuration ---
    DATABASE_URL: str = "sqlite:///./workflow_images.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 0 # Pool size is the hard bound on concurrent storage operations
    DB_POOL_TIMEOUT: float = 30.0
    DB_ECHO: bool = False

    # --- Upload Validation ---
    IMAGE_MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024
    IMAGE_ALLOWED_MIME_TYPES: List[str] = [
        "image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml",
    ]

    # --- Variant Presets (JSON in env, e.g. {"thumbnail": {"width": 200, "height": 200, "quality": 85}}) ---
    IMAGE_VARIANT_PRESETS: Dict[str, Dict[str, int]] = {
        "thumbnail": {"width": 200, "height": 200, "quality": 85},
        "medium": {"width": 800, "height": 600, "quality": 85},
    }

    # --- Temp Upload Lifecycle ---
    TEMP_IMAGE_TTL_HOURS: int = 24

    # --- Variant Worker Pool ---
    VARIANT_WORKERS: int = 2
    VARIANT_MAX_ATTEMPTS: int = 3
    VARIANT_RETRY_DELAY: float = 0.5

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        extra = 'ignore'

# Instantiate settings once for import
settings = Settings()

# --- Logging Setup ---
log_level_str = os.getenv("LOG_LEVEL", "INFO").upper(); log_level = getattr(logging, log_level_str, logging.INFO)
logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - [%(levelname)s] - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
logger = logging.getLogger("WFG_Core")
logging.getLogger("httpx").setLevel(logging.WARNING); logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("PIL").setLevel(logging.WARNING); logging.getLogger("watchfiles").setLevel(logging.WARNING)

# --- Configuration Validation Checks ---
logger.info(f"Core Settings loaded. Log Level: {log_level_str}")
if settings.DATABASE_URL.startswith("sqlite"):
    logger.warning(f"Using SQLite storage at {settings.DATABASE_URL}. Suitable for development and single-admin use only.")
else:
    logger.info(f"Using database: {settings.DATABASE_URL.split('@')[-1]}") # Never log credentials

try: assert settings.DB_POOL_SIZE > 0; logger.info(f"DB pool: size={settings.DB_POOL_SIZE}, overflow={settings.DB_MAX_OVERFLOW}")
except AssertionError: logger.error(f"Invalid DB_POOL_SIZE: {settings.DB_POOL_SIZE}.")
if settings.IMAGE_MAX_UPLOAD_BYTES <= 0: logger.error(f"Invalid IMAGE_MAX_UPLOAD_BYTES: {settings.IMAGE_MAX_UPLOAD_BYTES}.")
if not settings.IMAGE_ALLOWED_MIME_TYPES: logger.warning("IMAGE_ALLOWED_MIME_TYPES is empty. Every upload will be rejected.")
for _name, _preset in settings.IMAGE_VARIANT_PRESETS.items():
    if not {"width", "height"} <= set(_preset):
        logger.error(f"Variant preset '{_name}' is missing width/height: {_preset}")
logger.info(f"Variant presets: {', '.join(settings.IMAGE_VARIANT_PRESETS) or 'none'}; workers={settings.VARIANT_WORKERS}, max attempts={settings.VARIANT_MAX_ATTEMPTS}")
