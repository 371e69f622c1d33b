"""
Configuration management for the CRM bulk importer.

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {'1', 'true', 'yes', 'on'}


class Config:
    """Configuration settings loaded from environment."""

    # Backing store: PostgREST (Supabase) or direct Postgres
    SUPABASE_URL: str = os.getenv('SUPABASE_URL', '')
    SUPABASE_KEY: str = os.getenv('SUPABASE_KEY', '') or os.getenv('SUPABASE_SERVICE_ROLE_KEY', '')
    DATABASE_URL: str = os.getenv('DATABASE_URL', '')
    STORE_TIMEOUT_SECONDS: float = float(os.getenv('STORE_TIMEOUT_SECONDS', '30'))

    # Import run
    CHUNK_SIZE: int = int(os.getenv('IMPORT_CHUNK_SIZE', '200'))
    MAX_ROWS: int = int(os.getenv('IMPORT_MAX_ROWS', '15000'))
    MAX_UPLOAD_BYTES: int = int(os.getenv('IMPORT_MAX_UPLOAD_BYTES', str(50 * 1024 * 1024)))
    HEADER_SCAN_ROWS: int = int(os.getenv('IMPORT_HEADER_SCAN_ROWS', '10'))
    DEFAULT_STAGE: str = os.getenv('IMPORT_DEFAULT_STAGE', 'not contacted')
    DEFAULT_TIMEZONE: str = os.getenv('IMPORT_DEFAULT_TIMEZONE', 'PST')
    CHUNK_YIELD_SECONDS: float = float(os.getenv('IMPORT_CHUNK_YIELD_SECONDS', '0.005'))
    USE_TRANSACTION: bool = _env_bool('IMPORT_USE_TRANSACTION', 'true')

    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')


# Singleton config instance
config = Config()
