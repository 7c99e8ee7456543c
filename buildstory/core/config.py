"""
Configuration management for BuildStory
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration"""

    # Supabase
    SUPABASE_URL: str = os.getenv('SUPABASE_URL', '')
    SUPABASE_SERVICE_KEY: str = os.getenv('SUPABASE_SERVICE_KEY', '')

    # Storage round-trips must fit inside a page render
    STORAGE_TIMEOUT_SECONDS: float = float(os.getenv('STORAGE_TIMEOUT_SECONDS', '2.0'))

    # Bandit
    DEFAULT_TIMEOUT_MINUTES: int = int(os.getenv('DEFAULT_TIMEOUT_MINUTES', '5'))
    ARM_UPDATE_MAX_ATTEMPTS: int = int(os.getenv('ARM_UPDATE_MAX_ATTEMPTS', '10'))

    # Event ingestion
    MAX_EVENT_BATCH: int = int(os.getenv('MAX_EVENT_BATCH', '10'))

    @classmethod
    def validate(cls) -> bool:
        """Validate required configuration"""
        required = {
            'SUPABASE_URL': cls.SUPABASE_URL,
            'SUPABASE_SERVICE_KEY': cls.SUPABASE_SERVICE_KEY,
        }

        missing = [k for k, v in required.items() if not v]

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        return True

    @classmethod
    def get(cls, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get configuration value"""
        return getattr(cls, key, default)
