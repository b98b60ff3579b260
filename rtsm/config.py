"""
RTSM Engine Configuration
"""
import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from rtsm.database.enums import SlotPolicy


class Settings(BaseSettings):
    """Engine settings loaded from environment"""

    model_config = SettingsConfigDict(
        env_file=os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"),
        case_sensitive=True,
        extra="ignore"
    )

    # App
    APP_NAME: str = "RTSM Randomization Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Randomization
    PREVIEW_LIMIT: int = 50
    CLAIM_MAX_ATTEMPTS: int = 5
    DEFAULT_SLOT_POLICY: SlotPolicy = SlotPolicy.ACROSS_STRATA
    DEFAULT_DRUG_KIT_PREFIX: str = "KIT"

    # Audit trail
    AUDIT_SECRET_KEY: str = "rtsm-audit-secret-for-dev-only"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
