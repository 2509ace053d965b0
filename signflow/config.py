"""Engine configuration from environment."""
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so env vars are available everywhere
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SIGNFLOW_", env_file=str(_env_path), extra="ignore")

    app_name: str = "signflow"
    database_url: str = "sqlite:///./signflow.db"
    log_level: str = "INFO"

    # Invitation tokens
    token_ttl_days: int = 7
    max_resends: int = 3

    # Reminders
    max_reminders_per_signer: int = 3
    min_hours_between_reminders: int = 24

    # Workflow timing
    max_processing_time_ms: int = 300_000

    # Security
    signature_max_age_hours: int = 24
    timestamp_floor: datetime = datetime(2020, 1, 1)
    clock_skew_seconds: int = 300
    signing_key_id: str = "signflow-local-1"
    signing_secret: str = "dev-only-signing-secret"
    allowed_key_ids: List[str] = ["signflow-local-1"]
    allowed_storage_prefixes: List[str] = ["evidence/", "consent/"]
    allowed_audit_users: List[str] = []
    # Callers allowed to run maintenance sweeps; empty refuses everyone
    maintenance_users: List[str] = []

    # Compliance
    allowed_algorithms: List[str] = [
        "HMAC_SHA256",
        "SHA256_RSA",
        "SHA384_RSA",
        "SHA512_RSA",
        "ECDSA_P256_SHA256",
        "ECDSA_P384_SHA384",
    ]
    min_security_level: str = "LOW"
    compliance_level: str = "BASIC"
    legal_validity_days: int = 365
    retention_period: int = 7
    retention_unit: str = "YEARS"
    archive_required: bool = True
    delete_after_retention: bool = False
    trusted_certificate_issuers: List[str] = []

    # Envelope composition
    require_unique_emails_per_envelope: bool = True

    # HTTP
    cors_origins: List[str] = ["*"]

    @field_validator("database_url")
    @classmethod
    def normalize_postgres_scheme(cls, v: str) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        v = (v or "").strip()
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("min_security_level", "compliance_level", "retention_unit", "log_level")
    @classmethod
    def upper(cls, v: str) -> str:
        return (v or "").strip().upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
