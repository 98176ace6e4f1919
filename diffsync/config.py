from __future__ import annotations
from functools import lru_cache
from typing import Dict, List
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings


class EntityMapping(BaseModel):
    """How one entity type is laid out in the source and destination stores."""
    source_table: str
    destination_table: str
    id_column: str = "id"
    timestamp_column: str = "updated_at"
    legacy_column: str = "legacy_id"
    hash_column: str = "content_hash"
    fields: List[str] = []           # empty → every non-system column


def _dispatch(source: str, destination: str) -> EntityMapping:
    return EntityMapping(source_table=source, destination_table=destination)


DEFAULT_ENTITY_MAPPINGS: Dict[str, EntityMapping] = {
    "offices": _dispatch("dispatch_office", "offices"),
    "doctors": _dispatch("dispatch_doctor", "doctors"),
    "doctor_offices": _dispatch("dispatch_doctor_office", "doctor_offices"),
    "patients": _dispatch("dispatch_patient", "patients"),
    "orders": _dispatch("dispatch_order", "orders"),
    "cases": _dispatch("dispatch_case", "cases"),
    "files": _dispatch("dispatch_file", "files"),
    "case_files": _dispatch("dispatch_case_file", "case_files"),
    "messages": _dispatch("dispatch_message", "messages"),
    "message_files": _dispatch("dispatch_message_file", "message_files"),
    "jaw": _dispatch("dispatch_jaw", "jaw"),
    "dispatch_records": _dispatch("dispatch_record", "dispatch_records"),
    "system_messages": _dispatch("dispatch_system_message", "system_messages"),
    "message_attachments": _dispatch("dispatch_message_attachment", "message_attachments"),
}


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Differential Sync Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, no default

    CORS_ORIGINS: List[str] = []

    # ── Databases ────────────────────────────────────────────────────────────
    SOURCE_DATABASE_URL: str  # required: legacy store being migrated from
    DESTINATION_DATABASE_URL: str  # required: also hosts control, log and checkpoint tables
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_MAX_RETRIES: int = 3

    # ── Redis (analysis status handles) ──────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 20
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0
    STATUS_TTL_SECONDS: int = 86400

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Detection ────────────────────────────────────────────────────────────
    DEFAULT_BATCH_SIZE: int = 1000
    MAX_BATCH_SIZE: int = 5000
    QUERY_TIMEOUT_SECONDS: float = 30.0
    DETECTION_PARALLELISM: int = 3
    RESPONSE_CHANGES_LIMIT: int = 100
    ENTITY_MAPPINGS: Dict[str, EntityMapping] = DEFAULT_ENTITY_MAPPINGS

    # ── Scheduler ────────────────────────────────────────────────────────────
    MAX_ACTIVE_ANALYSES: int = 3
    ASYNC_RECORD_THRESHOLD: int = 50_000
    ASYNC_ENTITY_THRESHOLD: int = 10
    THROUGHPUT_RECORDS_PER_MINUTE: int = 1000
    SCHEDULER_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = 15
    SYNC_ENTITIES: List[str] = []
    SYNC_SESSION_ID: str = "6f1d7a4e-2b1c-4c3e-9a55-0d3c2e1b7f10"
    SYNC_INCLUDE_DELETES: bool = False

    # ── Logs ─────────────────────────────────────────────────────────────────
    LOG_DIR: str = "./logs"
    LOG_DEFAULT_LIMIT: int = 100
    LOG_MAX_LIMIT: int = 1000
    LOG_DOWNLOAD_CAP: int = 10_000

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("MAX_BATCH_SIZE", "DEFAULT_BATCH_SIZE", "MAX_ACTIVE_ANALYSES", "DETECTION_PARALLELISM")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
