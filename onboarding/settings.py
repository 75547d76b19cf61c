import os
from dotenv import load_dotenv

load_dotenv()


def _csv(name: str, default: str) -> tuple:
    return tuple(x.strip().upper() for x in os.getenv(name, default).split(",") if x.strip())


class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "onboarding")

    # CM (external master-data system) gateway
    CM_BASE_URL: str = os.getenv("CM_BASE_URL", "")
    CM_API_KEY: str = os.getenv("CM_API_KEY", "")
    CM_TIMEOUT_SEC: float = float(os.getenv("CM_TIMEOUT_SEC", "10"))
    CM_CREATE_PATH: str = os.getenv("CM_CREATE_PATH", "/onboarding")
    CM_UPDATE_PATH: str = os.getenv("CM_UPDATE_PATH", "/onboarding/update")
    CM_PARTY_PATH: str = os.getenv("CM_PARTY_PATH", "/party")

    # Error classification data. A CM error code is retryable when it is listed
    # in CM_RETRYABLE_CODES or starts with one of CM_RETRYABLE_PREFIXES.
    CM_RETRYABLE_CODES: tuple = _csv("CM_RETRYABLE_CODES", "CMONB1,CMONB2,CMONB7")
    CM_RETRYABLE_PREFIXES: tuple = _csv("CM_RETRYABLE_PREFIXES", "CMTMP")

    # MZ mapping (code translation table)
    MZ_MAPPING_KEY: str = os.getenv("MZ_MAPPING_KEY", "mz:mapping")
    # 0 disables periodic refresh (explicit reload only).
    MZ_MAPPING_REFRESH_SEC: int = int(os.getenv("MZ_MAPPING_REFRESH_SEC", "300"))

    # Activity log durability
    ACTIVITY_APPEND_ATTEMPTS: int = int(os.getenv("ACTIVITY_APPEND_ATTEMPTS", "3"))
    ACTIVITY_APPEND_BACKOFF_MS: int = int(os.getenv("ACTIVITY_APPEND_BACKOFF_MS", "50"))

    # Writing a CM result back to the record, retried on Redis errors
    RESULT_WRITE_ATTEMPTS: int = int(os.getenv("RESULT_WRITE_ATTEMPTS", "3"))
    RESULT_WRITE_BACKOFF_MS: int = int(os.getenv("RESULT_WRITE_BACKOFF_MS", "100"))

    # Advisory lock TTL. Raised at runtime to cover the worst-case CM call:
    # httpx applies CM_TIMEOUT_SEC to each phase (connect, write, read, pool).
    RECORD_LOCK_TTL_MS: int = int(os.getenv("RECORD_LOCK_TTL_MS", "30000"))

    # Downstream "create local user" collaborator
    ENABLE_LOCAL_USER_PROVISIONING: bool = os.getenv("ENABLE_LOCAL_USER_PROVISIONING", "true").lower() == "true"
    USER_SERVICE_URL: str = os.getenv("USER_SERVICE_URL", "")
    USER_SERVICE_TIMEOUT_SEC: float = float(os.getenv("USER_SERVICE_TIMEOUT_SEC", "5"))

    # Security & Privacy
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"
    ADMIN_RBAC_ENABLED: bool = os.getenv("ADMIN_RBAC_ENABLED", "true").lower() == "true"
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

settings = Settings()
