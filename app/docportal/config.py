import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    storage_timeout_seconds: int
    storage_put_retries: int
    signed_url_ttl_seconds: int

    enrichment_mode: str
    enrichment_workers: int
    enrichment_timeout_seconds: int
    gemini_api_key: str
    gemini_model: str
    translation_language: str

    max_upload_mb: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///docportal.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        storage_timeout_seconds=_getenv_int("STORAGE_TIMEOUT_SECONDS", 30),
        storage_put_retries=_getenv_int("STORAGE_PUT_RETRIES", 3),
        signed_url_ttl_seconds=_getenv_int("SIGNED_URL_TTL_SECONDS", 900),
        enrichment_mode=_getenv("ENRICHMENT_MODE", "background").lower(),
        enrichment_workers=_getenv_int("ENRICHMENT_WORKERS", 2),
        enrichment_timeout_seconds=_getenv_int("ENRICHMENT_TIMEOUT_SECONDS", 60),
        gemini_api_key=_getenv("GEMINI_API_KEY", ""),
        gemini_model=_getenv("GEMINI_MODEL", "gemini-1.5-flash-latest"),
        translation_language=_getenv("TRANSLATION_LANGUAGE", "Malayalam"),
        max_upload_mb=_getenv_int("MAX_UPLOAD_MB", 25),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "STORAGE_TIMEOUT_SECONDS": s.storage_timeout_seconds,
        "STORAGE_PUT_RETRIES": s.storage_put_retries,
        "SIGNED_URL_TTL_SECONDS": s.signed_url_ttl_seconds,
        # enrichment (text extraction + summary/translation)
        "ENRICHMENT_MODE": s.enrichment_mode,  # background | inline | off
        "ENRICHMENT_WORKERS": s.enrichment_workers,
        "ENRICHMENT_TIMEOUT_SECONDS": s.enrichment_timeout_seconds,
        "GEMINI_API_KEY": s.gemini_api_key,
        "GEMINI_MODEL": s.gemini_model,
        "TRANSLATION_LANGUAGE": s.translation_language,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        "MAX_CONTENT_LENGTH": s.max_upload_mb * 1024 * 1024,
    }
