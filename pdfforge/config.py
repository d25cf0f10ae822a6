# pdfforge/config.py
import logging
import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from environment variables."""

    max_upload_mb: int = 25
    backend_timeout_s: int = 120
    work_dir: Path = Path(tempfile.gettempdir()) / "pdfforge"

    soffice_bin: str = "soffice"
    gs_bin: str = "gs"
    pdftoppm_bin: str = "pdftoppm"
    chromium_bin: str = "chromium"

    blob_store: str = "auto"  # auto | supabase | memory | none
    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = "processed-files"

    cron_secret: str = ""
    secret_key: str = "dev-secret-change-me"
    public_base_url: str = ""
    log_level: str = "INFO"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


def load_settings() -> Settings:
    return Settings(
        max_upload_mb=_env_int("MAX_UPLOAD_MB", 25),
        backend_timeout_s=_env_int("BACKEND_TIMEOUT_S", 120),
        work_dir=Path(os.environ.get("WORK_DIR") or Path(tempfile.gettempdir()) / "pdfforge"),
        soffice_bin=os.environ.get("SOFFICE_BIN", "soffice"),
        gs_bin=os.environ.get("GS_BIN", "gs"),
        pdftoppm_bin=os.environ.get("PDFTOPPM_BIN", "pdftoppm"),
        chromium_bin=os.environ.get("CHROMIUM_BIN", "chromium"),
        blob_store=os.environ.get("BLOB_STORE", "auto").strip().lower(),
        supabase_url=os.environ.get("SUPABASE_URL", "").rstrip("/"),
        supabase_key=os.environ.get("SUPABASE_SERVICE_KEY", ""),
        storage_bucket=os.environ.get("STORAGE_BUCKET", "processed-files"),
        cron_secret=os.environ.get("CRON_SECRET", ""),
        secret_key=os.environ.get("APP_SECRET_KEY", "dev-secret-change-me"),
        public_base_url=os.environ.get("APP_URL", "").rstrip("/"),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return load_settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
