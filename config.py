import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        storage_dir: Path,
        log_level: str,
        max_upload_bytes: int,
        categorize_on_import: bool,
    ) -> None:
        self.database_url = database_url
        self.storage_dir = storage_dir
        self.log_level = log_level
        self.max_upload_bytes = max_upload_bytes
        self.categorize_on_import = categorize_on_import


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    storage_dir = Path(
        os.getenv("LEDGER_STORAGE_DIR", str(data_dir / "imports"))
    ).resolve()
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    max_upload_bytes = int(os.getenv("LEDGER_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    categorize_on_import = _env_flag("LEDGER_CATEGORIZE_ON_IMPORT", True)
    return Settings(
        database_url=database_url,
        storage_dir=storage_dir,
        log_level=log_level,
        max_upload_bytes=max_upload_bytes,
        categorize_on_import=categorize_on_import,
    )
