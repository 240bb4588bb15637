import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        import_batch_size: int,
        recalc_batch_size: int,
        recurring_lookback_months: int,
        detect_recurring_after_import: bool,
        max_upload_mb: int,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.import_batch_size = import_batch_size
        self.recalc_batch_size = recalc_batch_size
        self.recurring_lookback_months = recurring_lookback_months
        self.detect_recurring_after_import = detect_recurring_after_import
        self.max_upload_mb = max_upload_mb


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
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Paris")
    csrf_secret = os.getenv(
        "LEDGER_CSRF_SECRET",
        "5d1c0f8e2b7a4f3c9e6d8a1b0c2e4f6a8b9d7c5e3f1a2b4c6d8e0f9a7b5c3d1e",
    )
    import_batch_size = int(os.getenv("LEDGER_IMPORT_BATCH_SIZE", "200"))
    recalc_batch_size = int(os.getenv("LEDGER_RECALC_BATCH_SIZE", "500"))
    lookback = int(os.getenv("LEDGER_RECURRING_LOOKBACK_MONTHS", "12"))
    detect_after_import = _env_flag("LEDGER_DETECT_RECURRING_AFTER_IMPORT", True)
    max_upload_mb = int(os.getenv("LEDGER_MAX_UPLOAD_MB", "25"))
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        import_batch_size=max(1, import_batch_size),
        recalc_batch_size=max(1, recalc_batch_size),
        recurring_lookback_months=max(1, lookback),
        detect_recurring_after_import=detect_after_import,
        max_upload_mb=max_upload_mb,
    )
