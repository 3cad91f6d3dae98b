import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}

class Settings:
    # App
    APP_NAME: str = os.getenv("APP_NAME", "libris")
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", "8000"))

    # DB
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./libris.db")

    # Circulation rules
    LOAN_PERIOD_DAYS: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    RENEWAL_DAYS: int = int(os.getenv("RENEWAL_DAYS", "14"))
    MAX_RENEWALS: int = int(os.getenv("MAX_RENEWALS", "2"))
    FINE_DAILY_RATE: Decimal = Decimal(os.getenv("FINE_DAILY_RATE", "1.00"))
    # "now" extiende desde la fecha de renovación, "due_date" desde el vencimiento vigente
    RENEWAL_BASIS: str = os.getenv("RENEWAL_BASIS", "now")

    # Reconciliación periódica del estado overdue
    ENABLE_OVERDUE_RECONCILER: bool = _as_bool(os.getenv("ENABLE_OVERDUE_RECONCILER"), False)
    RECONCILE_INTERVAL_SECONDS: int = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "3600"))

settings = Settings()
