import os
from decimal import Decimal
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip()
        try:
            return Decimal(raw or default)
        except Exception:
            return Decimal(default)

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except Exception:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/merchant_pos')
        # Comma-separated list of allowed CORS origins for the merchant console.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Display currency on receipts and cash-session notes.
        self.currency = (os.getenv("POS_CURRENCY") or "SLE").strip().upper() or "SLE"
        # Fraction, e.g. 0.15 for 15%. Products may override with their own tax_rate.
        self.default_tax_rate = self._env_decimal("POS_DEFAULT_TAX_RATE", "0")
        self.held_order_ttl_hours = self._env_int("HELD_ORDER_TTL_HOURS", 24)
        self.session_days = self._env_int("SESSION_DAYS", 14)
        self.pin_max_attempts = self._env_int("POS_PIN_MAX_ATTEMPTS", 5)
        self.pin_lock_minutes = self._env_int("POS_PIN_LOCK_MINUTES", 30)

settings = Settings()
