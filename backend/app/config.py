import os
from decimal import Decimal, InvalidOperation
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip() or default
        try:
            return Decimal(raw)
        except (InvalidOperation, ValueError):
            return Decimal(default)

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/mandi')
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Fallback commission % for purchase invoices when neither the request
        # nor the tenant settings carry one.
        self.default_commission_rate = self._env_decimal("DEFAULT_COMMISSION_RATE", "0")
        try:
            self.tenant_settings_ttl = float(os.getenv("TENANT_SETTINGS_TTL_SECONDS", "60"))
        except ValueError:
            self.tenant_settings_ttl = 60.0

settings = Settings()
