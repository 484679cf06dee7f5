import json
import threading
import time
from decimal import Decimal
from typing import Callable, Optional

from .config import settings
from .invoice_calc import clamp_commission_rate
from .singleflight import SingleFlight


class TenantSettingsCache:
    """
    Per-tenant invoice settings (`tenant_settings`, key `invoice`) with a TTL.

    Concurrent misses for one tenant trigger a single read; the others wait
    for it through this cache's own SingleFlight.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict = {}
        self._flight = SingleFlight()

    def _load(self, cur, tenant_id: str) -> dict:
        cur.execute(
            """
            SELECT value_json
            FROM tenant_settings
            WHERE tenant_id = %s AND key = 'invoice'
            """,
            (tenant_id,),
        )
        row = cur.fetchone()
        raw = row.get("value_json") if row else None
        if isinstance(raw, str):
            raw = json.loads(raw) if raw.strip() else {}
        return dict(raw or {})

    def get(self, cur, tenant_id: str) -> dict:
        now = self._clock()
        with self._lock:
            hit = self._entries.get(tenant_id)
            if hit and hit[0] > now:
                return hit[1]

        def refresh() -> dict:
            value = self._load(cur, tenant_id)
            with self._lock:
                self._entries[tenant_id] = (self._clock() + self.ttl_seconds, value)
            return value

        return self._flight.do(tenant_id, refresh)

    def commission_rate(self, cur, tenant_id: str) -> Decimal:
        raw = self.get(cur, tenant_id).get("commission_rate")
        if raw is None:
            raw = settings.default_commission_rate
        bad: list = []
        rate = clamp_commission_rate(raw, recovered=bad)
        if bad:
            # Unparsable tenant value; fall back to the service default.
            return clamp_commission_rate(settings.default_commission_rate)
        return rate

    def invalidate(self, tenant_id: Optional[str] = None):
        with self._lock:
            if tenant_id is None:
                self._entries.clear()
            else:
                self._entries.pop(tenant_id, None)


tenant_settings = TenantSettingsCache(ttl_seconds=settings.tenant_settings_ttl)
