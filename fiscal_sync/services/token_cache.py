"""Per-tenant access token cache owned by the Wix client."""
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class CachedToken:
    access_token: str
    expires_at: float  # clock() value


class TokenCache:
    """
    Access tokens keyed by tenant, refreshed when less than `refresh_margin`
    seconds of validity remain.
    """

    def __init__(self, refresh_margin: int = 60, clock: Callable[[], float] = time.monotonic):
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._tokens: Dict[int, CachedToken] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: int) -> Optional[str]:
        """Return a token that stays valid beyond the refresh margin, else None."""
        with self._lock:
            cached = self._tokens.get(tenant_id)
            if cached is None:
                return None
            if cached.expires_at - self._clock() < self.refresh_margin:
                del self._tokens[tenant_id]
                return None
            return cached.access_token

    def put(self, tenant_id: int, access_token: str, expires_in: int) -> None:
        with self._lock:
            self._tokens[tenant_id] = CachedToken(access_token, self._clock() + max(int(expires_in), 0))

    def invalidate(self, tenant_id: int) -> None:
        with self._lock:
            self._tokens.pop(tenant_id, None)
