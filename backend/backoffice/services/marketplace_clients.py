# Overview: HTTP clients that push stock levels to external marketplaces (Tiendanube, MercadoLibre).

from __future__ import annotations

import threading
import time

import httpx

from ..errors import ExternalSyncError
from ..models import MarketplacePlatform


class RateLimiter:
    """Minimum spacing between calls, shared by every thread using the same account."""

    def __init__(self, per_second: float):
        self.min_interval = 1.0 / per_second
        self._lock = threading.Lock()
        self._next_at = 0.0

    def wait(self) -> None:
        with self._lock:
            now = time.monotonic()
            delay = self._next_at - now
            self._next_at = max(now, self._next_at) + self.min_interval
        if delay > 0:
            time.sleep(delay)


_limiters: dict[tuple[str, str], RateLimiter] = {}
_limiters_lock = threading.Lock()


def limiter_for(platform: str, account_id: str, per_second: float) -> RateLimiter:
    key = (platform, str(account_id))
    with _limiters_lock:
        limiter = _limiters.get(key)
        if limiter is None:
            limiter = _limiters[key] = RateLimiter(per_second)
        return limiter


class MarketplaceClient:
    """
    Base client: one PUT per stock update.

    HTTP 429 is retried with doubling delay (backoff_base, 2x, 4x...) up to
    max_attempts; any other non-2xx or transport failure raises
    ExternalSyncError immediately.
    """

    platform: MarketplacePlatform
    requests_per_second: float = 1.0

    def __init__(
        self,
        *,
        base_url: str,
        account_id: str,
        access_token: str,
        user_agent: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 0.6,
        transport: httpx.BaseTransport | None = None,
    ):
        self.account_id = str(account_id)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = float(backoff_base)
        self._limiter = limiter_for(self.platform.value, self.account_id, self.requests_per_second)
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=self.auth_headers(access_token) | {
                "User-Agent": user_agent,
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def auth_headers(self, access_token: str) -> dict:
        raise NotImplementedError

    def push_stock(self, item_id: str, variant_id: str | None, quantity: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _put(self, path: str, payload: dict) -> httpx.Response:
        for attempt in range(self.max_attempts):
            self._limiter.wait()
            try:
                response = self._client.put(path, json=payload)
            except httpx.HTTPError as exc:
                raise ExternalSyncError(
                    f"{self.platform.value} request failed: {exc}", platform=self.platform.value
                ) from exc

            if response.status_code == 429:
                if attempt >= self.max_attempts - 1:
                    raise ExternalSyncError(
                        f"{self.platform.value} rate limit persisted after {self.max_attempts} attempts",
                        platform=self.platform.value,
                        status=429,
                    )
                time.sleep(self.backoff_base * (2 ** attempt))
                continue

            if response.is_error:
                raise ExternalSyncError(
                    f"{self.platform.value} rejected stock update ({response.status_code}): {response.text[:200]}",
                    platform=self.platform.value,
                    status=response.status_code,
                )
            return response
        raise ExternalSyncError(f"{self.platform.value} request was not attempted", platform=self.platform.value)


class TiendanubeClient(MarketplaceClient):
    """Stock lives on variants: PUT /{store_id}/products/{id}/variants/{variant_id}."""

    platform = MarketplacePlatform.TIENDANUBE
    requests_per_second = 2.0

    def __init__(self, *, base_url: str, account_id: str, **kwargs):
        super().__init__(base_url=f"{base_url.rstrip('/')}/{account_id}", account_id=account_id, **kwargs)

    def auth_headers(self, access_token: str) -> dict:
        # Tiendanube uses "Authentication", not "Authorization"
        return {"Authentication": f"bearer {access_token}"}

    def push_stock(self, item_id: str, variant_id: str | None, quantity: int) -> None:
        if not variant_id:
            raise ExternalSyncError(
                f"Tiendanube listing for product {item_id} has no variant id", platform=self.platform.value
            )
        self._put(f"/products/{item_id}/variants/{variant_id}", {"stock": quantity})


class MercadoLibreClient(MarketplaceClient):
    """PUT /items/{id} or /items/{id}/variations/{variation_id}."""

    platform = MarketplacePlatform.MERCADOLIBRE
    requests_per_second = 10.0

    def auth_headers(self, access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}"}

    def push_stock(self, item_id: str, variant_id: str | None, quantity: int) -> None:
        path = f"/items/{item_id}/variations/{variant_id}" if variant_id else f"/items/{item_id}"
        self._put(path, {"available_quantity": quantity})


CLIENTS = {
    MarketplacePlatform.TIENDANUBE: TiendanubeClient,
    MarketplacePlatform.MERCADOLIBRE: MercadoLibreClient,
}


def client_for_channel(channel, config, *, transport: httpx.BaseTransport | None = None) -> MarketplaceClient:
    """Build the platform client for a channel from app config."""
    cls = CLIENTS[channel.platform]
    base_url = config["TIENDANUBE_API_BASE"] if cls is TiendanubeClient else config["MERCADOLIBRE_API_BASE"]
    return cls(
        base_url=base_url,
        account_id=channel.external_account_id,
        access_token=channel.access_token,
        user_agent=config.get("MARKETPLACE_USER_AGENT", "Backoffice"),
        timeout=float(config.get("MARKETPLACE_HTTP_TIMEOUT", 10)),
        max_attempts=int(config.get("MARKETPLACE_SYNC_MAX_ATTEMPTS", 3)),
        backoff_base=float(config.get("MARKETPLACE_SYNC_BACKOFF_BASE", 0.6)),
        transport=transport,
    )
