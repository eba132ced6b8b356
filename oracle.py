# oracle.py
import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

import requests

from models import Asset

logger = logging.getLogger(__name__)


class CoinGeckoOracle:
    """Spot prices in fiat from a CoinGecko-compatible API.

    Returns None when a price is unavailable; callers must not treat that as zero.
    """

    def __init__(self, base_url="https://api.coingecko.com/api/v3", api_key="", currency="usd",
                 native_price_id="ethereum", timeout=10.0, cache_seconds=60.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.currency = currency
        self.native_price_id = native_price_id
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.session = session or requests.Session()
        self._cache: Dict[str, Tuple[float, Decimal]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg) -> "CoinGeckoOracle":
        return cls(base_url=cfg.price_api_url, api_key=cfg.price_api_key,
                   native_price_id=cfg.native_price_id)

    def spot_price(self, asset: Optional[Asset] = None) -> Optional[Decimal]:
        """Fiat price of one unit of asset (native asset when None)."""
        key = "native" if asset is None or asset.is_native else asset.asset_id
        cached = self._cached(key)
        if cached is not None:
            return cached

        try:
            if key == "native":
                price = self._simple_price(self.native_price_id)
            else:
                price = self._token_price(key)
        except (requests.RequestException, ValueError) as e:
            logger.warning("Price lookup failed for %s: %s", key, e)
            return None

        if price is not None:
            with self._lock:
                self._cache[key] = (time.monotonic(), price)
        return price

    def _cached(self, key: str) -> Optional[Decimal]:
        with self._lock:
            hit = self._cache.get(key)
        if hit and time.monotonic() - hit[0] < self.cache_seconds:
            return hit[1]
        return None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    def _get(self, path: str, params: Dict[str, str]) -> dict:
        resp = self.session.get(f"{self.base_url}{path}", params=params,
                                headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected price payload: {str(data)[:200]}")
        return data

    def _simple_price(self, coin_id: str) -> Optional[Decimal]:
        data = self._get("/simple/price", {"ids": coin_id, "vs_currencies": self.currency})
        return _as_price(data.get(coin_id, {}).get(self.currency))

    def _token_price(self, contract_address: str) -> Optional[Decimal]:
        data = self._get(
            "/simple/token_price/ethereum",
            {"contract_addresses": contract_address, "vs_currencies": self.currency},
        )
        entry = data.get(contract_address) or data.get(contract_address.lower()) or {}
        return _as_price(entry.get(self.currency))


def _as_price(raw) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        price = Decimal(str(raw))
    except InvalidOperation:
        return None
    return price if price > 0 else None
