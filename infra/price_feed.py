"""HTTP price source backed by a simple JSON quote endpoint."""

import logging
import math
from typing import Optional

import requests

from core.exceptions import PriceUnavailable
from core.interfaces import PriceSource

logger = logging.getLogger(__name__)


class HttpPriceSource(PriceSource):
    """
    GET ``{base_url}/price?address=<token>`` and read a numeric field from the JSON body.

    Network errors, HTTP errors and unusable payloads raise PriceUnavailable;
    the monitor counts those as a failed fetch for the token.
    """

    def __init__(self, base_url: str, price_field: str = "price", timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.price_field = price_field
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, price_feed_config) -> "HttpPriceSource":
        return cls(
            base_url=price_feed_config.base_url,
            price_field=price_feed_config.price_field,
            timeout=price_feed_config.timeout_seconds,
        )

    def get_price(self, token_address: str) -> Optional[float]:
        url = f"{self.base_url}/price"
        try:
            r = self._session.get(url, params={"address": token_address}, timeout=self.timeout)
            r.raise_for_status()
            data = r.json() or {}
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else "?"
            logger.warning(f"Price API error {status_code} for {token_address}")
            raise PriceUnavailable(token_address, e) from e
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Network error fetching price for {token_address}: {e}")
            raise PriceUnavailable(token_address, e) from e
        except ValueError as e:
            logger.warning(f"Non-JSON price response for {token_address}: {e}")
            raise PriceUnavailable(token_address, e) from e

        raw = data.get(self.price_field) if isinstance(data, dict) else None
        try:
            price = float(raw)
        except (TypeError, ValueError):
            logger.warning(f"Price response for {token_address} has no usable '{self.price_field}': {raw!r}")
            return None
        if not math.isfinite(price) or price <= 0:
            logger.warning(f"Discarding non-positive price for {token_address}: {price}")
            return None
        return price


__all__ = ["HttpPriceSource"]
