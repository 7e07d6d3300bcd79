"""Marketplace price and fee lookups (Amazon Selling Partner API)."""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from arbwatch.config import PricingSettings
from arbwatch.utils.retry import (
    RETRY_EXCEPTIONS,
    RETRY_STATUS_CODES,
    RetryPolicy,
    TransientFetchError,
    retry_async,
)

logger = logging.getLogger(__name__)

PRICING_PATH = "/products/pricing/v0/price"
FEES_PATH = "/products/fees/v0/items/{marketplace_id}/feesEstimate"
TOKEN_REFRESH_MARGIN = 60


class PricingError(RuntimeError):
    """The oracle could not produce a usable price or fee."""


class PricingOracle(Protocol):
    async def get_price(self, marketplace_id: str) -> float: ...

    async def get_fees(self, marketplace_id: str, price: float) -> float: ...


class SellingPartnerClient:
    def __init__(
        self,
        settings: PricingSettings,
        *,
        session: httpx.AsyncClient | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or httpx.AsyncClient(timeout=settings.timeout)
        self._retry = retry or RetryPolicy(max_retries=2, min_delay=1.0, max_delay=4.0)
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    async def close(self) -> None:
        await self.session.aclose()

    async def get_price(self, marketplace_id: str) -> float:
        params = {
            "MarketplaceId": self.settings.marketplace_id,
            "Asins": marketplace_id,
            "ItemType": "Asin",
        }
        data = await self._call("GET", PRICING_PATH, params=params)
        try:
            price = _listing_price(data)
        except (AttributeError, LookupError, TypeError, ValueError) as exc:
            raise PricingError(f"Malformed price payload for {marketplace_id}") from exc
        if price is None or price <= 0:
            raise PricingError(f"No valid price found for {marketplace_id}")
        return price

    async def get_fees(self, marketplace_id: str, price: float) -> float:
        body = {
            "FeesEstimateRequest": {
                "MarketplaceId": self.settings.marketplace_id,
                "IsAmazonFulfilled": True,
                "Identifier": f"fees-{marketplace_id}",
                "PriceToEstimateFees": {
                    "ListingPrice": {"CurrencyCode": "USD", "Amount": price},
                    "Shipping": {"CurrencyCode": "USD", "Amount": 0},
                },
            }
        }
        data = await self._call("POST", FEES_PATH.format(marketplace_id=marketplace_id), json=body)
        try:
            amount = data["payload"]["FeesEstimateResult"]["FeesEstimate"]["TotalFeesEstimate"]["Amount"]
            return float(amount)
        except (KeyError, TypeError, ValueError) as exc:
            raise PricingError(f"No fee estimate for {marketplace_id}") from exc

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._token()
        url = self.settings.endpoint.rstrip("/") + path
        try:
            response = await retry_async(self._request, self._retry)(
                method, url, headers={"x-amz-access-token": token}, **kwargs
            )
            response.raise_for_status()
            data = response.json()
        except (*RETRY_EXCEPTIONS, httpx.HTTPError, ValueError) as exc:
            raise PricingError(f"{method} {path} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise PricingError(f"{method} {path} returned {type(data).__name__}, expected an object")
        return data

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self.session.request(method, url, **kwargs)
        if response.status_code in RETRY_STATUS_CODES:
            raise TransientFetchError(response.status_code, url)
        return response

    async def _token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not (self.settings.refresh_token and self.settings.client_id and self.settings.client_secret):
            raise PricingError("Selling Partner API credentials are not configured")
        try:
            response = await self.session.post(
                self.settings.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.settings.refresh_token,
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                },
            )
            response.raise_for_status()
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
        except (httpx.HTTPError, LookupError, TypeError, ValueError, AttributeError) as exc:
            raise PricingError(f"Token exchange failed: {exc!r}") from exc
        if not access_token:
            raise PricingError("Token exchange returned an empty access token")
        self._access_token = access_token
        self._token_expires_at = time.monotonic() + expires_in - TOKEN_REFRESH_MARGIN
        logger.debug("Refreshed Selling Partner access token")
        return self._access_token


def _listing_price(data: dict[str, Any]) -> float | None:
    payload = data.get("payload") or []
    if not payload:
        return None
    product = payload[0].get("Product") or {}
    offers = product.get("Offers") or []
    candidates = [
        (offers[0].get("BuyingPrice") or {}).get("ListingPrice") if offers else None,
        (payload[0].get("Price") or {}).get("ListingPrice"),
    ]
    for candidate in candidates:
        if candidate and candidate.get("Amount") is not None:
            return float(candidate["Amount"])
    return None
