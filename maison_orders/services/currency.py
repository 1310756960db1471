"""
Currency Conversion
===================
Orders are priced in the store currency (SAR) while each gateway charges in
its own (PayPal USD, Paymob and Fawry EGP). Rates come from a RateProvider:

- StaticRateProvider: fixed table; inverse and cross-via-USD rates derived
- HttpRateProvider:   exchangerate-api with a TTL cache; falls back to static
"""

import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

import httpx
import structlog

from maison_orders.errors import ConfigurationError
from maison_orders.schemas.orders import quantize_money

logger = structlog.get_logger().bind(component="currency")

PIVOT_CURRENCY = "USD"

DEFAULT_RATES: Dict[Tuple[str, str], Decimal] = {
    ("EGP", "USD"): Decimal("0.032"),
    ("USD", "EGP"): Decimal("31.25"),
    ("EUR", "USD"): Decimal("1.08"),
    ("USD", "EUR"): Decimal("0.93"),
    ("SAR", "USD"): Decimal("0.27"),
    ("SAR", "EUR"): Decimal("0.24"),
    ("SAR", "GBP"): Decimal("0.21"),
}

EXCHANGE_RATE_URL = "https://api.exchangerate-api.com/v4/latest/{base}"


class RateProvider(ABC):
    @abstractmethod
    async def get_rate(self, source: str, target: str) -> Decimal:
        """Units of `target` per one unit of `source`. Raises ConfigurationError if unknown."""
        pass

    async def close(self) -> None:
        pass


class StaticRateProvider(RateProvider):
    def __init__(self, rates: Optional[Dict[Tuple[str, str], Decimal]] = None):
        self.rates = dict(DEFAULT_RATES if rates is None else rates)

    def _direct(self, source: str, target: str) -> Optional[Decimal]:
        if source == target:
            return Decimal("1")
        if (source, target) in self.rates:
            return self.rates[(source, target)]
        inverse = self.rates.get((target, source))
        if inverse:
            return Decimal("1") / inverse
        return None

    def lookup(self, source: str, target: str) -> Decimal:
        source, target = source.upper(), target.upper()
        rate = self._direct(source, target)
        if rate is not None:
            return rate

        to_pivot = self._direct(source, PIVOT_CURRENCY)
        from_pivot = self._direct(PIVOT_CURRENCY, target)
        if to_pivot is not None and from_pivot is not None:
            return to_pivot * from_pivot

        raise ConfigurationError(f"No exchange rate available for {source} to {target}")

    async def get_rate(self, source: str, target: str) -> Decimal:
        return self.lookup(source, target)


class HttpRateProvider(RateProvider):
    """Live rates per base currency, cached for `ttl_seconds`"""

    def __init__(
        self,
        ttl_seconds: int = 3600,
        timeout: float = 5.0,
        fallback: Optional[StaticRateProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
        url_template: str = EXCHANGE_RATE_URL,
    ):
        self.ttl_seconds = ttl_seconds
        self.url_template = url_template
        self.fallback = fallback or StaticRateProvider()
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._cache: Dict[str, Tuple[Dict[str, Decimal], float]] = {}

    async def _rates_for(self, base: str) -> Dict[str, Decimal]:
        cached = self._cache.get(base)
        if cached and time.monotonic() - cached[1] < self.ttl_seconds:
            return cached[0]

        response = await self._client.get(self.url_template.format(base=base))
        response.raise_for_status()
        rates = {code: Decimal(str(value)) for code, value in response.json()["rates"].items()}
        self._cache[base] = (rates, time.monotonic())
        logger.info("exchange_rates_refreshed", base=base, currencies=len(rates))
        return rates

    async def get_rate(self, source: str, target: str) -> Decimal:
        source, target = source.upper(), target.upper()
        if source == target:
            return Decimal("1")
        try:
            rates = await self._rates_for(source)
            if target in rates:
                return rates[target]
            logger.warning("exchange_rate_missing", source=source, target=target)
        except (httpx.HTTPError, AttributeError, KeyError, ValueError, TypeError, InvalidOperation) as e:
            logger.warning("exchange_rates_unavailable", source=source, error=str(e))
        return self.fallback.lookup(source, target)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CurrencyConverter:
    def __init__(self, provider: Optional[RateProvider] = None):
        self.provider = provider or StaticRateProvider()

    async def convert(self, amount: Decimal, source: str, target: str) -> Tuple[Decimal, Decimal]:
        """Return (converted amount rounded to cents, rate used)"""
        rate = await self.provider.get_rate(source, target)
        return quantize_money(Decimal(amount) * rate), rate

    async def close(self) -> None:
        await self.provider.close()
