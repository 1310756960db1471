"""
Payment gateway adapters and the registry that hands them to the services.

Only providers with credentials are registered; asking for any other one
raises ConfigurationError.
"""

from typing import Dict, Iterable, List, Optional

import httpx
import structlog

from maison_orders.config import FawryConfig, PaymobConfig, PayPalConfig, Settings
from maison_orders.errors import ConfigurationError
from maison_orders.gateways.base import HttpGateway, PaymentGatewayAdapter, TokenCache
from maison_orders.gateways.fawry import FawryGateway
from maison_orders.gateways.paymob import PaymobGateway
from maison_orders.gateways.paypal import PayPalGateway

logger = structlog.get_logger().bind(component="gateway_registry")


class GatewayRegistry:
    """Provider name -> adapter"""

    def __init__(self, adapters: Optional[Iterable[PaymentGatewayAdapter]] = None):
        self._adapters: Dict[str, PaymentGatewayAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PaymentGatewayAdapter) -> PaymentGatewayAdapter:
        self._adapters[adapter.name] = adapter
        logger.debug("gateway_registered", provider=adapter.name)
        return adapter

    def get(self, provider: str) -> PaymentGatewayAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(f"Payment provider '{provider}' is not configured")
        return adapter

    def __contains__(self, provider: str) -> bool:
        return provider in self._adapters

    @property
    def providers(self) -> List[str]:
        return sorted(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def build_gateways(
    settings: Settings,
    paypal: Optional[PayPalConfig] = None,
    paymob: Optional[PaymobConfig] = None,
    fawry: Optional[FawryConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> GatewayRegistry:
    """Construct every configured adapter; log and skip the rest."""
    http_options = {
        "client": client,
        "timeout": settings.http_timeout_seconds,
        "status_attempts": settings.status_check_attempts,
        "status_backoff_seconds": settings.status_check_backoff_seconds,
    }
    candidates = [
        (PayPalGateway, paypal or PayPalConfig.from_env()),
        (PaymobGateway, paymob or PaymobConfig.from_env()),
        (FawryGateway, fawry or FawryConfig.from_env()),
    ]

    registry = GatewayRegistry()
    for adapter_cls, config in candidates:
        try:
            registry.register(adapter_cls(config, **http_options))
        except ConfigurationError as e:
            logger.warning("gateway_not_configured", provider=adapter_cls.name, reason=e.message)

    logger.info("gateways_ready", providers=registry.providers)
    return registry


__all__ = [
    "FawryGateway",
    "GatewayRegistry",
    "HttpGateway",
    "PaymentGatewayAdapter",
    "PaymobGateway",
    "PayPalGateway",
    "TokenCache",
    "build_gateways",
]
