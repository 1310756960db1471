"""
Payment Method Catalogue
========================
What the storefront offers at checkout: one entry per payment method with
the gateway that settles it, the amount limits and the fee the provider
charges the store. Online methods are available only while their gateway is
configured; offline methods always are.

Fees are recorded on the order when a payment starts. They are the store's
cost and are never added to the amount charged to the customer.
"""

from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from maison_orders.errors import ValidationError
from maison_orders.gateways import GatewayRegistry
from maison_orders.schemas.orders import PAYMENT_METHOD_PROVIDERS, LocalizedText, PaymentMethod, quantize_money
from maison_orders.schemas.payments import FeeQuote, FeeSchedule, PaymentMethodInfo
from maison_orders.services.currency import CurrencyConverter

logger = structlog.get_logger().bind(component="payment_methods")


def _method(
    method: PaymentMethod,
    kind: str,
    name: tuple,
    description: tuple,
    currencies: List[str],
    limits: tuple,
    fees: FeeSchedule,
) -> PaymentMethodInfo:
    return PaymentMethodInfo(
        method=method,
        provider=PAYMENT_METHOD_PROVIDERS.get(method),
        type=kind,
        display_name=LocalizedText(en=name[0], ar=name[1]),
        description=LocalizedText(en=description[0], ar=description[1]),
        supported_currencies=currencies,
        min_amount=Decimal(limits[0]),
        max_amount=Decimal(limits[1]),
        fees=fees,
    )


DEFAULT_PAYMENT_METHODS: Dict[PaymentMethod, PaymentMethodInfo] = {
    info.method: info for info in [
        _method(
            PaymentMethod.CREDIT_CARD, "card",
            ("Credit / Debit Card", "بطاقة ائتمان"),
            ("Pay securely with your Visa or Mastercard", "ادفع بأمان باستخدام بطاقة الفيزا أو الماستركارد"),
            ["EGP", "USD"], ("10", "50000"),
            FeeSchedule(fixed_fee=Decimal("5"), percentage_fee=Decimal("2.5"), fee_currency="EGP"),
        ),
        _method(
            PaymentMethod.VODAFONE_CASH, "mobile_wallet",
            ("Vodafone Cash", "فودافون كاش"),
            ("Pay easily with Vodafone Cash wallet", "ادفع بسهولة باستخدام محفظة فودافون كاش"),
            ["EGP"], ("5", "30000"),
            FeeSchedule(fixed_fee=Decimal("2"), percentage_fee=Decimal("1.5"), fee_currency="EGP"),
        ),
        _method(
            PaymentMethod.PAYPAL, "digital_wallet",
            ("PayPal", "باي بال"),
            ("Pay securely with your PayPal account", "ادفع بأمان باستخدام حساب PayPal الخاص بك"),
            ["USD", "EUR"], ("1", "10000"),
            FeeSchedule(percentage_fee=Decimal("3.4"), fee_currency="USD"),
        ),
        _method(
            PaymentMethod.CASH_ON_DELIVERY, "cash",
            ("Cash on Delivery", "الدفع عند الاستلام"),
            ("Pay cash when you receive your order", "ادفع نقداً عند استلام طلبك"),
            ["EGP"], ("50", "10000"),
            FeeSchedule(fixed_fee=Decimal("15"), fee_currency="EGP"),
        ),
        _method(
            PaymentMethod.BANK_TRANSFER, "bank_transfer",
            ("Bank Transfer", "تحويل بنكي"),
            ("Transfer the amount to our bank account", "حول المبلغ إلى حسابنا البنكي"),
            ["EGP"], ("100", "100000"),
            FeeSchedule(fee_currency="EGP"),
        ),
    ]
}


class PaymentMethodCatalogue:
    """
    Payment methods with live availability and fee quotes.

    Example:
        catalogue = PaymentMethodCatalogue(registry, CurrencyConverter())
        quote = await catalogue.quote(PaymentMethod.PAYPAL, Decimal("33.75"), "USD")
    """

    def __init__(
        self,
        gateways: GatewayRegistry,
        converter: Optional[CurrencyConverter] = None,
        methods: Optional[Dict[PaymentMethod, PaymentMethodInfo]] = None,
    ):
        self.gateways = gateways
        self.converter = converter or CurrencyConverter()
        self.methods = methods or DEFAULT_PAYMENT_METHODS

    def get(self, method: PaymentMethod) -> PaymentMethodInfo:
        info = self.methods.get(method)
        if info is None:
            raise ValidationError(f"Payment method {method.value} is not offered")
        return info.model_copy(update={"available": info.provider is None or info.provider in self.gateways})

    def list_methods(self) -> List[PaymentMethodInfo]:
        return [self.get(method) for method in self.methods]

    async def quote(self, method: PaymentMethod, amount: Decimal, currency: str) -> FeeQuote:
        """Provider fee for `amount` in `currency`. The fixed part is converted from the fee currency."""
        info = self.get(method)
        currency = currency.upper()

        fixed = info.fees.fixed_fee
        if fixed and info.fees.fee_currency != currency:
            fixed, _ = await self.converter.convert(fixed, info.fees.fee_currency, currency)

        fees = quantize_money(fixed + Decimal(amount) * info.fees.percentage_fee / 100)
        logger.debug("fee_quoted", method=method.value, amount=str(amount), currency=currency, fees=str(fees))
        return FeeQuote(
            payment_method=method,
            amount=amount,
            fees=fees,
            total=Decimal(amount) + fees,
            currency=currency,
        )
