"""
Stripe implementation of the payment provider adapter.

The Stripe SDK is synchronous, so each call runs in a worker thread and is
bounded by ``timeout_seconds``. Stripe objects are read with item access so
the adapter works equally with SDK objects and plain dictionaries.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
import structlog

from community_support.billing.exceptions import (
    PaymentDeclined,
    ProviderRejected,
    ProviderResourceNotFound,
    ProviderUnavailable,
)
from community_support.billing.metrics import BillingMetrics, get_billing_metrics
from community_support.billing.money_utils import money_handler
from community_support.billing.providers.base import (
    CustomerRef,
    OfferingRef,
    PaymentProviderAdapter,
    ProviderSubscription,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PROVIDER_NAME = "stripe"

# Stripe amounts follow its own decimal rules for a handful of currencies
STRIPE_ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)  # fmt: skip
STRIPE_THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})

STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "pending",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


def normalize_stripe_status(status: str | None) -> str:
    """Map a Stripe subscription status onto the internal vocabulary."""
    if status is None:
        return "pending"
    return STATUS_MAP.get(status, "pending")


def stripe_precision(currency: str) -> int:
    code = currency.upper()
    if code in STRIPE_ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in STRIPE_THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _list_data(result: Any) -> list[Any]:
    return list(_field(result, "data", []) or [])


def subscription_period(sub: Any) -> tuple[datetime | None, datetime | None]:
    """Read the current period, falling back to the first subscription item."""
    start = _timestamp(_field(sub, "current_period_start"))
    end = _timestamp(_field(sub, "current_period_end"))
    if start is None or end is None:
        items = _list_data(_field(sub, "items"))
        if items:
            start = start or _timestamp(_field(items[0], "current_period_start"))
            end = end or _timestamp(_field(items[0], "current_period_end"))
    return start, end


class StripeProviderAdapter(PaymentProviderAdapter):
    """Payment provider adapter backed by ``stripe.StripeClient``."""

    name = PROVIDER_NAME

    def __init__(
        self,
        client: "stripe.StripeClient",
        timeout_seconds: float = 20.0,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics or get_billing_metrics()

    @classmethod
    def from_config(cls, api_key: str, timeout_seconds: float = 20.0, max_network_retries: int = 0):
        client = stripe.StripeClient(api_key, max_network_retries=max_network_retries)
        return cls(client, timeout_seconds=timeout_seconds)

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call in a thread and translate its failures."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout_seconds
            )
        except TimeoutError:
            self._record_failure(operation, "TIMEOUT")
            logger.warning(
                "stripe.call.timeout", operation=operation, timeout_seconds=self.timeout_seconds
            )
            raise ProviderUnavailable(
                f"Stripe did not answer {operation} within {self.timeout_seconds}s",
                provider=PROVIDER_NAME,
                provider_code="timeout",
            )
        except stripe.CardError as e:
            self._record_failure(operation, "PAYMENT_DECLINED")
            logger.info("stripe.card.declined", operation=operation, code=e.code)
            raise PaymentDeclined(
                e.user_message or "The payment method was declined",
                provider=PROVIDER_NAME,
                provider_code=e.code,
            ) from e
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                self._record_failure(operation, "PROVIDER_RESOURCE_NOT_FOUND")
                raise ProviderResourceNotFound(
                    f"Stripe resource not found during {operation}", provider=PROVIDER_NAME
                ) from e
            self._record_failure(operation, "PROVIDER_REJECTED")
            logger.warning("stripe.request.rejected", operation=operation, code=e.code)
            raise ProviderRejected(
                e.user_message or f"Stripe rejected {operation}",
                provider=PROVIDER_NAME,
                provider_code=e.code,
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            self._record_failure(operation, "PROVIDER_UNAVAILABLE")
            logger.warning("stripe.call.unavailable", operation=operation, error=str(e))
            raise ProviderUnavailable(
                f"Stripe is unavailable for {operation}",
                provider=PROVIDER_NAME,
                provider_code=e.code,
            ) from e
        except stripe.StripeError as e:
            self._record_failure(operation, "PROVIDER_REJECTED")
            logger.error("stripe.call.failed", operation=operation, error=str(e))
            raise ProviderRejected(
                f"Stripe call {operation} failed",
                provider=PROVIDER_NAME,
                provider_code=e.code,
            ) from e

    def _record_failure(self, operation: str, error_code: str) -> None:
        self.metrics.record_provider_failure(PROVIDER_NAME, operation, error_code)

    def _to_provider_subscription(self, sub: Any) -> ProviderSubscription:
        start, end = subscription_period(sub)
        now = datetime.now(UTC)
        start = start or now
        end = end or start
        return ProviderSubscription(
            id=_field(sub, "id"),
            status=normalize_stripe_status(_field(sub, "status")),
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=bool(_field(sub, "cancel_at_period_end", False)),
        )

    async def ensure_customer(
        self, email: str, display_name: str | None, internal_user_id: int
    ) -> CustomerRef:
        existing = await self._call(
            "customers.list",
            self.client.customers.list,
            params={"email": email, "limit": 1},
        )
        customers = _list_data(existing)
        if customers:
            customer = customers[0]
        else:
            params: dict[str, Any] = {
                "email": email,
                "metadata": {"user_id": str(internal_user_id)},
            }
            if display_name:
                params["name"] = display_name
            customer = await self._call(
                "customers.create", self.client.customers.create, params=params
            )
            logger.info("stripe.customer.created", customer_id=_field(customer, "id"))

        return CustomerRef(id=_field(customer, "id"), email=email)

    async def ensure_priced_offering(
        self,
        community_id: int,
        plan_id: int,
        name: str,
        description: str | None,
        amount_minor: int,
        currency: str,
    ) -> OfferingRef:
        if amount_minor <= 0:
            raise ProviderRejected(
                f"Plan amount must be positive, got {amount_minor}", provider=PROVIDER_NAME
            )
        if not currency or not money_handler.is_valid_currency(currency):
            raise ProviderRejected(f"Unknown currency: {currency!r}", provider=PROVIDER_NAME)

        code = money_handler.normalize_currency(currency)
        try:
            unit_amount = money_handler.rescale_minor_units(
                amount_minor, money_handler.get_currency_precision(code), stripe_precision(code)
            )
        except ValueError as e:
            raise ProviderRejected(str(e), provider=PROVIDER_NAME) from e

        metadata = {"community_id": str(community_id), "plan_id": str(plan_id)}
        found = await self._call(
            "products.search",
            self.client.products.search,
            params={
                "query": (
                    f"active:'true' AND metadata['community_id']:'{community_id}' "
                    f"AND metadata['plan_id']:'{plan_id}'"
                ),
                "limit": 1,
            },
        )
        products = _list_data(found)
        if products:
            product_id = _field(products[0], "id")
        else:
            params: dict[str, Any] = {"name": name, "metadata": metadata}
            if description:
                params["description"] = description
            product = await self._call(
                "products.create", self.client.products.create, params=params
            )
            product_id = _field(product, "id")
            logger.info(
                "stripe.product.created",
                product_id=product_id,
                community_id=community_id,
                plan_id=plan_id,
            )

        prices = await self._call(
            "prices.list",
            self.client.prices.list,
            params={"product": product_id, "active": True, "type": "recurring", "limit": 100},
        )
        for price in _list_data(prices):
            recurring = _field(price, "recurring", {})
            if (
                _field(price, "unit_amount") == unit_amount
                and str(_field(price, "currency", "")).upper() == code
                and _field(recurring, "interval") == "month"
                and _field(recurring, "interval_count", 1) == 1
            ):
                return OfferingRef(
                    product_id=product_id,
                    price_id=_field(price, "id"),
                    amount_minor=amount_minor,
                    currency=code,
                )

        price = await self._call(
            "prices.create",
            self.client.prices.create,
            params={
                "product": product_id,
                "unit_amount": unit_amount,
                "currency": code.lower(),
                "recurring": {"interval": "month"},
                "metadata": metadata,
            },
        )
        logger.info("stripe.price.created", product_id=product_id, price_id=_field(price, "id"))
        return OfferingRef(
            product_id=product_id,
            price_id=_field(price, "id"),
            amount_minor=amount_minor,
            currency=code,
        )

    async def create_provider_subscription(
        self,
        customer: CustomerRef,
        offering: OfferingRef,
        payment_method_ref: str,
        metadata: dict[str, str] | None = None,
    ) -> ProviderSubscription:
        await self._call(
            "payment_methods.attach",
            self.client.payment_methods.attach,
            payment_method_ref,
            params={"customer": customer.id},
        )
        await self._call(
            "customers.update",
            self.client.customers.update,
            customer.id,
            params={"invoice_settings": {"default_payment_method": payment_method_ref}},
        )
        sub = await self._call(
            "subscriptions.create",
            self.client.subscriptions.create,
            params={
                "customer": customer.id,
                "items": [{"price": offering.price_id}],
                "default_payment_method": payment_method_ref,
                "expand": ["latest_invoice.payment_intent"],
                "metadata": metadata or {},
            },
        )
        result = self._to_provider_subscription(sub)
        logger.info(
            "stripe.subscription.created",
            provider_subscription_id=result.id,
            status=result.status,
        )
        return result

    async def cancel_provider_subscription(
        self, provider_subscription_id: str, at_period_end: bool
    ) -> ProviderSubscription:
        if at_period_end:
            sub = await self._call(
                "subscriptions.update",
                self.client.subscriptions.update,
                provider_subscription_id,
                params={"cancel_at_period_end": True},
            )
        else:
            sub = await self._call(
                "subscriptions.cancel", self.client.subscriptions.cancel, provider_subscription_id
            )
        result = self._to_provider_subscription(sub)
        logger.info(
            "stripe.subscription.cancel",
            provider_subscription_id=provider_subscription_id,
            at_period_end=at_period_end,
            status=result.status,
        )
        return result


__all__ = [
    "StripeProviderAdapter",
    "normalize_stripe_status",
    "stripe_precision",
    "subscription_period",
]
