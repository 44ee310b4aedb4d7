"""Stripe API client for payment intents, checkout, invoices and subscriptions"""

import functools
from typing import Any, Dict, List, Optional

import stripe

from fairpay_gateway.domain.exceptions import PaymentProviderError
from fairpay_gateway.domain.models import (
    CheckoutLine,
    ProviderCheckoutSession,
    ProviderLineItem,
    ProviderPaymentIntent,
    ProviderSubscription,
)
from fairpay_gateway.utils.date_utils import from_unix_timestamp


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain webhook payload dict"""
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _expanded_id(value: Any) -> Optional[str]:
    """Id of a field that may be either an id string or an expanded object"""
    if value is None or isinstance(value, str):
        return value
    return field_of(value, "id")


def payment_intent_from_stripe(obj: Any) -> ProviderPaymentIntent:
    metadata = field_of(obj, "metadata", {})
    return ProviderPaymentIntent(
        id=field_of(obj, "id"),
        client_secret=field_of(obj, "client_secret"),
        status=field_of(obj, "status"),
        latest_charge=_expanded_id(field_of(obj, "latest_charge")),
        amount=int(field_of(obj, "amount", 0)),
        currency=field_of(obj, "currency"),
        description=field_of(obj, "description"),
        customer=_expanded_id(field_of(obj, "customer")),
        metadata=dict(metadata),
    )


def subscription_from_stripe(obj: Any) -> ProviderSubscription:
    """
    Map a Stripe subscription (API object or event payload).

    Period bounds moved from the subscription onto its items in recent API
    versions; both places are read.
    """
    items = field_of(field_of(obj, "items"), "data", [])
    first_item = items[0] if items else None
    price_id = _expanded_id(field_of(first_item, "price"))

    period_start = field_of(obj, "current_period_start") or field_of(first_item, "current_period_start")
    period_end = field_of(obj, "current_period_end") or field_of(first_item, "current_period_end")

    return ProviderSubscription(
        id=field_of(obj, "id"),
        status=field_of(obj, "status"),
        price_id=price_id,
        current_period_start=from_unix_timestamp(period_start),
        current_period_end=from_unix_timestamp(period_end),
        cancel_at_period_end=bool(field_of(obj, "cancel_at_period_end", False)),
        canceled_at=from_unix_timestamp(field_of(obj, "canceled_at")),
    )


def _wrap_stripe_errors(func):
    """Translate SDK errors into PaymentProviderError"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            raise PaymentProviderError(f"Stripe {func.__name__} failed: {message}") from e

    return wrapper


class StripePaymentProvider:
    """Client for the Stripe API, bound to one secret key"""

    def __init__(self, api_key: str):
        self.api_key = api_key

    @_wrap_stripe_errors
    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> ProviderPaymentIntent:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description
        if customer_id:
            params["customer"] = customer_id
        intent = stripe.PaymentIntent.create(api_key=self.api_key, **params)
        return payment_intent_from_stripe(intent)

    @_wrap_stripe_errors
    def retrieve_payment_intent(self, intent_id: str) -> ProviderPaymentIntent:
        intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        return payment_intent_from_stripe(intent)

    @_wrap_stripe_errors
    def create_checkout_session(
        self,
        customer_id: str,
        lines: List[CheckoutLine],
        currency: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        coupon_id: Optional[str] = None,
    ) -> ProviderCheckoutSession:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": line.name, "description": line.description},
                        "unit_amount": line.unit_amount,
                    },
                    "quantity": 1,
                }
                for line in lines
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return ProviderCheckoutSession(id=session.id, url=field_of(session, "url"))

    @_wrap_stripe_errors
    def list_checkout_line_items(self, session_id: str) -> List[ProviderLineItem]:
        items = stripe.checkout.Session.list_line_items(session_id, limit=100, api_key=self.api_key)
        return [
            ProviderLineItem(
                amount_total=int(field_of(item, "amount_total", 0)),
                currency=field_of(item, "currency"),
                description=field_of(item, "description"),
            )
            for item in field_of(items, "data", [])
        ]

    @_wrap_stripe_errors
    def create_customer(self, email: str, user_id: str) -> str:
        customer = stripe.Customer.create(email=email, metadata={"userId": user_id}, api_key=self.api_key)
        return customer.id

    @_wrap_stripe_errors
    def retrieve_price_amount(self, price_id: str) -> Optional[int]:
        """Unit amount of a price in minor units (None for tiered or custom prices)"""
        price = stripe.Price.retrieve(price_id, api_key=self.api_key)
        return field_of(price, "unit_amount")

    @_wrap_stripe_errors
    def create_invoice(self, customer_id: str, description: str, metadata: Dict[str, str]) -> str:
        invoice = stripe.Invoice.create(
            customer=customer_id,
            collection_method="send_invoice",
            days_until_due=0,
            auto_advance=False,
            description=description,
            metadata=metadata,
            api_key=self.api_key,
        )
        return invoice.id

    @_wrap_stripe_errors
    def create_invoice_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount_cents: int,
        currency: str,
        description: Optional[str],
    ) -> str:
        item = stripe.InvoiceItem.create(
            customer=customer_id,
            invoice=invoice_id,
            amount=amount_cents,
            currency=currency,
            description=description,
            api_key=self.api_key,
        )
        return item.id

    @_wrap_stripe_errors
    def finalize_invoice(self, invoice_id: str) -> None:
        stripe.Invoice.finalize_invoice(invoice_id, api_key=self.api_key)

    @_wrap_stripe_errors
    def pay_invoice(self, invoice_id: str) -> None:
        # The charge already went through the payment intent
        stripe.Invoice.pay(invoice_id, paid_out_of_band=True, api_key=self.api_key)

    @_wrap_stripe_errors
    def has_invoice_for_intent(self, customer_id: str, intent_id: str) -> bool:
        invoices = stripe.Invoice.list(customer=customer_id, limit=100, api_key=self.api_key)
        return any(
            field_of(field_of(invoice, "metadata", {}), "paymentIntentId") == intent_id
            for invoice in field_of(invoices, "data", [])
        )

    @_wrap_stripe_errors
    def create_subscription(self, customer_id: str, price_id: str, metadata: Dict[str, str]) -> ProviderSubscription:
        subscription = stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            metadata=metadata,
            api_key=self.api_key,
        )
        return subscription_from_stripe(subscription)

    @_wrap_stripe_errors
    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool = True) -> ProviderSubscription:
        subscription = stripe.Subscription.modify(
            subscription_id, cancel_at_period_end=cancel, api_key=self.api_key
        )
        return subscription_from_stripe(subscription)

