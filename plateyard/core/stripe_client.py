import logging
from dataclasses import dataclass
from typing import Any

import stripe

from plateyard.core.config import settings
from plateyard.core.errors import ConfigurationMissing, UpstreamError

logger = logging.getLogger("plateyard.stripe")


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None
    payment_status: str | None = None
    payment_intent: str | None = None
    customer_email: str | None = None
    amount_total: int | None = None
    metadata: dict[str, Any] | None = None


def _session(obj: Any) -> CheckoutSession:
    details = obj.get("customer_details") or {}
    return CheckoutSession(
        id=obj["id"],
        url=obj.get("url"),
        payment_status=obj.get("payment_status"),
        payment_intent=obj.get("payment_intent"),
        customer_email=obj.get("customer_email") or details.get("email"),
        amount_total=obj.get("amount_total"),
        metadata=dict(obj.get("metadata") or {}),
    )


class StripePayments:
    """
    Thin gateway over the Stripe SDK. The api key is passed per call so no
    module-level client state is shared; tests swap the whole gateway.
    """

    def __init__(self, api_key: str | None, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency.lower()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationMissing("Stripe is not configured")
        return self.api_key

    def _call(self, what: str, fn, **kwargs):
        api_key = self._require_key()
        try:
            return fn(api_key=api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("stripe %s failed: %s", what, e)
            raise UpstreamError(
                "Payment processor error", details=e.user_message or str(e)
            )

    def create_customer(self, email: str, name: str | None, phone: str | None) -> str:
        cust = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            phone=phone,
            metadata={"source": "plateyard"},
        )
        return cust["id"]

    def create_checkout_session(
        self,
        *,
        line_items: list[dict[str, Any]],
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        customer_id: str | None = None,
        customer_email: str | None = None,
    ) -> CheckoutSession:
        params: dict[str, Any] = dict(
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            metadata=metadata,
            client_reference_id=client_reference_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        return _session(
            self._call("checkout.create", stripe.checkout.Session.create, **params)
        )

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        return _session(
            self._call("checkout.retrieve", stripe.checkout.Session.retrieve, id=session_id)
        )

    def create_product(
        self, *, name: str, description: str | None, tax_code: str, metadata: dict
    ) -> str:
        params: dict[str, Any] = dict(name=name, tax_code=tax_code, metadata=metadata)
        if description:
            params["description"] = description
        return self._call("product.create", stripe.Product.create, **params)["id"]

    def update_product(self, product_id: str, **fields: Any) -> None:
        self._call("product.modify", stripe.Product.modify, id=product_id, **fields)

    def list_active_prices(self, product_id: str) -> list[dict[str, Any]]:
        res = self._call(
            "price.list", stripe.Price.list, product=product_id, active=True, limit=100
        )
        return [
            {"id": p["id"], "unit_amount": p.get("unit_amount")} for p in res["data"]
        ]

    def create_price(self, product_id: str, unit_amount: int) -> str:
        price = self._call(
            "price.create",
            stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=self.currency,
        )
        return price["id"]

    def archive_price(self, price_id: str) -> None:
        self._call("price.modify", stripe.Price.modify, id=price_id, active=False)

    def construct_event(self, payload: bytes, sig_header: str, secret: str):
        return stripe.Webhook.construct_event(
            payload=payload, sig_header=sig_header, secret=secret
        )


def get_payments() -> StripePayments:
    return StripePayments(settings.STRIPE_API_KEY, settings.STRIPE_CURRENCY)
