"""
Thin adapter over the Stripe SDK.

Every call is authenticated with STRIPE_SECRET_KEY at call time and raises
StripeError on failure so the API layer can answer with a 502.
"""
import os

import stripe

REQUEST_TIMEOUT = 20
WEBHOOK_TOLERANCE_SECONDS = 300

stripe.default_http_client = stripe.RequestsClient(timeout=REQUEST_TIMEOUT)


class StripeError(Exception):
    """Raised when Stripe rejects a request or cannot be reached."""

    def __init__(self, message, code="STRIPE_ERROR", status=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


def is_configured():
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def default_currency():
    return os.getenv("STRIPE_CURRENCY", "dkk").lower()


def _call(method, *args, **params):
    secret_key = os.getenv("STRIPE_SECRET_KEY")
    if not secret_key:
        raise StripeError("Stripe is not configured.", code="STRIPE_NOT_CONFIGURED")
    try:
        return method(*args, api_key=secret_key, **params)
    except stripe.StripeError as e:
        raise StripeError(e.user_message or str(e) or "Stripe request failed.", status=e.http_status) from e


# --- Payment Intents & Charges ---

def create_payment_intent(amount_minor, metadata, customer=None, currency=None):
    params = {
        "amount": int(amount_minor),
        "currency": currency or default_currency(),
        "metadata": metadata,
        "automatic_payment_methods": {"enabled": True},
    }
    if customer:
        params["customer"] = customer
    return _call(stripe.PaymentIntent.create, **params)


def retrieve_payment_intent(payment_intent_id):
    return _call(stripe.PaymentIntent.retrieve, payment_intent_id)


def retrieve_charge(charge_id):
    return _call(stripe.Charge.retrieve, charge_id)


# --- Customers ---

def create_customer(email, name, metadata):
    return _call(stripe.Customer.create, email=email, name=name, metadata=metadata)


def retrieve_customer(customer_id):
    return _call(stripe.Customer.retrieve, customer_id)


def delete_customer(customer_id):
    return _call(stripe.Customer.delete, customer_id)


# --- Subscriptions & Invoices ---

def create_subscription(customer, price_id):
    """Start a subscription that waits for the first invoice to be paid."""
    return _call(
        stripe.Subscription.create,
        customer=customer,
        items=[{"price": price_id}],
        payment_behavior="default_incomplete",
        payment_settings={"save_default_payment_method": "on_subscription"},
        expand=["latest_invoice.payment_intent"],
    )


def cancel_subscription(subscription_id):
    return _call(stripe.Subscription.cancel, subscription_id)


def retrieve_invoice(invoice_id):
    return _call(stripe.Invoice.retrieve, invoice_id)


# --- Products & Prices ---

def create_product(name, metadata):
    return _call(stripe.Product.create, name=name, metadata=metadata)


def update_product(product_id, **fields):
    return _call(stripe.Product.modify, product_id, **fields)


def list_products():
    return list(_call(stripe.Product.list, active=True, limit=100).auto_paging_iter())


def create_price(product, unit_amount, currency=None):
    return _call(
        stripe.Price.create,
        product=product,
        unit_amount=int(unit_amount),
        currency=currency or default_currency(),
        recurring={"interval": "month"},
    )


def list_prices(product):
    return list(_call(stripe.Price.list, product=product, active=True, limit=100).auto_paging_iter())


# --- Webhooks ---

def construct_event(payload, sig_header, secret, tolerance=WEBHOOK_TOLERANCE_SECONDS):
    """Verify a Stripe-Signature header and return the parsed event."""
    if not sig_header:
        raise StripeError("Missing Stripe-Signature header.", code="INVALID_SIGNATURE")
    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise StripeError(str(e) or "Signature verification failed.", code="INVALID_SIGNATURE") from e
    except ValueError as e:
        raise StripeError("Invalid webhook payload.", code="INVALID_PAYLOAD") from e
