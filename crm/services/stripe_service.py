"""Stripe service — every Stripe API call the billing subsystem makes.

StripeBillingProvider is the narrow client the BillingService depends on:

- listing a product's prices
- creating Checkout and Customer Portal sessions
- canceling a subscription
- collecting a subscription's latest invoice
- verifying webhook signatures

Stripe objects are handed out as plain dicts (StripeObject.to_dict()), so
callers never depend on the SDK's object model. Sessions are the exception:
callers only read their ``url`` attribute.

Tests substitute any object exposing the same methods.
"""

import logging

import stripe

logger = logging.getLogger(__name__)


class StripeBillingProvider:
    """Thin wrapper around the stripe SDK, keyed by app config."""

    def __init__(self, api_key, webhook_secret=None, free_trial_days=0):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.free_trial_days = free_trial_days

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config["STRIPE_SECRET_KEY"],
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            free_trial_days=config.get("BILLING_FREE_TRIAL_DURATION_IN_DAYS", 0),
        )

    def _authenticate(self):
        stripe.api_key = self.api_key

    # ──────────────────────────────────────────────
    # Prices
    # ──────────────────────────────────────────────

    def list_prices(self, product_id):
        """Return the active Stripe prices attached to a product, as dicts."""
        self._authenticate()
        prices = stripe.Price.list(product=product_id, active=True, limit=100)
        return [price.to_dict() for price in prices.data]

    # ──────────────────────────────────────────────
    # Checkout & Portal Sessions
    # ──────────────────────────────────────────────

    def create_checkout_session(self, user, price_id, quantity, success_url,
                                cancel_url, stripe_customer_id=None):
        """Create a subscription-mode Checkout Session.

        The workspace id travels in subscription_data.metadata so the
        subscription webhooks can find the workspace again.

        When the workspace already has a Stripe customer (even from a
        canceled subscription) it is reused; otherwise Stripe creates one
        from the user's email.

        Raises stripe.StripeError on API failures.
        """
        self._authenticate()

        subscription_data = {
            "metadata": {"workspace_id": str(user.default_workspace_id)},
        }
        if self.free_trial_days:
            subscription_data["trial_period_days"] = self.free_trial_days

        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": quantity}],
            "subscription_data": subscription_data,
            "allow_promotion_codes": True,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if stripe_customer_id:
            params["customer"] = stripe_customer_id
            params["customer_update"] = {"name": "auto", "address": "auto"}
        else:
            params["customer_email"] = user.email

        logger.info(
            f"Creating checkout session for workspace {user.default_workspace_id}, "
            f"price {price_id}, quantity {quantity}"
        )
        return stripe.checkout.Session.create(**params)

    def create_billing_portal_session(self, stripe_customer_id, return_url):
        """Create a Customer Portal Session for an existing Stripe customer."""
        self._authenticate()
        return stripe.billing_portal.Session.create(
            customer=stripe_customer_id,
            return_url=return_url,
        )

    # ──────────────────────────────────────────────
    # Subscription actions
    # ──────────────────────────────────────────────

    def cancel_subscription(self, stripe_subscription_id):
        self._authenticate()
        logger.info(f"Canceling Stripe subscription {stripe_subscription_id}")
        stripe.Subscription.cancel(stripe_subscription_id)

    def collect_last_invoice(self, stripe_subscription_id):
        """Attempt payment of the subscription's latest invoice.

        Only draft/open invoices are payable; anything else is left alone.
        """
        self._authenticate()
        subscription = stripe.Subscription.retrieve(
            stripe_subscription_id, expand=["latest_invoice"]
        ).to_dict()
        invoice = subscription.get("latest_invoice")
        if not invoice or isinstance(invoice, str):
            logger.warning(
                f"No expandable latest invoice on subscription {stripe_subscription_id}"
            )
            return

        if invoice.get("status") not in ("draft", "open"):
            logger.info(
                f"Latest invoice {invoice.get('id')} is {invoice.get('status')}, nothing to collect"
            )
            return

        logger.info(f"Collecting invoice {invoice['id']} for {stripe_subscription_id}")
        stripe.Invoice.pay(invoice["id"])

    # ──────────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────────

    def construct_event(self, payload, sig_header):
        """Verify Stripe webhook signature and return the event as a dict.

        Raises stripe.SignatureVerificationError on invalid signature.
        """
        event = stripe.Webhook.construct_event(
            payload, sig_header, self.webhook_secret
        )
        return event.to_dict()
