"""Billing service — subscription reconciliation and billing actions.

Responsible for:
- Resolving the currently sellable price per billing interval
- Looking up a workspace's current (non-canceled) subscription and its items
- Building Checkout / Customer Portal session URLs for users
- Canceling a workspace's subscription
- Collecting unpaid invoices once a payment method is fixed
- Upserting billing_subscriptions / billing_subscription_items from
  Stripe subscription webhooks

Writes use flush() so the caller controls the commit boundary.
"""

import enum
import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.orm import selectinload

from crm.extensions import db
from crm.models.billing import BillingSubscription, BillingSubscriptionItem
from crm.services import workspace_service
from crm.services.stripe_service import StripeBillingProvider

logger = logging.getLogger(__name__)


class AvailableProduct(enum.Enum):
    BASE_PLAN = "base-plan"


# ──────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────

class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""


class SubscriptionNotFound(BillingError):
    """No current subscription, or no item for the requested product."""


class BillingIntegrityError(BillingError):
    """More than one non-canceled subscription matched. Never auto-fixed."""


class MissingSessionURL(BillingError):
    """Stripe returned a session without a url."""


@dataclass
class ProductPrice:
    unit_amount: int
    recurring_interval: str
    created: int
    stripe_price_id: str

    def to_dict(self):
        return {
            "unit_amount": self.unit_amount,
            "recurring_interval": self.recurring_interval,
            "created": self.created,
            "stripe_price_id": self.stripe_price_id,
        }


def _assign_changed(record, **values):
    """Set only the attributes whose value differs. Returns True if any did."""
    changed = False
    for key, value in values.items():
        if getattr(record, key) != value:
            setattr(record, key, value)
            changed = True
    return changed


def _stripe_id(value):
    """A Stripe reference is either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value["id"]


class BillingService:
    """Keeps local billing state consistent with Stripe.

    Collaborators are passed in explicitly so tests can swap any of them:
    the Stripe provider, the workspace status writer and the member counter.
    """

    def __init__(self, provider, front_base_url, base_plan_product_id=None,
                 count_members=None, update_workspace_status=None):
        self.provider = provider
        self.front_base_url = front_base_url
        self.base_plan_product_id = base_plan_product_id
        self.count_members = (
            count_members or workspace_service.count_workspace_members
        )
        self.update_workspace_status = (
            update_workspace_status or workspace_service.update_subscription_status
        )

    @classmethod
    def from_config(cls, config, provider=None):
        return cls(
            provider=provider or StripeBillingProvider.from_config(config),
            front_base_url=config["FRONT_BASE_URL"],
            base_plan_product_id=config.get("BILLING_STRIPE_BASE_PLAN_PRODUCT_ID"),
        )

    def _front_url(self, path=None):
        return self.front_base_url + path if path else self.front_base_url

    # ──────────────────────────────────────────────
    # Products & prices
    # ──────────────────────────────────────────────

    def get_product_stripe_id(self, product):
        """Map an AvailableProduct (or its value) to its Stripe product id.

        Raises ValueError for unknown products.
        """
        product = AvailableProduct(product)
        if product is AvailableProduct.BASE_PLAN:
            return self.base_plan_product_id

    def get_product_prices(self, stripe_product_id):
        prices = self.provider.list_prices(stripe_product_id)
        return self.format_product_prices(prices)

    @staticmethod
    def format_product_prices(prices):
        """Keep the latest priced entry per recurring interval.

        A product accumulates superseded prices per interval over time;
        only the most recently created one is sellable. Prices without an
        interval or a unit amount are ignored. Sorted by unit amount, cheapest
        first.
        """
        latest = {}
        for price in prices:
            interval = (price.get("recurring") or {}).get("interval")
            unit_amount = price.get("unit_amount")
            if not interval or unit_amount is None:
                continue

            created = price.get("created") or 0
            current = latest.get(interval)
            if current is None or created > current.created:
                latest[interval] = ProductPrice(
                    unit_amount=unit_amount,
                    recurring_interval=interval,
                    created=created,
                    stripe_price_id=price.get("id"),
                )

        return sorted(latest.values(), key=lambda p: p.unit_amount)

    # ──────────────────────────────────────────────
    # Lookups
    # ──────────────────────────────────────────────

    def get_current_billing_subscription(self, workspace_id=None,
                                         stripe_customer_id=None):
        """Return the non-canceled subscription (items loaded), or None.

        Exactly one of workspace_id / stripe_customer_id must be given.
        Raises BillingIntegrityError if more than one row matches.
        """
        if (workspace_id is None) == (stripe_customer_id is None):
            raise ValueError("Pass exactly one of workspace_id or stripe_customer_id")

        query = (
            BillingSubscription.query
            .options(selectinload(BillingSubscription.items))
            .filter(BillingSubscription.status != "canceled")
        )
        if workspace_id is not None:
            query = query.filter_by(workspace_id=workspace_id)
            criteria = f"workspace {workspace_id}"
        else:
            query = query.filter_by(stripe_customer_id=stripe_customer_id)
            criteria = f"customer {stripe_customer_id}"

        subscriptions = query.all()
        if len(subscriptions) > 1:
            logger.error(
                f"{len(subscriptions)} not canceled subscriptions for {criteria}: "
                f"{[s.stripe_subscription_id for s in subscriptions]}"
            )
            raise BillingIntegrityError(
                f"More than one not canceled subscription for {criteria}"
            )

        return subscriptions[0] if subscriptions else None

    def get_billing_subscription_item(self, workspace_id, stripe_product_id=None):
        """Return the current subscription's item for a product.

        Defaults to the base plan product.
        Raises SubscriptionNotFound if there is no current subscription or
        it has no item for the product.
        """
        if stripe_product_id is None:
            stripe_product_id = self.base_plan_product_id

        message = (
            f"Cannot find billing subscription item for product "
            f"{stripe_product_id} for workspace {workspace_id}"
        )

        subscription = self.get_current_billing_subscription(
            workspace_id=workspace_id
        )
        if subscription is None:
            raise SubscriptionNotFound(message)

        for item in subscription.items:
            if item.stripe_product_id == stripe_product_id:
                return item

        raise SubscriptionNotFound(message)

    def _latest_subscription(self, workspace_id):
        """The current subscription, else the most recent row of any status.

        created_at has one-second resolution, so a canceled row and its
        replacement can tie; the current one always wins.
        """
        current = self.get_current_billing_subscription(workspace_id=workspace_id)
        if current is not None:
            return current
        return (
            BillingSubscription.query
            .filter_by(workspace_id=workspace_id)
            .order_by(
                BillingSubscription.created_at.desc(),
                BillingSubscription.updated_at.desc(),
            )
            .first()
        )

    # ──────────────────────────────────────────────
    # User actions
    # ──────────────────────────────────────────────

    def compute_checkout_session_url(self, user, price_id, success_url_path=None):
        """Create a Checkout Session for the user's default workspace.

        Reuses the workspace's Stripe customer when one is on record and
        bills one seat per workspace member (one seat if counting fails).

        Returns the session URL.
        Raises MissingSessionURL if Stripe returns no url.
        Raises stripe.StripeError on API failures.
        """
        workspace_id = user.default_workspace_id
        success_url = self._front_url(success_url_path)

        previous = self._latest_subscription(workspace_id)
        stripe_customer_id = previous.stripe_customer_id if previous else None

        quantity = 1
        try:
            quantity = self.count_members(workspace_id)
        except Exception as e:
            logger.warning(
                f"Could not count members of workspace {workspace_id}, "
                f"defaulting checkout quantity to 1: {e}"
            )

        session = self.provider.create_checkout_session(
            user,
            price_id,
            quantity,
            success_url,
            self.front_base_url,
            stripe_customer_id,
        )

        url = getattr(session, "url", None)
        if not url:
            raise MissingSessionURL("Error: missing checkout.session.url")
        return url

    def compute_billing_portal_session_url(self, workspace_id, return_url_path=None):
        """Create a Customer Portal Session for the workspace's customer.

        Raises SubscriptionNotFound if the workspace never subscribed.
        Raises MissingSessionURL if Stripe returns no url.
        """
        subscription = self._latest_subscription(workspace_id)
        if subscription is None:
            raise SubscriptionNotFound(
                f"No billing subscription found for workspace {workspace_id}"
            )

        session = self.provider.create_billing_portal_session(
            subscription.stripe_customer_id,
            self._front_url(return_url_path),
        )

        url = getattr(session, "url", None)
        if not url:
            raise MissingSessionURL("Error: missing billingPortal.session.url")
        return url

    def delete_subscription(self, workspace_id):
        """Cancel the workspace's current subscription and drop the local row.

        Stripe is canceled first; if that call fails the row is kept so a
        paid subscription is never left without a local record.
        No-op when the workspace has no current subscription.
        """
        subscription = self.get_current_billing_subscription(
            workspace_id=workspace_id
        )
        if subscription is None:
            logger.info(f"No subscription to cancel for workspace {workspace_id}")
            return False

        self.provider.cancel_subscription(subscription.stripe_subscription_id)

        db.session.delete(subscription)
        db.session.flush()
        logger.info(
            f"Canceled subscription {subscription.stripe_subscription_id} "
            f"for workspace {workspace_id}"
        )
        return True

    # ──────────────────────────────────────────────
    # Webhook-driven reconciliation
    # ──────────────────────────────────────────────

    def handle_unpaid_invoices(self, stripe_customer_id):
        """On setup_intent.succeeded, retry the latest invoice of an unpaid subscription."""
        subscription = self.get_current_billing_subscription(
            stripe_customer_id=stripe_customer_id
        )
        if subscription is None or subscription.status != "unpaid":
            return False

        logger.info(
            f"Collecting latest invoice of unpaid subscription "
            f"{subscription.stripe_subscription_id}"
        )
        self.provider.collect_last_invoice(subscription.stripe_subscription_id)
        return True

    def upsert_billing_subscription(self, workspace_id, stripe_subscription):
        """Merge a Stripe subscription object into local state.

        1. Upsert the subscription row by stripe_subscription_id, skipping
           the write when nothing changed.
        2. Mirror the status onto the workspace.
        3. Re-read the workspace's current subscription; stop if none.
        4. Upsert each item by (subscription, product). Local items missing
           from the payload are left alone.

        Returns the current subscription, or None.
        """
        stripe_subscription_id = stripe_subscription["id"]
        status = stripe_subscription["status"]
        values = {
            "workspace_id": workspace_id,
            "stripe_customer_id": _stripe_id(stripe_subscription["customer"]),
            "status": status,
        }

        subscription = BillingSubscription.query.filter_by(
            stripe_subscription_id=stripe_subscription_id
        ).first()
        if subscription is None:
            db.session.add(BillingSubscription(
                stripe_subscription_id=stripe_subscription_id, **values
            ))
            logger.info(f"Created subscription {stripe_subscription_id} ({status})")
        elif _assign_changed(subscription, **values):
            logger.info(f"Updated subscription {stripe_subscription_id} ({status})")
        else:
            logger.info(f"Subscription {stripe_subscription_id} unchanged, skipping write")
        db.session.flush()

        self.update_workspace_status(workspace_id, status)

        current = self.get_current_billing_subscription(workspace_id=workspace_id)
        if current is None:
            return None

        items = (stripe_subscription.get("items") or {}).get("data") or []
        existing = {item.stripe_product_id: item for item in current.items}
        for stripe_item in items:
            price = stripe_item["price"]
            stripe_product_id = _stripe_id(price["product"])
            values = {
                "stripe_price_id": price["id"],
                "stripe_subscription_item_id": stripe_item["id"],
                "quantity": stripe_item.get("quantity"),
            }

            item = existing.get(stripe_product_id)
            if item is None:
                item = BillingSubscriptionItem(
                    stripe_product_id=stripe_product_id, **values
                )
                current.items.append(item)
                existing[stripe_product_id] = item
            elif not _assign_changed(item, **values):
                logger.debug(
                    f"Item {stripe_product_id} of "
                    f"{current.stripe_subscription_id} unchanged, skipping write"
                )
        db.session.flush()

        return current


def get_billing_service():
    """BillingService wired from the current app's config."""
    return BillingService.from_config(current_app.config)
