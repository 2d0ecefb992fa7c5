"""Webhook service — routes verified Stripe events to the billing service.

Handled events:
- setup_intent.succeeded            -> collect unpaid invoices
- customer.subscription.created     -> upsert subscription + items
- customer.subscription.updated     -> upsert subscription + items
- customer.subscription.deleted     -> upsert subscription (status canceled)

Every handled event id is stored in stripe_events; redeliveries of the same
event are acknowledged without reprocessing. Other event types are
acknowledged and recorded only.
"""

import logging

from sqlalchemy.exc import IntegrityError

from crm.extensions import db
from crm.models.billing import BillingSubscription
from crm.models.stripe_event import StripeEvent

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"

WORKSPACE_NOT_FOUND = "workspace_not_found"


class UnknownWorkspace(Exception):
    """A subscription event could not be tied to any workspace."""


def resolve_workspace_id(stripe_subscription):
    """Workspace id for a Stripe subscription object.

    Checkout stores it in subscription metadata; subscriptions created
    elsewhere fall back to the local row for the same subscription id.
    """
    metadata = stripe_subscription.get("metadata") or {}
    workspace_id = metadata.get("workspace_id")
    if workspace_id:
        return workspace_id

    existing = BillingSubscription.query.filter_by(
        stripe_subscription_id=stripe_subscription.get("id")
    ).first()
    if existing:
        return existing.workspace_id
    return None


def _handle_setup_intent_succeeded(event, billing_service):
    setup_intent = event["data"]["object"]
    stripe_customer_id = setup_intent.get("customer")
    if not stripe_customer_id:
        logger.info("setup_intent.succeeded without customer, nothing to collect")
        return
    billing_service.handle_unpaid_invoices(stripe_customer_id)


def _handle_subscription_event(event, billing_service):
    stripe_subscription = event["data"]["object"]
    workspace_id = resolve_workspace_id(stripe_subscription)
    if not workspace_id:
        raise UnknownWorkspace(
            f"{event['type']}: cannot find workspace for sub={stripe_subscription.get('id')}"
        )
    billing_service.upsert_billing_subscription(workspace_id, stripe_subscription)


HANDLERS = {
    SETUP_INTENT_SUCCEEDED: _handle_setup_intent_succeeded,
    SUBSCRIPTION_CREATED: _handle_subscription_event,
    SUBSCRIPTION_UPDATED: _handle_subscription_event,
    SUBSCRIPTION_DELETED: _handle_subscription_event,
}


def handle_webhook_event(event, billing_service):
    """Process a verified Stripe webhook event.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Redelivery check ---
    existing = StripeEvent.query.filter_by(stripe_event_id=event_id).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handler = HANDLERS.get(event_type)
    if handler:
        try:
            handler(event, billing_service)
        except UnknownWorkspace as e:
            logger.warning(str(e))
            db.session.rollback()
            return False, WORKSPACE_NOT_FOUND
        except Exception as e:
            logger.error(f"Error handling {event_type}: {e}", exc_info=True)
            db.session.rollback()
            return False, str(e)
    else:
        logger.debug(f"Ignoring webhook event type {event_type}")

    # --- Record event ---
    try:
        db.session.add(StripeEvent(stripe_event_id=event_id, event_type=event_type))
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event committed first
        db.session.rollback()
        logger.info(f"Webhook event {event_id} recorded concurrently, skipping")
        return True, "already_processed"

    return True, "processed"
