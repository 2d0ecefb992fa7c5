"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid)
- Redelivered events skipped via stripe_events (also when delivered in parallel)
- Events arrive as real stripe.Event objects
- customer.subscription.created / updated / deleted reconciliation
- Workspace resolution (metadata, local fallback, unknown -> 404)
- setup_intent.succeeded collecting unpaid invoices
- Unknown event types (accepted but not processed)
- Handler failures -> 500, nothing recorded
"""

import json
from unittest.mock import patch

import stripe

from crm.extensions import db
from crm.models.billing import BillingSubscription, BillingSubscriptionItem
from crm.models.stripe_event import StripeEvent
from crm.models.workspace import Workspace
from crm.services.webhook_service import HANDLERS, handle_webhook_event
from factories import add_subscription, stripe_subscription


def _post(client):
    return client.post(
        "/stripe/webhooks",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _event(event_id, event_type, obj):
    """A real stripe.Event, as stripe.Webhook.construct_event returns it."""
    return stripe.Event.construct_from(
        {"id": event_id, "object": "event", "type": event_type,
         "data": {"object": obj}},
        "sk_test_fake",
    )


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data):
        mock_construct.side_effect = Exception("Invalid signature")

        resp = _post(client)
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data


class TestWebhookRedelivery:
    """Tests for duplicate event handling."""

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_duplicate_event_returns_200(self, mock_construct, client, seed_data, app):
        with app.app_context():
            db.session.add(StripeEvent(
                stripe_event_id="evt_duplicate_123",
                event_type="customer.subscription.updated",
            ))
            db.session.commit()

        mock_construct.return_value = _event(
            "evt_duplicate_123",
            "customer.subscription.updated",
            stripe_subscription(workspace_id=seed_data["workspace_id"]),
        )

        resp = _post(client)
        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "already_processed"

        with app.app_context():
            assert BillingSubscription.query.count() == 0

    def test_concurrent_delivery_recorded_once(self, billing_service, seed_data):
        """A parallel delivery that commits the event first wins the insert."""

        def record_in_parallel(event, _billing_service):
            db.session.add(StripeEvent(
                stripe_event_id=event["id"], event_type=event["type"]
            ))
            db.session.commit()

        event = {"id": "evt_parallel_010", "type": "invoice.created",
                 "data": {"object": {"id": "in_1"}}}
        with patch.dict(HANDLERS, {"invoice.created": record_in_parallel}):
            success, message = handle_webhook_event(event, billing_service)

        assert (success, message) == (True, "already_processed")
        assert StripeEvent.query.filter_by(
            stripe_event_id="evt_parallel_010"
        ).count() == 1


class TestSubscriptionEvents:
    """Tests for customer.subscription.* webhooks."""

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_created_then_updated(self, mock_construct, client, seed_data, app):
        workspace_id = seed_data["workspace_id"]

        mock_construct.return_value = _event(
            "evt_created_001",
            "customer.subscription.created",
            stripe_subscription(status="active", workspace_id=workspace_id),
        )
        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "processed"

        with app.app_context():
            sub = BillingSubscription.query.one()
            assert (sub.workspace_id, sub.stripe_customer_id, sub.status) == (
                workspace_id, "cus_C", "active",
            )
            item = BillingSubscriptionItem.query.one()
            assert (item.stripe_product_id, item.quantity) == ("prod_P1", 3)
            assert db.session.get(Workspace, workspace_id).subscription_status == "active"

        mock_construct.return_value = _event(
            "evt_updated_002",
            "customer.subscription.updated",
            stripe_subscription(status="past_due", workspace_id=workspace_id),
        )
        resp = _post(client)
        assert resp.status_code == 200

        with app.app_context():
            assert BillingSubscription.query.one().status == "past_due"
            assert BillingSubscriptionItem.query.count() == 1
            assert db.session.get(Workspace, workspace_id).subscription_status == "past_due"
            assert StripeEvent.query.count() == 2

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_falls_back_to_local_subscription(self, mock_construct, client,
                                              seed_data, app):
        with app.app_context():
            add_subscription(seed_data["workspace_id"], "sub_S1", "cus_C")
            db.session.commit()

        # No metadata on the payload
        mock_construct.return_value = _event(
            "evt_updated_003",
            "customer.subscription.updated",
            stripe_subscription(status="unpaid"),
        )

        resp = _post(client)
        assert resp.status_code == 200

        with app.app_context():
            assert BillingSubscription.query.one().status == "unpaid"
            workspace = db.session.get(Workspace, seed_data["workspace_id"])
            assert workspace.subscription_status == "unpaid"

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_workspace_returns_404(self, mock_construct, client, seed_data, app):
        mock_construct.return_value = _event(
            "evt_orphan_004",
            "customer.subscription.created",
            stripe_subscription(sub_id="sub_orphan"),
        )

        resp = _post(client)
        assert resp.status_code == 404

        with app.app_context():
            assert BillingSubscription.query.count() == 0
            # Not recorded, so a redelivery gets another chance
            assert StripeEvent.query.count() == 0

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_deleted_marks_canceled(self, mock_construct, client, seed_data, app):
        workspace_id = seed_data["workspace_id"]
        with app.app_context():
            add_subscription(workspace_id, "sub_S1", "cus_C")
            db.session.commit()

        mock_construct.return_value = _event(
            "evt_deleted_005",
            "customer.subscription.deleted",
            stripe_subscription(status="canceled", workspace_id=workspace_id),
        )

        resp = _post(client)
        assert resp.status_code == 200

        with app.app_context():
            assert BillingSubscription.query.one().status == "canceled"
            assert db.session.get(Workspace, workspace_id).subscription_status == "canceled"

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_integrity_violation_returns_500(self, mock_construct, client,
                                             seed_data, app):
        workspace_id = seed_data["workspace_id"]
        with app.app_context():
            add_subscription(workspace_id, "sub_a", "cus_C", status="active")
            add_subscription(workspace_id, "sub_b", "cus_C", status="active")
            db.session.commit()

        mock_construct.return_value = _event(
            "evt_broken_006",
            "customer.subscription.updated",
            stripe_subscription(sub_id="sub_a", workspace_id=workspace_id),
        )

        resp = _post(client)
        assert resp.status_code == 500

        with app.app_context():
            assert StripeEvent.query.count() == 0


class TestSetupIntentSucceeded:
    """Tests for setup_intent.succeeded webhook."""

    @patch("crm.services.stripe_service.stripe")
    def test_collects_unpaid_invoice(self, mock_stripe, client, seed_data, app):
        with app.app_context():
            add_subscription(
                seed_data["workspace_id"], "sub_unpaid", "cus_unpaid", status="unpaid"
            )
            db.session.commit()

        mock_stripe.Webhook.construct_event.return_value = _event(
            "evt_setup_007",
            "setup_intent.succeeded",
            {"id": "seti_1", "object": "setup_intent", "customer": "cus_unpaid"},
        )
        mock_stripe.Subscription.retrieve.return_value = stripe.Subscription.construct_from(
            {
                "id": "sub_unpaid",
                "object": "subscription",
                "latest_invoice": {"id": "in_unpaid", "object": "invoice", "status": "open"},
            },
            "sk_test_fake",
        )

        resp = _post(client)

        assert resp.status_code == 200
        mock_stripe.Invoice.pay.assert_called_once_with("in_unpaid")

    @patch("crm.services.stripe_service.stripe")
    def test_active_subscription_not_collected(self, mock_stripe, client,
                                               seed_data, app):
        with app.app_context():
            add_subscription(seed_data["workspace_id"], "sub_ok", "cus_ok")
            db.session.commit()

        mock_stripe.Webhook.construct_event.return_value = _event(
            "evt_setup_008",
            "setup_intent.succeeded",
            {"id": "seti_2", "object": "setup_intent", "customer": "cus_ok"},
        )

        resp = _post(client)

        assert resp.status_code == 200
        mock_stripe.Subscription.retrieve.assert_not_called()
        mock_stripe.Invoice.pay.assert_not_called()


class TestUnknownEvents:

    @patch("crm.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_event_type_acknowledged(self, mock_construct, client,
                                             seed_data, app):
        mock_construct.return_value = _event(
            "evt_other_009", "invoice.created", {"id": "in_1"}
        )

        resp = _post(client)
        assert resp.status_code == 200

        with app.app_context():
            evt = StripeEvent.query.filter_by(stripe_event_id="evt_other_009").first()
            assert evt.event_type == "invoice.created"
