import pytest

from conftest import create_address, create_intent, create_user, make_event, sign_payload
from models.billing_model import BillingCharge, BillingVehicle, Payment, WebhookEvent
from models.extensions import db
from models.intent_model import SubscriptionIntent
from models.order_model import Order
from models.subscription_model import Subscription
from services.agent_runs import RunContext
from services.errors import AuthenticationError, ValidationError


def _deliver(services, event_type, obj, event_id="evt_1"):
    payload = make_event(event_type, obj, event_id)
    return services.webhooks.handle(payload.encode("utf-8"), sign_payload(payload))


def _subscription(services, user, address, intent=None, price=2000):
    intent = intent or create_intent(user)
    sub = services.ledger.create_from_purchase(intent, address_id=address.id, price_cents=price)
    db.session.commit()
    return sub


class TestSignature:
    def test_invalid_signature_mutates_nothing(self, ctx, services):
        user = create_user(customer_id="cus_1")
        payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})

        with pytest.raises(AuthenticationError):
            services.webhooks.handle(payload, sign_payload(payload, secret="whsec_wrong"))
        with pytest.raises(AuthenticationError):
            services.webhooks.handle(payload, None)

        assert WebhookEvent.query.count() == 0
        assert user.stripe_customer_id == "cus_1"

    def test_tampered_payload_rejected(self, ctx, services):
        payload = make_event("invoice.created", {"id": "in_1"})
        header = sign_payload(payload)
        with pytest.raises(AuthenticationError):
            services.webhooks.handle(payload.replace("in_1", "in_2"), header)

    def test_malformed_json_after_valid_signature(self, ctx, services):
        payload = "{not json"
        with pytest.raises(ValidationError):
            services.webhooks.handle(payload, sign_payload(payload))


def test_replayed_event_id_is_noop(ctx, services):
    user = create_user(customer_id="cus_1")
    obj = {"id": "sub_fee", "customer": "cus_1", "status": "active", "metadata": {"type": "service_fee", "userId": str(user.id)}}

    first = _deliver(services, "customer.subscription.created", obj, "evt_dup")
    second = _deliver(services, "customer.subscription.created", obj, "evt_dup")

    assert first == {"received": True}
    assert second["duplicate"] is True
    assert WebhookEvent.query.count() == 1
    assert BillingVehicle.query.count() == 1


def test_unknown_event_type_is_acknowledged(ctx, services):
    assert _deliver(services, "customer.created", {"id": "cus_9"}) == {"received": True}


class TestInvoicePaid:
    def _invoice(self, sub, event_id="run:r1", order_reference="", invoice_id="in_1"):
        return {
            "id": invoice_id,
            "customer": "cus_1",
            "amount_paid": 2100,
            "currency": "usd",
            "metadata": {},
            "lines": {
                "data": [
                    {
                        "amount": 2000,
                        "metadata": {
                            "purchase_event_id": event_id,
                            "subscription_id": str(sub.id),
                            "intent_id": str(sub.intent_id),
                            "order_reference": order_reference,
                            "product_price_cents": "2000",
                        },
                    },
                    {"amount": 100, "metadata": {}},
                ]
            },
        }

    def test_creates_payment_and_order(self, ctx, services):
        user = create_user(customer_id="cus_1")
        sub = _subscription(services, user, create_address(user))
        run = services.runs.create(RunContext(intent_id=sub.intent_id), external_id="r1")
        services.runs.transition(run, "done")

        _deliver(services, "invoice.payment_succeeded", self._invoice(sub))

        payment = Payment.query.one()
        assert payment.status == "succeeded"
        assert payment.amount_cents == 2100
        assert payment.product_cost_cents == 2000
        assert payment.service_fee_cents == 100
        order = Order.query.one()
        assert order.subscription_id == sub.id
        assert order.agent_run_id == "r1"
        assert order.external_order_id == "run:r1"
        assert order.price_cents == 2000
        assert order.status == "succeeded"

    def test_replay_with_new_event_id_does_not_double_order(self, ctx, services):
        user = create_user(customer_id="cus_1")
        sub = _subscription(services, user, create_address(user))
        invoice = self._invoice(sub, order_reference="AMZ-1")

        _deliver(services, "invoice.payment_succeeded", invoice, "evt_a")
        _deliver(services, "invoice.payment_succeeded", invoice, "evt_b")

        assert Order.query.count() == 1
        assert Order.query.one().external_order_id == "AMZ-1"
        assert Payment.query.count() == 1

    def test_updates_existing_payment(self, ctx, services):
        user = create_user(customer_id="cus_1")
        db.session.add(Payment(user_id=user.id, invoice_id="in_1", amount_cents=500, status="pending"))
        db.session.commit()

        _deliver(services, "invoice.payment_succeeded", {"id": "in_1", "customer": "cus_1", "payment_intent": "pi_1"})

        payment = Payment.query.one()
        assert payment.status == "succeeded"
        assert payment.payment_intent_id == "pi_1"


def test_invoice_failed_marks_payment_and_intent(ctx, services):
    user = create_user(customer_id="cus_1")
    intent = create_intent(user)
    db.session.add(Payment(user_id=user.id, intent_id=intent.id, invoice_id="in_9", amount_cents=500, status="pending"))
    db.session.commit()

    _deliver(services, "invoice.payment_failed", {"id": "in_9", "customer": "cus_1"})

    assert Payment.query.one().status == "failed"
    assert db.session.get(SubscriptionIntent, intent.id).status == "error"


class TestInvoiceCreated:
    def test_appends_one_charge_per_active_subscription(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        address = create_address(user)
        a = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/A", cadence_days=14))
        b = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/B"))
        paused = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/C"))
        paused.status = "paused"
        db.session.commit()
        invoice = {"id": "in_cycle", "customer": "cus_1", "subscription": "sub_fee", "billing_reason": "subscription_cycle"}

        _deliver(services, "invoice.created", invoice, "evt_1")
        _deliver(services, "invoice.created", invoice, "evt_2")

        assert len(processor.items) == 2
        assert {item["invoice"] for item in processor.items} == {"in_cycle"}
        amounts = {item["metadata"]["subscription_id"]: item["amount"] for item in processor.items}
        assert amounts == {str(a.id): 4286, str(b.id): 2000}
        assert BillingCharge.query.count() == 2

    def test_one_failure_does_not_block_invoice(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        address = create_address(user)
        _subscription(services, user, address)
        processor.fail_items = True

        result = _deliver(services, "invoice.created", {"id": "in_x", "customer": "cus_1", "subscription": "sub_fee"})

        assert result == {"received": True}
        assert BillingCharge.query.count() == 0

    def test_unexpected_error_on_one_subscription_does_not_block_others(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        address = create_address(user)
        broken = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/A"))
        good = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/B"))
        # preco negativo faz o prorate levantar ValidationError
        broken.last_price_cents = -500
        db.session.commit()

        result = _deliver(services, "invoice.created", {"id": "in_9", "customer": "cus_1", "subscription": "sub_fee"})

        assert result == {"received": True}
        assert [item["metadata"]["subscription_id"] for item in processor.items] == [str(good.id)]
        assert BillingCharge.query.one().subscription_id == good.id

    def test_skips_non_subscription_invoice(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        _subscription(services, user, create_address(user))

        _deliver(services, "invoice.created", {"id": "in_once", "customer": "cus_1"})

        assert processor.items == []


class TestBillingVehicle:
    def test_activation_settles_deferred_purchase(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        create_address(user)
        intent = create_intent(user, cadence_days=15)
        run = services.runs.create(RunContext(user_id=user.id, intent_id=intent.id, phase="checkout"))
        services.runs.transition(run, "done", output={"price_observed": 1200})
        obj = {"id": "sub_fee", "customer": "cus_1", "status": "active", "metadata": {"type": "service_fee", "userId": str(user.id)}}

        _deliver(services, "customer.subscription.created", obj, "evt_1")
        _deliver(services, "customer.subscription.created", obj, "evt_2")

        assert BillingVehicle.query.one().status == "active"
        sub = Subscription.query.filter_by(intent_id=intent.id).one()
        assert sub.last_price_cents == 1200
        assert len(processor.items) == 1
        assert processor.items[0]["amount"] == 2400
        assert processor.items[0]["metadata"]["purchase_event_id"] == f"run:{run.id}"

    def test_ignores_non_service_fee_subscription(self, ctx, services):
        user = create_user(customer_id="cus_1")
        _deliver(services, "customer.subscription.created", {"id": "sub_x", "customer": "cus_1", "metadata": {}})
        assert BillingVehicle.query.count() == 0

    def test_deleted_cascades_to_every_subscription(self, ctx, services):
        user = create_user(customer_id="cus_1")
        address = create_address(user)
        services.billing.record_vehicle(user.id, "sub_fee")
        first = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/A"))
        second = _subscription(services, user, address, create_intent(user, target_url="https://www.amazon.com/dp/B"))

        _deliver(services, "customer.subscription.deleted", {"id": "sub_fee", "customer": "cus_1", "status": "canceled"})

        assert BillingVehicle.query.one().status == "canceled"
        for sub_id in (first.id, second.id):
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == "canceled"
            assert sub.canceled_at is not None

    def test_updated_mirrors_status(self, ctx, services):
        user = create_user(customer_id="cus_1")
        services.billing.record_vehicle(user.id, "sub_fee")
        db.session.commit()

        _deliver(services, "customer.subscription.updated", {"id": "sub_fee", "status": "past_due"})

        assert BillingVehicle.query.one().status == "past_due"

    def test_checkout_session_completed_records_vehicle(self, ctx, services):
        user = create_user(customer_id="cus_1")
        session = {"id": "cs_1", "mode": "subscription", "subscription": "sub_fee", "metadata": {"userId": str(user.id)}}

        _deliver(services, "checkout.session.completed", session)

        vehicle = BillingVehicle.query.one()
        assert vehicle.user_id == user.id
        assert vehicle.processor_subscription_id == "sub_fee"

    def _vehicle_obj(self, user, status="active"):
        return {"id": "sub_fee", "customer": "cus_1", "status": status, "metadata": {"type": "service_fee", "userId": str(user.id)}}

    def test_late_checkout_completed_does_not_reactivate(self, ctx, services):
        user = create_user(customer_id="cus_1")
        session = {"id": "cs_1", "mode": "subscription", "subscription": "sub_fee", "metadata": {"userId": str(user.id)}}

        _deliver(services, "customer.subscription.created", self._vehicle_obj(user), "evt_1")
        _deliver(services, "customer.subscription.deleted", self._vehicle_obj(user, "canceled"), "evt_2")
        _deliver(services, "checkout.session.completed", session, "evt_3")

        assert BillingVehicle.query.one().status == "canceled"
        assert services.billing.has_active_vehicle(user.id) is False

    def test_late_created_and_updated_do_not_reactivate(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        create_address(user)
        intent = create_intent(user)
        run = services.runs.create(RunContext(user_id=user.id, intent_id=intent.id, phase="checkout"))
        services.runs.transition(run, "done", output={"price_observed": 1200})

        _deliver(services, "customer.subscription.deleted", self._vehicle_obj(user, "canceled"), "evt_1")
        _deliver(services, "customer.subscription.created", self._vehicle_obj(user), "evt_2")
        _deliver(services, "customer.subscription.updated", self._vehicle_obj(user), "evt_3")

        vehicle = BillingVehicle.query.one()
        assert vehicle.status == "canceled"
        assert vehicle.canceled_at is not None
        assert processor.items == []
        assert BillingCharge.query.count() == 0

    def test_checkout_completed_before_created_settles_once(self, ctx, services, processor):
        user = create_user(customer_id="cus_1")
        create_address(user)
        intent = create_intent(user)
        run = services.runs.create(RunContext(user_id=user.id, intent_id=intent.id, phase="checkout"))
        services.runs.transition(run, "done", output={"price_observed": 1200})
        session = {"id": "cs_1", "mode": "subscription", "subscription": "sub_fee", "metadata": {"userId": str(user.id)}}

        _deliver(services, "checkout.session.completed", session, "evt_1")
        _deliver(services, "customer.subscription.created", self._vehicle_obj(user), "evt_2")

        assert BillingVehicle.query.one().status == "active"
        assert [item["metadata"]["purchase_event_id"] for item in processor.items] == [f"run:{run.id}"]



def test_payment_intent_events_update_payments(ctx, services):
    user = create_user(customer_id="cus_1")
    db.session.add(Payment(user_id=user.id, payment_intent_id="pi_7", amount_cents=100, status="pending"))
    db.session.commit()

    _deliver(services, "payment_intent.payment_failed", {"id": "pi_7"})

    assert Payment.query.one().status == "failed"


def test_webhook_endpoint_status_codes(client, app):
    payload = make_event("customer.created", {"id": "cus_1"}, "evt_http")

    ok = client.post("/api/webhooks/stripe", data=payload, headers={"Stripe-Signature": sign_payload(payload)})
    unsigned = client.post("/api/webhooks/stripe", data=payload)
    bad = client.post("/api/webhooks/stripe", data=payload, headers={"Stripe-Signature": "t=1,v1=deadbeef"})

    assert ok.status_code == 200
    assert ok.get_json()["received"] is True
    assert unsigned.status_code == 400
    assert bad.status_code == 400


def test_webhook_endpoint_returns_500_on_handler_error(client, app, processor):
    with app.app_context():
        user = create_user(customer_id="cus_1")
        user_id = user.id
    obj = {"id": "sub_fee", "customer": "cus_1", "status": "active", "metadata": {"type": "service_fee", "userId": str(user_id)}}
    payload = make_event("customer.subscription.created", obj, "evt_500")

    def explode(user):
        raise RuntimeError("db down")

    app.extensions["recompra"].purchases.settle_deferred = explode
    resp = client.post("/api/webhooks/stripe", data=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "webhook_handler_failed"}
    with app.app_context():
        # nao registrado: o Stripe reenvia
        assert WebhookEvent.query.count() == 0


def test_webhook_endpoint_handler_validation_error_is_retried(client, app, processor):
    with app.app_context():
        user = create_user(customer_id="cus_1")
        user_id = user.id
    obj = {"id": "sub_fee", "customer": "cus_1", "status": "active", "metadata": {"type": "service_fee", "userId": str(user_id)}}
    payload = make_event("customer.subscription.created", obj, "evt_422")

    def reject(user):
        raise ValidationError("Preco nao pode ser negativo.", code="invalid_price")

    app.extensions["recompra"].purchases.settle_deferred = reject
    resp = client.post("/api/webhooks/stripe", data=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert resp.status_code == 500
    with app.app_context():
        assert WebhookEvent.query.count() == 0
