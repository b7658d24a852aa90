from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from models.agent_run_model import AgentRun
from models.billing_model import BillingVehicle, Payment, WebhookEvent
from models.extensions import db
from models.order_model import Order
from models.subscription_model import Subscription
from models.user_model import User
from services.billing import PurchaseEvent

logger = logging.getLogger(__name__)


def _obj_id(value) -> str | None:
    # campos expansiveis do Stripe chegam como id ou como objeto
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _int_or_none(value) -> int | None:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _invoice_subscription_id(invoice: dict) -> str | None:
    sub_id = _obj_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _obj_id(details.get("subscription"))


def _invoice_lines(invoice: dict) -> list[dict]:
    lines = (invoice.get("lines") or {}).get("data") or []
    return [line for line in lines if isinstance(line, dict)]


def _purchase_metadata(invoice: dict) -> list[dict]:
    """Metadados de compra na fatura e nas linhas, sem repetir o mesmo evento."""
    seen: set[str] = set()
    found: list[dict] = []
    candidates = [invoice.get("metadata") or {}]
    candidates.extend(line.get("metadata") or {} for line in _invoice_lines(invoice))
    for meta in candidates:
        event_id = meta.get("purchase_event_id")
        if not event_id or event_id in seen:
            continue
        seen.add(event_id)
        found.append(meta)
    return found


class WebhookReconciler:
    """Aplica eventos do processador sobre o estado local.

    Entrega pelo menos uma vez, em qualquer ordem: cada handler pode ser
    reaplicado sem efeito duplicado. O id do evento so e gravado depois que o
    handler termina, entao uma falha faz o processador reenviar.
    """

    def __init__(self, processor, billing, ledger, intents, purchases) -> None:
        self.processor = processor
        self.billing = billing
        self.ledger = ledger
        self.intents = intents
        self.purchases = purchases
        self.handlers = {
            "invoice.payment_succeeded": self.on_invoice_paid,
            "invoice.paid": self.on_invoice_paid,
            "invoice.payment_failed": self.on_invoice_failed,
            "invoice.created": self.on_invoice_created,
            "customer.subscription.created": self.on_vehicle_created,
            "customer.subscription.updated": self.on_vehicle_updated,
            "customer.subscription.deleted": self.on_vehicle_deleted,
            "checkout.session.completed": self.on_checkout_completed,
            "payment_intent.succeeded": self.on_payment_intent_succeeded,
            "payment_intent.payment_failed": self.on_payment_intent_failed,
        }

    def handle(self, payload: bytes | str, sig_header: str | None) -> dict:
        return self.dispatch(self.verify(payload, sig_header))

    def verify(self, payload: bytes | str, sig_header: str | None) -> dict:
        # assinatura antes de qualquer parse ou escrita
        return self.processor.construct_event(payload, sig_header)

    def dispatch(self, event: dict) -> dict:
        event_id = event["id"]
        event_type = event["type"]

        if WebhookEvent.query.filter_by(event_id=event_id).first():
            logger.info("Webhook: evento %s ja processado", event_id)
            return {"received": True, "duplicate": True}

        handler = self.handlers.get(event_type)
        obj = (event.get("data") or {}).get("object") or {}
        if handler is None:
            logger.info("Webhook: tipo nao tratado %s", event_type)
        else:
            logger.info("Webhook: processando %s (%s)", event_type, event_id)
            handler(obj)

        db.session.add(WebhookEvent(event_id=event_id, event_type=event_type))
        try:
            db.session.commit()
        except IntegrityError:
            # entrega concorrente do mesmo evento
            db.session.rollback()
        return {"received": True}

    # Helpers

    def _user_for_customer(self, customer) -> User | None:
        customer_id = _obj_id(customer)
        if not customer_id:
            return None
        return User.query.filter_by(stripe_customer_id=customer_id).first()

    def _user_for_vehicle(self, obj: dict) -> User | None:
        user_id = _int_or_none((obj.get("metadata") or {}).get("userId"))
        if user_id is not None:
            user = db.session.get(User, user_id)
            if user is not None:
                return user
        return self._user_for_customer(obj.get("customer"))

    def _payments_for_invoice(self, invoice: dict) -> list[Payment]:
        return Payment.query.filter_by(invoice_id=invoice.get("id")).all()

    def _record_invoice_payment(self, invoice: dict, status: str) -> None:
        payments = self._payments_for_invoice(invoice)
        for payment in payments:
            payment.status = status
            if invoice.get("payment_intent"):
                payment.payment_intent_id = _obj_id(invoice.get("payment_intent"))
        if payments:
            return

        user = self._user_for_customer(invoice.get("customer"))
        if user is None:
            logger.warning("Webhook: fatura %s sem usuario local", invoice.get("id"))
            return
        total = _int_or_none(invoice.get("amount_paid")) if status == "succeeded" else None
        if total is None:
            total = _int_or_none(invoice.get("amount_due")) or 0
        product_cost = sum(
            _int_or_none(line.get("amount")) or 0
            for line in _invoice_lines(invoice)
            if (line.get("metadata") or {}).get("purchase_event_id")
        )
        db.session.add(
            Payment(
                user_id=user.id,
                invoice_id=invoice.get("id"),
                payment_intent_id=_obj_id(invoice.get("payment_intent")),
                amount_cents=total,
                product_cost_cents=product_cost,
                service_fee_cents=max(total - product_cost, 0),
                status=status,
            )
        )

    # Faturas

    def on_invoice_paid(self, invoice: dict) -> None:
        self._record_invoice_payment(invoice, "succeeded")

        created = 0
        for meta in _purchase_metadata(invoice):
            sub_id = _int_or_none(meta.get("subscription_id"))
            sub = db.session.get(Subscription, sub_id) if sub_id else None
            if sub is None:
                continue
            external_id = meta.get("order_reference") or meta["purchase_event_id"]
            if Order.query.filter_by(subscription_id=sub.id, external_order_id=external_id).first():
                continue

            run_id = None
            event_id = meta["purchase_event_id"]
            if event_id.startswith("run:") and db.session.get(AgentRun, event_id[4:]):
                run_id = event_id[4:]

            db.session.add(
                Order(
                    subscription_id=sub.id,
                    agent_run_id=run_id,
                    merchant=sub.product.merchant if sub.product else None,
                    target_url=sub.product.url if sub.product else None,
                    external_order_id=external_id,
                    price_cents=_int_or_none(meta.get("product_price_cents")),
                    currency=invoice.get("currency") or "usd",
                    receipt={
                        "invoiceId": invoice.get("id"),
                        "amountPaid": invoice.get("amount_paid"),
                        "hostedInvoiceUrl": invoice.get("hosted_invoice_url"),
                    },
                    status="succeeded",
                )
            )
            created += 1
        if created:
            logger.info("Webhook: %s pedidos criados pela fatura %s", created, invoice.get("id"))

    def on_invoice_failed(self, invoice: dict) -> None:
        self._record_invoice_payment(invoice, "failed")

        intent_ids = {
            _int_or_none(meta.get("intent_id")) for meta in _purchase_metadata(invoice)
        }
        for payment in self._payments_for_invoice(invoice):
            intent_ids.add(payment.intent_id)
        for intent_id in intent_ids:
            if intent_id is not None:
                self.intents.mark_error(intent_id)
        logger.info("Webhook: pagamento da fatura %s falhou", invoice.get("id"))

    def on_invoice_created(self, invoice: dict) -> None:
        if not _invoice_subscription_id(invoice):
            return
        if invoice.get("billing_reason") == "subscription_create":
            # primeira fatura da assinatura base; compras anteriores sao cobradas na ativacao
            return
        user = self._user_for_customer(invoice.get("customer"))
        if user is None:
            logger.warning("Webhook: fatura %s sem usuario local", invoice.get("id"))
            return

        invoice_id = invoice.get("id")
        subs = Subscription.query.filter_by(user_id=user.id, status="active").all()
        for sub in subs:
            if sub.last_price_cents is None:
                continue
            event = PurchaseEvent(
                purchase_event_id=f"invoice:{invoice_id}:subscription:{sub.id}",
                price_cents=sub.last_price_cents,
                cadence_days=sub.renewal_frequency_days,
                intent_id=sub.intent_id,
                subscription_id=sub.id,
                product_name=sub.product.name if sub.product else None,
            )
            try:
                self.billing.append_charge(user, event, mode="next_invoice", invoice_id=invoice_id)
            except Exception:
                # uma assinatura com problema nao bloqueia as demais
                db.session.rollback()
                logger.warning(
                    "Webhook: cobranca da assinatura %s na fatura %s falhou",
                    sub.id,
                    invoice_id,
                    exc_info=True,
                )

    # Assinatura base

    def _apply_vehicle(self, user, processor_subscription_id: str, status: str) -> None:
        existing = BillingVehicle.query.filter_by(processor_subscription_id=processor_subscription_id).first()
        before = existing.status if existing else None
        vehicle = self.billing.record_vehicle(user.id, processor_subscription_id, status=status)
        db.session.commit()
        # so a passagem para ativa cobra as compras adiadas
        if vehicle.status == "active" and before != "active":
            self.purchases.settle_deferred(user)

    def on_vehicle_created(self, obj: dict) -> None:
        if (obj.get("metadata") or {}).get("type") != "service_fee":
            return
        user = self._user_for_vehicle(obj)
        if user is None:
            logger.warning("Webhook: assinatura %s sem usuario local", obj.get("id"))
            return
        self._apply_vehicle(user, obj["id"], obj.get("status") or "active")

    def on_vehicle_updated(self, obj: dict) -> None:
        vehicle = BillingVehicle.query.filter_by(processor_subscription_id=obj.get("id")).first()
        if vehicle is None or not obj.get("status"):
            return
        user = db.session.get(User, vehicle.user_id)
        if user is None:
            return
        self._apply_vehicle(user, vehicle.processor_subscription_id, obj["status"])

    def on_vehicle_deleted(self, obj: dict) -> None:
        vehicle = BillingVehicle.query.filter_by(processor_subscription_id=obj.get("id")).first()
        user_id = vehicle.user_id if vehicle else None
        if vehicle is not None:
            vehicle.status = "canceled"
            vehicle.canceled_at = vehicle.canceled_at or datetime.utcnow()
        if user_id is None:
            user = self._user_for_vehicle(obj)
            user_id = user.id if user else None
        if user_id is None:
            return
        if vehicle is None and obj.get("id"):
            # exclusao chegou antes da criacao: o registro cancelado barra a reativacao
            self.billing.record_vehicle(user_id, obj["id"], status="canceled")
        self.ledger.cancel_all_for_owner(user_id)

    def on_checkout_completed(self, session: dict) -> None:
        if session.get("mode") != "subscription":
            return
        sub_id = _obj_id(session.get("subscription"))
        user_id = _int_or_none((session.get("metadata") or {}).get("userId"))
        user = db.session.get(User, user_id) if user_id is not None else None
        if not sub_id or user is None:
            return
        if BillingVehicle.query.filter_by(processor_subscription_id=sub_id).first():
            # o evento customer.subscription.* ja registrou a assinatura base
            return
        self._apply_vehicle(user, sub_id, "active")

    # Payment intents

    def _update_payment_intent(self, intent: dict, status: str) -> None:
        for payment in Payment.query.filter_by(payment_intent_id=intent.get("id")).all():
            payment.status = status

    def on_payment_intent_succeeded(self, intent: dict) -> None:
        self._update_payment_intent(intent, "succeeded")

    def on_payment_intent_failed(self, intent: dict) -> None:
        self._update_payment_intent(intent, "failed")
