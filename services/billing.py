from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError

from models.billing_model import BillingCharge, BillingVehicle, Payment
from models.extensions import db
from models.subscription_model import Subscription
from services.errors import BillingError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


CHARGE_MODES = {"next_invoice", "immediate"}


def prorate(cadence_days: int, price_cents: int, cycle_days: int = 30) -> int:
    """Valor mensal equivalente: preco * (ciclo / cadencia), arredondado meio para cima.

    prorate(14, 2000) == 4286; prorate(30, 2000) == 2000; prorate(90, 2000) == 667.
    """
    if cadence_days is None or int(cadence_days) <= 0:
        raise ValidationError("Cadencia deve ser positiva.", code="invalid_cadence")
    if price_cents is None or int(price_cents) < 0:
        raise ValidationError("Preco nao pode ser negativo.", code="invalid_price")
    amount = Decimal(int(price_cents)) * Decimal(int(cycle_days)) / Decimal(int(cadence_days))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def describe(cadence_days: int, cycle_days: int = 30) -> str:
    if cadence_days is None or int(cadence_days) <= 0:
        raise ValidationError("Cadencia deve ser positiva.", code="invalid_cadence")
    cadence_days = int(cadence_days)
    if cadence_days == cycle_days:
        return "Monthly delivery"
    occurrences = cycle_days / cadence_days
    if cadence_days < cycle_days:
        if cycle_days % cadence_days == 0:
            return f"{cycle_days // cadence_days}x per month (every {cadence_days} days)"
        return f"~{occurrences:.2f}x per month (every {cadence_days} days)"
    return f"Partial monthly charge (every {cadence_days} days, {occurrences:.2f}x per {cycle_days} days)"


@dataclass(frozen=True)
class PurchaseEvent:
    """Compra concluida que gera exatamente uma cobranca."""

    purchase_event_id: str
    price_cents: int
    cadence_days: int
    intent_id: int | None = None
    subscription_id: int | None = None
    order_reference: str | None = None
    product_name: str | None = None


class BillingBridge:
    def __init__(
        self,
        processor,
        *,
        service_fee_price_id: str = "",
        service_fee_cents: int = 100,
        cycle_days: int = 30,
    ) -> None:
        self.processor = processor
        self.service_fee_price_id = service_fee_price_id
        self.service_fee_cents = service_fee_cents
        self.cycle_days = cycle_days

    # Customer / assinatura base

    def ensure_customer(self, user) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer_id = self.processor.create_customer(
            email=user.email,
            name=user.full_name,
            metadata={"userId": str(user.id)},
        )
        user.stripe_customer_id = customer_id
        db.session.commit()
        logger.info("Stripe: customer %s criado para usuario %s", customer_id, user.id)
        return customer_id

    def active_vehicle(self, user_id: int) -> BillingVehicle | None:
        return (
            BillingVehicle.query.filter_by(user_id=user_id, status="active")
            .order_by(BillingVehicle.created_at.desc())
            .first()
        )

    def has_active_vehicle(self, user_id: int) -> bool:
        return self.active_vehicle(user_id) is not None

    def record_vehicle(self, user_id: int, processor_subscription_id: str, *, status: str = "active") -> BillingVehicle:
        """Cria ou atualiza o registro local da assinatura base (nao faz commit)."""
        vehicle = BillingVehicle.query.filter_by(processor_subscription_id=processor_subscription_id).first()
        if vehicle is None:
            vehicle = BillingVehicle(
                user_id=user_id,
                processor_subscription_id=processor_subscription_id,
                amount_cents=self.service_fee_cents,
            )
            db.session.add(vehicle)
        elif vehicle.status == "canceled":
            # cancelada e terminal: eventos atrasados nao reativam
            if status != "canceled":
                logger.info(
                    "Cobranca: assinatura base %s cancelada, ignorando status %s",
                    processor_subscription_id,
                    status,
                )
            return vehicle
        vehicle.status = status
        if status == "canceled" and not vehicle.canceled_at:
            vehicle.canceled_at = datetime.utcnow()
        return vehicle

    def start_billing_vehicle(self, user, payment_method_id: str) -> BillingVehicle:
        if not self.service_fee_price_id:
            raise BillingError("STRIPE_SERVICE_FEE_PRICE_ID nao configurado.", code="service_fee_not_configured")
        if not (payment_method_id or "").strip():
            raise ValidationError("Metodo de pagamento obrigatorio.", code="invalid_payment_method")
        existing = self.active_vehicle(user.id)
        if existing:
            return existing

        customer_id = self.ensure_customer(user)
        sub = self.processor.create_subscription(
            customer_id=customer_id,
            price_id=self.service_fee_price_id,
            payment_method_id=payment_method_id,
            metadata={"userId": str(user.id), "type": "service_fee"},
        )
        vehicle = self.record_vehicle(user.id, sub["id"], status=sub.get("status") or "active")
        db.session.commit()
        return vehicle

    def create_setup_session(self, user, *, success_url: str, cancel_url: str) -> dict:
        if not self.service_fee_price_id:
            raise BillingError("STRIPE_SERVICE_FEE_PRICE_ID nao configurado.", code="service_fee_not_configured")
        customer_id = self.ensure_customer(user)
        return self.processor.create_checkout_session(
            customer_id=customer_id,
            price_id=self.service_fee_price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"userId": str(user.id), "type": "service_fee"},
        )

    def cancel_billing_vehicle(self, user) -> BillingVehicle:
        vehicle = self.active_vehicle(user.id)
        if vehicle is None:
            raise NotFoundError("Assinatura de servico nao encontrada.", code="billing_vehicle_not_found")
        self.processor.cancel_subscription(vehicle.processor_subscription_id)
        vehicle.status = "canceled"
        vehicle.canceled_at = datetime.utcnow()
        db.session.commit()
        return vehicle

    # Cobrancas

    def _metadata(self, user, event: PurchaseEvent) -> dict:
        return {
            "purchase_event_id": event.purchase_event_id,
            "user_id": str(user.id),
            "intent_id": str(event.intent_id or ""),
            "subscription_id": str(event.subscription_id or ""),
            "order_reference": event.order_reference or "",
            "product_price_cents": str(event.price_cents),
            "cadence_days": str(event.cadence_days),
            "billing_month": datetime.utcnow().strftime("%Y-%m"),
        }

    def append_charge(
        self,
        user,
        event: PurchaseEvent,
        *,
        mode: str = "next_invoice",
        invoice_id: str | None = None,
    ) -> BillingCharge:
        if mode not in CHARGE_MODES:
            raise ValidationError(f"Modo de cobranca invalido: {mode}", code="invalid_charge_mode")
        if not (event.purchase_event_id or "").strip():
            raise ValidationError("Evento de compra sem identificador.", code="invalid_purchase_event")

        existing = BillingCharge.query.filter_by(purchase_event_id=event.purchase_event_id).first()
        if existing:
            logger.info("Cobranca: evento %s ja cobrado (charge %s)", event.purchase_event_id, existing.id)
            return existing

        customer_id = user.stripe_customer_id
        if not customer_id:
            raise BillingError("Customer Stripe nao encontrado para o usuario.", code="customer_not_found")

        metadata = self._metadata(user, event)
        idempotency_key = f"charge-{event.purchase_event_id}"
        label = event.product_name or "Subscription item"

        if mode == "immediate":
            amount = int(event.price_cents)
            description = f"{label} - One-time charge"
            metadata["charge_type"] = "immediate"
            invoice = self.processor.create_invoice(
                customer_id=customer_id,
                metadata=metadata,
                idempotency_key=f"invoice-{event.purchase_event_id}",
            )
            item_id = self.processor.add_invoice_item(
                customer_id=customer_id,
                amount_cents=amount,
                description=description,
                metadata=metadata,
                invoice_id=invoice,
                idempotency_key=idempotency_key,
            )
            finalized = self.processor.finalize_invoice(invoice)
            invoice_id = finalized["id"]
            db.session.add(
                Payment(
                    user_id=user.id,
                    subscription_id=event.subscription_id,
                    intent_id=event.intent_id,
                    invoice_id=invoice_id,
                    amount_cents=amount,
                    product_cost_cents=amount,
                    service_fee_cents=0,
                    status="succeeded" if finalized.get("status") == "paid" else "pending",
                )
            )
        else:
            amount = prorate(event.cadence_days, event.price_cents, self.cycle_days)
            description = f"{label} - {describe(event.cadence_days, self.cycle_days)}"
            item_id = self.processor.add_invoice_item(
                customer_id=customer_id,
                amount_cents=amount,
                description=description,
                metadata=metadata,
                invoice_id=invoice_id,
                idempotency_key=idempotency_key,
            )

        charge = BillingCharge(
            user_id=user.id,
            purchase_event_id=event.purchase_event_id,
            subscription_id=event.subscription_id,
            intent_id=event.intent_id,
            amount_cents=amount,
            description=description[:255],
            processor_item_id=item_id,
            invoice_id=invoice_id,
            mode=mode,
        )
        db.session.add(charge)
        try:
            db.session.commit()
        except IntegrityError:
            # outra entrega do mesmo evento gravou primeiro; a chave de idempotencia
            # garantiu um unico item no processador
            db.session.rollback()
            existing = BillingCharge.query.filter_by(purchase_event_id=event.purchase_event_id).first()
            if existing is None:
                raise
            return existing

        logger.info(
            "Cobranca: %s cents (%s) para evento %s",
            amount,
            mode,
            event.purchase_event_id,
        )
        return charge

    def monthly_estimate(self, user_id: int) -> dict:
        items = []
        subs = (
            Subscription.query.filter_by(user_id=user_id, status="active")
            .order_by(Subscription.id.asc())
            .all()
        )
        for sub in subs:
            if sub.last_price_cents is None:
                continue
            items.append(
                {
                    "subscriptionId": sub.id,
                    "product": sub.product.name if sub.product else None,
                    "cadenceDays": sub.renewal_frequency_days,
                    "priceCents": sub.last_price_cents,
                    "amountCents": prorate(sub.renewal_frequency_days, sub.last_price_cents, self.cycle_days),
                    "description": describe(sub.renewal_frequency_days, self.cycle_days),
                }
            )
        products_total = sum(item["amountCents"] for item in items)
        return {
            "serviceFeeCents": self.service_fee_cents,
            "productsCents": products_total,
            "totalCents": products_total + self.service_fee_cents,
            "items": items,
        }
