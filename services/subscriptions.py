from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta

from models.extensions import db
from models.subscription_model import Product, Subscription
from services.errors import NotFoundError, ValidationError
from services.locks import subscription_locks

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.utcnow()


class SubscriptionLedger:
    """Assinaturas confirmadas e seus campos de agenda de renovacao.

    Mutacoes sobre uma assinatura devem acontecer dentro de locked(); os metodos
    de mutacao nao fazem commit, o chamador controla a transacao.
    """

    def __init__(self, locks=None) -> None:
        self.locks = locks if locks is not None else subscription_locks

    @contextmanager
    def locked(self, subscription_id: int):
        with self.locks.hold(subscription_id):
            stmt = (
                db.select(Subscription)
                .filter_by(id=subscription_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            yield db.session.execute(stmt).scalar_one_or_none()

    def get_or_create_product(self, url: str, *, name: str, merchant: str | None = None, price_cents: int | None = None) -> Product:
        product = Product.query.filter_by(url=url).first()
        if product is None:
            product = Product(url=url, name=name, merchant=merchant)
            db.session.add(product)
        if price_cents is not None:
            product.current_price_cents = price_cents
            product.price_updated_at = _now()
        return product

    def create_from_purchase(
        self,
        intent,
        *,
        address_id: int | None,
        price_cents: int | None,
        purchased_at: datetime | None = None,
        merchant: str | None = None,
    ) -> Subscription:
        purchased_at = purchased_at or _now()
        product = self.get_or_create_product(
            intent.target_url,
            name=intent.title,
            merchant=merchant,
            price_cents=price_cents,
        )
        db.session.flush()

        sub = Subscription(
            user_id=intent.user_id,
            product_id=product.id,
            intent_id=intent.id,
            address_id=address_id,
            renewal_frequency_days=intent.cadence_days,
            last_price_cents=price_cents,
            status="active",
            last_purchased_at=purchased_at,
            next_renewal_at=purchased_at + timedelta(days=intent.cadence_days),
        )
        db.session.add(sub)
        db.session.flush()
        logger.info("Assinatura: %s criada a partir da intencao %s", sub.id, intent.id)
        return sub

    def get(self, user_id: int, subscription_id: int) -> Subscription:
        sub = Subscription.query.filter_by(id=subscription_id, user_id=user_id).first()
        if sub is None:
            raise NotFoundError("Assinatura nao encontrada.", code="subscription_not_found")
        return sub

    def list_for_owner(self, user_id: int, *, include_canceled: bool = False) -> list[Subscription]:
        query = Subscription.query.filter_by(user_id=user_id)
        if not include_canceled:
            query = query.filter(Subscription.status != "canceled")
        return query.order_by(Subscription.created_at.desc()).all()

    def for_intent(self, intent_id: int) -> list[Subscription]:
        return Subscription.query.filter_by(intent_id=intent_id).all()

    def due(self, now: datetime | None = None, *, lookahead_hours: int = 24) -> list[Subscription]:
        now = now or _now()
        horizon = now + timedelta(hours=lookahead_hours)
        return (
            Subscription.query.filter(
                Subscription.status == "active",
                Subscription.next_renewal_at.isnot(None),
                Subscription.next_renewal_at <= horizon,
            )
            .order_by(Subscription.next_renewal_at.asc(), Subscription.id.asc())
            .all()
        )

    def mark_renewed(self, sub: Subscription, *, purchased_at: datetime | None = None, price_cents: int | None = None) -> None:
        purchased_at = purchased_at or _now()
        sub.last_purchased_at = purchased_at
        sub.next_renewal_at = purchased_at + timedelta(days=sub.renewal_frequency_days)
        if price_cents is not None:
            sub.last_price_cents = price_cents

    def pause(self, sub: Subscription) -> None:
        if sub.status == "canceled":
            raise ValidationError("Assinatura cancelada nao pode ser pausada.", code="subscription_canceled")
        sub.status = "paused"

    def resume(self, sub: Subscription) -> None:
        # uma data de renovacao vencida e apanhada pela proxima varredura
        if sub.status == "canceled":
            raise ValidationError("Assinatura cancelada nao pode ser retomada.", code="subscription_canceled")
        sub.status = "active"

    def cancel(self, sub: Subscription, *, when: datetime | None = None) -> None:
        if sub.status == "canceled":
            return
        sub.status = "canceled"
        sub.canceled_at = when or _now()

    def cancel_for_intent(self, intent_id: int, *, when: datetime | None = None) -> int:
        count = 0
        for sub in self.for_intent(intent_id):
            if sub.status != "canceled":
                with self.locks.hold(sub.id):
                    self.cancel(sub, when=when)
                count += 1
        return count

    def cancel_all_for_owner(self, user_id: int, *, when: datetime | None = None) -> int:
        when = when or _now()
        count = 0
        for sub in Subscription.query.filter(
            Subscription.user_id == user_id, Subscription.status != "canceled"
        ).all():
            with self.locks.hold(sub.id):
                self.cancel(sub, when=when)
            count += 1
        if count:
            logger.info("Assinatura: %s assinaturas canceladas do usuario %s", count, user_id)
        return count

    def sync_from_intent(self, intent) -> int:
        """Propaga status, frequencia e preco da intencao para as assinaturas ligadas."""
        count = 0
        for sub in self.for_intent(intent.id):
            if sub.status == "canceled":
                continue
            with self.locks.hold(sub.id):
                if intent.status in {"active", "paused"}:
                    sub.status = intent.status
                elif intent.status == "canceled":
                    self.cancel(sub, when=intent.canceled_at)

                if intent.cadence_days != sub.renewal_frequency_days:
                    sub.renewal_frequency_days = intent.cadence_days
                    if sub.last_purchased_at:
                        sub.next_renewal_at = sub.last_purchased_at + timedelta(days=intent.cadence_days)

                if intent.max_price_cents and intent.max_price_cents != sub.last_price_cents:
                    sub.last_price_cents = intent.max_price_cents
            count += 1
        return count
