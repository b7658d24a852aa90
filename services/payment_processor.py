from __future__ import annotations

import json
import logging
from typing import Any, Dict

import stripe

from services.errors import AuthenticationError, BillingError, ValidationError

logger = logging.getLogger(__name__)


class StripeProcessor:
    """Adaptador fino sobre a biblioteca stripe.

    Expoe somente as operacoes usadas pela cobranca: customer, assinatura base,
    item de fatura, fatura avulsa e verificacao de webhook. Erros da biblioteca
    viram BillingError.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        timeout: int = 20,
        tolerance: int = 300,
        currency: str = "usd",
    ) -> None:
        self.webhook_secret = webhook_secret or ""
        self.tolerance = tolerance
        self.currency = currency
        stripe.api_key = api_key or None
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _call(self, label: str, func, *args, **kwargs):
        if not stripe.api_key:
            raise BillingError("STRIPE_SECRET_KEY nao configurada.", code="stripe_not_configured")
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe: falha em %s: %s", label, exc, exc_info=True)
            raise BillingError(f"Erro Stripe em {label}: {exc.user_message or exc}")

    def create_customer(self, *, email: str, name: str | None, metadata: dict) -> str:
        customer = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name or None,
            metadata=metadata,
        )
        return customer["id"]

    def create_subscription(self, *, customer_id: str, price_id: str, payment_method_id: str, metadata: dict) -> Dict[str, Any]:
        sub = self._call(
            "subscription.create",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            default_payment_method=payment_method_id,
            metadata=metadata,
        )
        return {"id": sub["id"], "status": sub.get("status")}

    def cancel_subscription(self, subscription_id: str) -> None:
        self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
    ) -> Dict[str, Any]:
        session = self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        return {"id": session["id"], "url": session.get("url")}

    def add_invoice_item(
        self,
        *,
        customer_id: str,
        amount_cents: int,
        description: str,
        metadata: dict,
        invoice_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "amount": int(amount_cents),
            "currency": self.currency,
            "description": description,
            "metadata": metadata,
        }
        if invoice_id:
            params["invoice"] = invoice_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        item = self._call("invoiceitem.create", stripe.InvoiceItem.create, **params)
        return item["id"]

    def create_invoice(self, *, customer_id: str, metadata: dict, idempotency_key: str | None = None) -> str:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "collection_method": "charge_automatically",
            "auto_advance": True,
            "pending_invoice_items_behavior": "exclude",
            "metadata": metadata,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        invoice = self._call("invoice.create", stripe.Invoice.create, **params)
        return invoice["id"]

    def finalize_invoice(self, invoice_id: str) -> Dict[str, Any]:
        invoice = self._call("invoice.finalize", stripe.Invoice.finalize_invoice, invoice_id)
        return {
            "id": invoice["id"],
            "status": invoice.get("status"),
            "amount_paid": invoice.get("amount_paid"),
            "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        }

    def construct_event(self, payload: bytes | str, sig_header: str | None) -> Dict[str, Any]:
        """Verifica a assinatura antes de qualquer parse do corpo."""
        if not self.webhook_secret:
            raise AuthenticationError("STRIPE_WEBHOOK_SECRET nao configurado.", code="webhook_secret_missing")
        if not sig_header:
            raise AuthenticationError("Cabecalho Stripe-Signature ausente.", code="missing_signature")

        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise ValidationError("Corpo do webhook invalido.", code="invalid_payload")

        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe: assinatura de webhook invalida: %s", exc)
            raise AuthenticationError("Assinatura do webhook invalida.", code="invalid_signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Corpo do webhook invalido.", code="invalid_payload")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Evento do webhook incompleto.", code="invalid_payload")
        return event
