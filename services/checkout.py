from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from urllib.parse import urlparse

from services.agent_runs import AgentRunCoordinator, RunContext
from services.errors import ValidationError

logger = logging.getLogger(__name__)


STRATEGIES = {"native_recurring", "manual_one_off"}
PAYMENT_TYPES = {"stripe_saved", "merchant_account"}
REQUIRED_ADDRESS_FIELDS = ("street1", "city", "state", "zipCode")

KNOWN_MERCHANTS = (
    ("amazon", "Amazon"),
    ("target", "Target"),
    ("walmart", "Walmart"),
    ("bestbuy", "Best Buy"),
    ("costco", "Costco"),
)

INTERVENTION_REASON = "Payment confirmation required"


@dataclass(frozen=True)
class PaymentDescriptor:
    type: str = "stripe_saved"
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutRequest:
    target_url: str
    address: dict | None
    strategy: str = "manual_one_off"
    payment: PaymentDescriptor = field(default_factory=PaymentDescriptor)
    user_id: int | None = None
    intent_id: int | None = None
    subscription_id: int | None = None
    run_id: str | None = None


@dataclass
class CheckoutResult:
    success: bool
    order_reference: str | None = None
    price_observed: int | None = None
    session_handle: str | None = None
    error: str | None = None
    requires_manual_intervention: bool = False
    intervention_reason: str | None = None
    run_id: str | None = None
    merchant: str | None = None

    def to_payload(self) -> dict:
        return {
            "success": self.success,
            "orderReference": self.order_reference,
            "priceObserved": self.price_observed,
            "sessionHandle": self.session_handle,
            "error": self.error,
            "requiresManualIntervention": self.requires_manual_intervention,
            "interventionReason": self.intervention_reason,
            "runId": self.run_id,
            "merchant": self.merchant,
        }


def merchant_from_url(url: str) -> str:
    try:
        hostname = (urlparse(url or "").hostname or "").lower()
    except ValueError:
        return "Unknown"
    for fragment, name in KNOWN_MERCHANTS:
        if fragment in hostname:
            return name
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname.split(".")[0] or "Unknown"


def normalize_address(address) -> dict | None:
    if address is None:
        return None
    if hasattr(address, "to_payload"):
        address = address.to_payload()
    if not isinstance(address, dict):
        return None
    for key in REQUIRED_ADDRESS_FIELDS:
        if not str(address.get(key) or "").strip():
            return None
    return address


def _parse_cents(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        cents = int(value)
    except (TypeError, ValueError):
        return None
    # preco negativo do servico externo vale como desconhecido
    return cents if cents >= 0 else None


class CheckoutOrchestrator:
    """Conduz uma tentativa de compra pelo servico externo.

    Sempre para antes da confirmacao final do pagamento; o resultado de sucesso
    volta com requires_manual_intervention=True. Nao ha retentativa dentro da
    mesma tentativa: quem tenta de novo e a proxima varredura de renovacao.
    """

    def __init__(self, runs: AgentRunCoordinator, sessions, *, merchant_accounts: dict | None = None) -> None:
        self.runs = runs
        self.sessions = sessions
        self.merchant_accounts = merchant_accounts or {}

    def _credentials(self, merchant: str) -> dict | None:
        key = merchant.lower()
        creds = self.merchant_accounts.get(key) or self.merchant_accounts.get(key.replace(" ", ""))
        if not creds:
            logger.warning("Checkout: sem credenciais para o lojista %s", merchant)
        return creds

    def build_instruction(self, request: CheckoutRequest, address: dict, merchant: str) -> str:
        creds = self._credentials(merchant)
        if creds:
            login_step = (
                f"If prompted to sign in, use email: {creds['email']} and password: {creds['password']}"
            )
        else:
            login_step = "If prompted to sign in, continue as guest"

        if request.strategy == "native_recurring":
            product_steps = [
                'Find and click the "Subscribe & Save" or subscription option',
                "Select delivery frequency if prompted",
                "Add to cart or proceed to checkout",
            ]
            extract = "Extract the subscription details and total cost if visible."
        else:
            product_steps = [
                "Select default options (size, color, quantity: 1)",
                'Click "Add to Cart" or "Buy Now"',
                "Proceed to checkout",
            ]
            extract = "Extract the order subtotal, tax, total, and estimated delivery if visible."

        if request.payment.type == "merchant_account":
            payment_step = "Select the payment method saved on the merchant account"
        else:
            payment_step = "Select saved payment method (company card on file)"

        street = address["street1"]
        if address.get("street2"):
            street = f"{street} {address['street2']}"

        steps = [login_step, *product_steps]
        steps.append(
            f"Fill in shipping address: {street}, {address['city']}, {address['state']} {address['zipCode']}"
        )
        steps.append(payment_step)
        steps.append('STOP before final "Place Order" button - await manual approval')

        lines = [f"Navigate to {request.target_url}", "", "Steps:"]
        lines.extend(f"{index}. {step}" for index, step in enumerate(steps, start=1))
        lines.extend(["", extract])
        return "\n".join(lines)

    def run(self, request: CheckoutRequest) -> CheckoutResult:
        # validacoes antes de qualquer efeito colateral
        address = normalize_address(request.address)
        if address is None:
            raise ValidationError("Endereco de entrega obrigatorio.", code="address_required")
        if request.strategy not in STRATEGIES:
            raise ValidationError(f"Estrategia invalida: {request.strategy}", code="invalid_strategy")
        if request.payment.type not in PAYMENT_TYPES:
            raise ValidationError("Forma de pagamento invalida.", code="invalid_payment")
        if not (request.target_url or "").strip():
            raise ValidationError("URL do produto obrigatoria.", code="invalid_url")

        merchant = merchant_from_url(request.target_url)
        run = self.runs.create(
            RunContext(
                user_id=request.user_id,
                intent_id=request.intent_id,
                subscription_id=request.subscription_id,
                phase="checkout",
                input={
                    "targetUrl": request.target_url,
                    "address": address,
                    "strategy": request.strategy,
                    "payment": {"type": request.payment.type},
                },
            ),
            external_id=request.run_id,
        )
        run_id = run.id
        handle = None

        logger.info("Checkout: iniciando %s (%s, run %s)", request.target_url, request.strategy, run_id)
        try:
            with self.sessions.session() as handle:
                self.runs.transition(run, "checkout", session_handle=handle)
                instruction = self.build_instruction(request, address, merchant)
                response = self.sessions.client.act(handle, instruction)

                details = response.get("orderDetails") or {}
                order_reference = details.get("orderNumber") or response.get("orderId")
                price = _parse_cents(details.get("priceCents"))
                result = CheckoutResult(
                    success=True,
                    order_reference=str(order_reference) if order_reference else None,
                    price_observed=price,
                    session_handle=handle,
                    requires_manual_intervention=True,
                    intervention_reason=INTERVENTION_REASON,
                    run_id=run_id,
                    merchant=details.get("merchant") or merchant,
                )
                output = asdict(result)
                output["raw"] = response.get("result")
                self.runs.transition(run, "done", output=output)
                return result
        except Exception as exc:
            logger.warning("Checkout: falha na execucao %s", run_id, exc_info=True)
            self._mark_failed(run_id, str(exc) or exc.__class__.__name__)
            return CheckoutResult(
                success=False,
                error=str(exc) or "Checkout failed",
                session_handle=handle,
                run_id=run_id,
                merchant=merchant,
            )

    def _mark_failed(self, run_id: str, error: str) -> None:
        self.runs.session.rollback()
        run = self.runs.get(run_id)
        if run is None or run.is_terminal:
            return
        self.runs.transition(run, "failed", error=error)

    def resume(self, run_id: str) -> CheckoutResult:
        # TODO: retomar a sessao pausada e confirmar o pagamento quando o servico expuser a etapa final
        return CheckoutResult(
            success=False,
            error="Session resume not yet implemented",
            run_id=run_id,
        )
