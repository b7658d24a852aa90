from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from services.addresses import AddressBook
from services.agent_runs import AgentRunCoordinator
from services.billing import BillingBridge
from services.checkout import CheckoutOrchestrator
from services.intent_extractor import IntentExtractor
from services.intents import IntentRegistry
from services.payment_processor import StripeProcessor
from services.purchase_agent import AgentSessionManager, PurchaseAgentClient
from services.purchases import PurchaseFlow
from services.renewal import RenewalScheduler
from services.subscriptions import SubscriptionLedger
from services.webhooks import WebhookReconciler

EXTENSION_KEY = "recompra"


@dataclass
class Services:
    processor: StripeProcessor
    sessions: AgentSessionManager
    extractor: IntentExtractor
    runs: AgentRunCoordinator
    ledger: SubscriptionLedger
    intents: IntentRegistry
    addresses: AddressBook
    checkout: CheckoutOrchestrator
    billing: BillingBridge
    purchases: PurchaseFlow
    renewals: RenewalScheduler
    webhooks: WebhookReconciler


def build_services(config, *, processor=None, agent_client=None, extractor=None, session_manager=None) -> Services:
    """Monta o grafo de servicos; os testes injetam colaboradores externos falsos."""
    if processor is None:
        processor = StripeProcessor(
            config.get("STRIPE_SECRET_KEY", ""),
            config.get("STRIPE_WEBHOOK_SECRET", ""),
            timeout=config.get("STRIPE_TIMEOUT", 20),
            tolerance=config.get("WEBHOOK_TOLERANCE_SECONDS", 300),
            currency=config.get("BILLING_CURRENCY", "usd"),
        )
    if session_manager is None:
        if agent_client is None:
            agent_client = PurchaseAgentClient(
                config.get("PURCHASE_AGENT_BASE_URL", ""),
                config.get("PURCHASE_AGENT_API_KEY", ""),
                timeout=config.get("PURCHASE_AGENT_TIMEOUT", 240),
            )
        session_manager = AgentSessionManager(
            agent_client,
            max_age_seconds=config.get("PURCHASE_AGENT_SESSION_MAX_AGE", 1800),
        )
    if extractor is None:
        extractor = IntentExtractor(
            config.get("INTENT_EXTRACTOR_URL", ""),
            timeout=config.get("INTENT_EXTRACTOR_TIMEOUT", 30),
        )

    runs = AgentRunCoordinator()
    ledger = SubscriptionLedger()
    intents = IntentRegistry(ledger)
    checkout = CheckoutOrchestrator(
        runs,
        session_manager,
        merchant_accounts=config.get("MERCHANT_ACCOUNTS") or {},
    )
    billing = BillingBridge(
        processor,
        service_fee_price_id=config.get("STRIPE_SERVICE_FEE_PRICE_ID", ""),
        service_fee_cents=config.get("SERVICE_FEE_CENTS", 100),
        cycle_days=config.get("BILLING_CYCLE_DAYS", 30),
    )
    purchases = PurchaseFlow(intents, ledger, checkout, billing, runs)
    renewals = RenewalScheduler(
        ledger,
        checkout,
        billing,
        cron_secret=config.get("CRON_SECRET_KEY", ""),
        is_production=bool(config.get("IS_PRODUCTION")),
        lookahead_hours=config.get("RENEWAL_LOOKAHEAD_HOURS", 24),
    )
    webhooks = WebhookReconciler(processor, billing, ledger, intents, purchases)

    return Services(
        processor=processor,
        sessions=session_manager,
        extractor=extractor,
        runs=runs,
        ledger=ledger,
        intents=intents,
        addresses=AddressBook(),
        checkout=checkout,
        billing=billing,
        purchases=purchases,
        renewals=renewals,
        webhooks=webhooks,
    )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
