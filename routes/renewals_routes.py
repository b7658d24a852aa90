from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request

from services.container import get_services


renewals_bp = Blueprint("renewals", __name__)


def _secret() -> str | None:
    return request.args.get("key") or request.headers.get("X-Cron-Key")


@renewals_bp.get("/api/renewals/due")
def preview_due():
    renewals = get_services().renewals
    renewals.authorize(_secret())
    now = datetime.utcnow()
    subs = renewals.due(now)
    return jsonify(
        {
            "count": len(subs),
            "subscriptions": [
                {
                    "id": sub.id,
                    "userId": sub.user_id,
                    "intentId": sub.intent_id,
                    "product": sub.product.name if sub.product else None,
                    "nextRenewalAt": sub.next_renewal_at.isoformat() if sub.next_renewal_at else None,
                    "lastPriceCents": sub.last_price_cents,
                }
                for sub in subs
            ],
        }
    )


@renewals_bp.post("/api/renewals/due")
def run_sweep():
    renewals = get_services().renewals
    renewals.authorize(_secret())
    report = renewals.run_sweep()
    # sessoes que sobraram de execucoes anteriores
    get_services().sessions.reap_expired()
    return jsonify({"success": True, "results": report.to_payload()})
