from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from services.addresses import serialize_address
from services.errors import ValidationError
from services.input_validation import parse_positive_int
from services.intents import serialize_intent


@dataclass(frozen=True)
class CreateIntent:
    title: str
    target_url: str
    cadence_days: int
    max_price_cents: int | None = None
    constraints: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ListIntents:
    include_canceled: bool = False


@dataclass(frozen=True)
class UpdateIntent:
    intent_id: int
    changes: dict


@dataclass(frozen=True)
class PauseIntent:
    intent_id: int


@dataclass(frozen=True)
class ResumeIntent:
    intent_id: int


@dataclass(frozen=True)
class CancelIntent:
    intent_id: int


@dataclass(frozen=True)
class CreateAddress:
    street1: str
    city: str
    state: str
    zip_code: str
    street2: str | None = None
    is_primary: bool = True


@dataclass(frozen=True)
class ListAddresses:
    pass


@dataclass(frozen=True)
class ExtractIntent:
    message: str


@dataclass(frozen=True)
class StartCheckout:
    intent_id: int
    address_id: int | None = None
    strategy: str = "manual_one_off"
    run_id: str | None = None


@dataclass(frozen=True)
class EstimateBill:
    pass


Command = Union[
    CreateIntent,
    ListIntents,
    UpdateIntent,
    PauseIntent,
    ResumeIntent,
    CancelIntent,
    CreateAddress,
    ListAddresses,
    ExtractIntent,
    StartCheckout,
    EstimateBill,
]

UPDATABLE_INTENT_FIELDS = {"title", "cadenceDays", "maxPriceCents", "constraints", "status"}


def _require_id(data: dict, key: str = "intentId") -> int:
    value = parse_positive_int(data.get(key))
    if value is None:
        raise ValidationError(f"Campo {key} obrigatorio.", code="invalid_command")
    return value


def _optional_id(data: dict, key: str) -> int | None:
    if data.get(key) in (None, ""):
        return None
    return _require_id(data, key)


def _require_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Campo {key} obrigatorio.", code="invalid_command")
    return value.strip()


def parse_command(payload: dict | None) -> Command:
    """Constroi o comando tipado a partir de {"type": ..., "payload": {...}}."""
    if not isinstance(payload, dict):
        raise ValidationError("Comando invalido.", code="invalid_command")
    kind = str(payload.get("type") or "").strip()
    data = payload.get("payload") or {}
    if not isinstance(data, dict):
        raise ValidationError("Payload do comando invalido.", code="invalid_command")

    if kind == "create_intent":
        cadence = parse_positive_int(data.get("cadenceDays"))
        if cadence is None:
            raise ValidationError("Campo cadenceDays obrigatorio.", code="invalid_command")
        return CreateIntent(
            title=_require_str(data, "title"),
            target_url=_require_str(data, "targetUrl"),
            cadence_days=cadence,
            max_price_cents=data.get("maxPriceCents"),
            constraints=data.get("constraints") or {},
        )
    if kind == "list_intents":
        return ListIntents(include_canceled=bool(data.get("includeCanceled")))
    if kind == "update_intent":
        changes = {key: value for key, value in data.items() if key in UPDATABLE_INTENT_FIELDS}
        if not changes:
            raise ValidationError("Nada para atualizar.", code="invalid_command")
        return UpdateIntent(intent_id=_require_id(data), changes=changes)
    if kind == "pause_intent":
        return PauseIntent(intent_id=_require_id(data))
    if kind == "resume_intent":
        return ResumeIntent(intent_id=_require_id(data))
    if kind == "cancel_intent":
        return CancelIntent(intent_id=_require_id(data))
    if kind == "create_address":
        return CreateAddress(
            street1=_require_str(data, "street1"),
            street2=data.get("street2") or None,
            city=_require_str(data, "city"),
            state=_require_str(data, "state"),
            zip_code=_require_str(data, "zipCode"),
            is_primary=bool(data.get("isPrimary", True)),
        )
    if kind == "list_addresses":
        return ListAddresses()
    if kind == "extract_intent":
        return ExtractIntent(message=_require_str(data, "message"))
    if kind == "start_checkout":
        return StartCheckout(
            intent_id=_require_id(data),
            address_id=_optional_id(data, "addressId"),
            strategy=str(data.get("strategy") or "manual_one_off"),
            run_id=data.get("runId") or None,
        )
    if kind == "estimate_bill":
        return EstimateBill()
    raise ValidationError(f"Comando desconhecido: {kind or '-'}", code="unknown_command")


class CommandDispatcher:
    def __init__(self, services) -> None:
        self.services = services

    def dispatch(self, user, command: Command) -> dict:
        s = self.services
        if isinstance(command, CreateIntent):
            intent = s.intents.create(
                user.id,
                {
                    "title": command.title,
                    "targetUrl": command.target_url,
                    "cadenceDays": command.cadence_days,
                    "maxPriceCents": command.max_price_cents,
                    "constraints": command.constraints,
                },
            )
            return {"intent": serialize_intent(intent)}
        if isinstance(command, ListIntents):
            items = s.intents.list(user.id, include_canceled=command.include_canceled)
            return {"intents": [serialize_intent(item) for item in items]}
        if isinstance(command, UpdateIntent):
            return {"intent": serialize_intent(s.intents.update(user.id, command.intent_id, command.changes))}
        if isinstance(command, PauseIntent):
            return {"intent": serialize_intent(s.intents.pause(user.id, command.intent_id))}
        if isinstance(command, ResumeIntent):
            return {"intent": serialize_intent(s.intents.resume(user.id, command.intent_id))}
        if isinstance(command, CancelIntent):
            return {"intent": serialize_intent(s.intents.cancel(user.id, command.intent_id))}
        if isinstance(command, CreateAddress):
            address = s.addresses.create(
                user.id,
                {
                    "street1": command.street1,
                    "street2": command.street2,
                    "city": command.city,
                    "state": command.state,
                    "zipCode": command.zip_code,
                    "isPrimary": command.is_primary,
                },
            )
            return {"address": serialize_address(address)}
        if isinstance(command, ListAddresses):
            return {"addresses": [serialize_address(item) for item in s.addresses.list(user.id)]}
        if isinstance(command, ExtractIntent):
            extraction = s.extractor.extract(command.message)
            return {
                "intent": extraction.intent,
                "clarification": extraction.clarification,
                "missingFields": list(extraction.missing_fields),
            }
        if isinstance(command, StartCheckout):
            outcome = s.purchases.start(
                user,
                command.intent_id,
                address_id=command.address_id,
                strategy=command.strategy,
                run_id=command.run_id,
            )
            return outcome.to_payload()
        if isinstance(command, EstimateBill):
            return {"estimate": s.billing.monthly_estimate(user.id)}
        raise TypeError(f"Comando sem handler: {type(command).__name__}")
