from __future__ import annotations

import os
import re
from urllib.parse import urlparse

from models.address_model import US_STATES
from services.errors import ValidationError


MAX_TITLE_LEN = int(os.getenv("INTENT_TITLE_MAX_LEN", "255"))
MAX_URL_LEN = int(os.getenv("INTENT_URL_MAX_LEN", "2048"))
MAX_CADENCE_DAYS = int(os.getenv("INTENT_MAX_CADENCE_DAYS", "365"))
MAX_PRICE_CENTS = int(os.getenv("INTENT_MAX_PRICE_CENTS", "10000000"))
MAX_CONSTRAINTS = 20

ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")

INTENT_UPDATABLE_STATUSES = {"active", "paused"}


def normalize_text(value: str | None, *, max_len: int, min_len: int = 0) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if min_len and len(text) < min_len:
        return None
    if len(text) > max_len:
        return None
    return text


def parse_positive_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    return number


def parse_price_cents(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        cents = int(value)
    except (TypeError, ValueError):
        return None
    if cents < 0 or cents > MAX_PRICE_CENTS:
        return None
    return cents


def require_title(value) -> str:
    title = normalize_text(value, max_len=MAX_TITLE_LEN, min_len=1)
    if not title:
        raise ValidationError("Titulo obrigatorio.", code="invalid_title")
    return title


def require_url(value) -> str:
    url = normalize_text(value, max_len=MAX_URL_LEN, min_len=1)
    if not url:
        raise ValidationError("URL do produto obrigatoria.", code="invalid_url")
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError("URL do produto invalida.", code="invalid_url")
    return url


def require_cadence(value) -> int:
    cadence = parse_positive_int(value)
    if cadence is None or cadence > MAX_CADENCE_DAYS:
        raise ValidationError("Frequencia em dias invalida.", code="invalid_cadence")
    return cadence


def optional_price(value) -> int | None:
    if value is None or value == "":
        return None
    cents = parse_price_cents(value)
    if cents is None:
        raise ValidationError("Preco maximo invalido.", code="invalid_price")
    return cents


def normalize_constraints(value) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("Restricoes devem ser um objeto.", code="invalid_constraints")
    if len(value) > MAX_CONSTRAINTS:
        raise ValidationError("Restricoes demais.", code="invalid_constraints")
    cleaned: dict[str, str] = {}
    for key, item in value.items():
        key_text = normalize_text(key, max_len=64, min_len=1)
        item_text = normalize_text(item, max_len=255)
        if not key_text or item_text is None:
            raise ValidationError("Restricao invalida.", code="invalid_constraints")
        cleaned[key_text] = item_text
    return cleaned


def validate_intent_status(value) -> str:
    status = str(value or "").strip().lower()
    if status not in INTENT_UPDATABLE_STATUSES:
        raise ValidationError("Status invalido.", code="invalid_status")
    return status


def validate_address_payload(payload: dict | None) -> dict:
    payload = payload or {}
    street1 = normalize_text(payload.get("street1"), max_len=128, min_len=1)
    street2 = normalize_text(payload.get("street2"), max_len=128)
    city = normalize_text(payload.get("city"), max_len=64, min_len=1)
    state = (normalize_text(payload.get("state"), max_len=2, min_len=2) or "").upper()
    zip_code = normalize_text(payload.get("zipCode") or payload.get("zip_code"), max_len=10, min_len=5)

    if not street1:
        raise ValidationError("Endereco obrigatorio.", code="invalid_street")
    if not city:
        raise ValidationError("Cidade obrigatoria.", code="invalid_city")
    if state not in US_STATES:
        raise ValidationError("Estado invalido.", code="invalid_state")
    if not zip_code or not ZIP_RE.match(zip_code):
        raise ValidationError("CEP invalido.", code="invalid_zip")

    return {
        "street1": street1,
        "street2": street2 or None,
        "city": city,
        "state": state,
        "zip_code": zip_code,
    }
