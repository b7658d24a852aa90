from __future__ import annotations

import logging
from dataclasses import dataclass, field

import requests

from services.errors import ExternalCapabilityError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Extraction:
    intent: dict | None = None
    clarification: str | None = None
    missing_fields: list[str] = field(default_factory=list)


class IntentExtractor:
    """Converte uma mensagem em linguagem natural em intencao estruturada."""

    def __init__(self, url: str, *, timeout: int = 30) -> None:
        self.url = (url or "").rstrip("/")
        self.timeout = timeout

    def extract(self, message: str) -> Extraction:
        text = (message or "").strip()
        if not text:
            raise ValidationError("Mensagem vazia.", code="invalid_message")
        if not self.url:
            raise ExternalCapabilityError("Extrator de intencao nao configurado.", code="extractor_not_configured")

        try:
            resp = requests.post(f"{self.url}/extract", json={"message": text}, timeout=self.timeout)
            body = resp.json()
        except requests.RequestException as exc:
            logger.warning("Extrator: falha na requisicao", exc_info=True)
            raise ExternalCapabilityError(f"Falha no extrator de intencao: {exc}")
        except ValueError:
            logger.warning("Extrator: JSON invalido (HTTP %s)", resp.status_code)
            raise ExternalCapabilityError(f"Resposta invalida do extrator (HTTP {resp.status_code}).")

        if not resp.ok:
            err = body.get("error") or f"HTTP {resp.status_code}"
            raise ExternalCapabilityError(f"Erro no extrator de intencao: {err}")

        intent = body.get("intent")
        if isinstance(intent, dict):
            return Extraction(intent=intent)
        return Extraction(
            clarification=body.get("clarification") or body.get("question") or "Pode dar mais detalhes?",
            missing_fields=[str(item) for item in body.get("missingFields") or []],
        )
