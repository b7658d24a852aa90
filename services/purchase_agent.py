from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from threading import Lock
from typing import Any, Dict

import requests

from services.errors import ExternalCapabilityError

logger = logging.getLogger(__name__)


class PurchaseAgentClient:
    """Cliente HTTP do servico externo que navega e executa a compra.

    Toda chamada tem timeout explicito; falhas de rede ou respostas invalidas
    viram ExternalCapabilityError.
    """

    def __init__(self, base_url: str, api_key: str, *, timeout: int = 240, connect_timeout: int = 10) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.connect_timeout = connect_timeout

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _request(self, method: str, path: str, *, json: Dict[str, Any] | None = None) -> Dict[str, Any]:
        if not self.base_url or not self.api_key:
            raise ExternalCapabilityError("Servico de compras nao configurado.", code="purchase_agent_not_configured")

        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(
                method,
                url,
                json=json,
                headers=self._headers(),
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.Timeout as exc:
            logger.warning("PurchaseAgent: timeout em %s %s", method, path, exc_info=True)
            raise ExternalCapabilityError(f"Tempo esgotado no servico de compras: {exc}")
        except requests.RequestException as exc:
            logger.warning("PurchaseAgent: falha na requisicao %s %s", method, path, exc_info=True)
            raise ExternalCapabilityError(f"Falha no servico de compras: {exc}")

        if resp.status_code == 204:
            return {}

        try:
            body = resp.json()
        except ValueError:
            snippet = (resp.text or "").strip()
            logger.warning(
                "PurchaseAgent: JSON invalido em %s (HTTP %s). Trecho: %s",
                path,
                resp.status_code,
                snippet[:300],
            )
            raise ExternalCapabilityError(f"Resposta invalida do servico de compras (HTTP {resp.status_code}).")

        if not resp.ok:
            err = body.get("error") or body.get("message") or f"HTTP {resp.status_code}"
            raise ExternalCapabilityError(f"Erro no servico de compras: {err}")
        return body or {}

    def open_session(self) -> str:
        body = self._request("POST", "/v1/sessions", json={})
        handle = body.get("id") or body.get("sessionId")
        if not handle:
            raise ExternalCapabilityError("Servico de compras nao retornou o id da sessao.")
        return str(handle)

    def act(self, session_handle: str, instruction: str) -> Dict[str, Any]:
        """Executa uma instrucao na sessao.

        Retorna {"success", "result", "orderDetails"?, "error"?}.
        """
        body = self._request(
            "POST",
            f"/v1/sessions/{session_handle}/act",
            json={"instruction": instruction},
        )
        if body.get("success") is False:
            raise ExternalCapabilityError(body.get("error") or "A execucao da compra falhou.")
        return body

    def release_session(self, session_handle: str) -> None:
        self._request("DELETE", f"/v1/sessions/{session_handle}")


class AgentSessionManager:
    """Sessoes de navegacao com tempo de vida limitado e liberacao garantida."""

    def __init__(self, client, *, max_age_seconds: int = 1800, clock=time.monotonic) -> None:
        self.client = client
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._lock = Lock()
        self._active: dict[str, float] = {}

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def acquire(self) -> str:
        handle = self.client.open_session()
        with self._lock:
            self._active[handle] = self._clock()
        logger.info("PurchaseAgent: sessao aberta %s", handle)
        return handle

    def release(self, handle: str) -> None:
        with self._lock:
            known = self._active.pop(handle, None)
        if known is None:
            return
        try:
            self.client.release_session(handle)
        except ExternalCapabilityError:
            # a sessao expira do lado do servico de qualquer forma
            logger.warning("PurchaseAgent: falha ao liberar sessao %s", handle, exc_info=True)

    @contextmanager
    def session(self):
        handle = self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)

    def reap_expired(self) -> int:
        cutoff = self._clock() - self.max_age_seconds
        with self._lock:
            expired = [handle for handle, started in self._active.items() if started < cutoff]
        for handle in expired:
            self.release(handle)
        if expired:
            logger.info("PurchaseAgent: %s sessoes expiradas liberadas", len(expired))
        return len(expired)
