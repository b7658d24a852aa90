from __future__ import annotations


class RecompraError(RuntimeError):
    """Erro de dominio com status HTTP e codigo estavel para a API."""

    status = 500
    code = "internal_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code:
            self.code = code

    def to_payload(self) -> dict:
        return {"error": self.code, "message": str(self)}


class ValidationError(RecompraError):
    status = 422
    code = "invalid_input"


class AuthenticationError(RecompraError):
    status = 401
    code = "authentication_failed"


class NotFoundError(RecompraError):
    status = 404
    code = "not_found"


class ExternalCapabilityError(RecompraError):
    status = 502
    code = "external_capability_failed"


class BillingError(RecompraError):
    status = 502
    code = "billing_failed"


class RunStateError(RecompraError):
    # Erro de programacao: transicao depois de status terminal ou regressiva.
    status = 409
    code = "invalid_run_transition"
