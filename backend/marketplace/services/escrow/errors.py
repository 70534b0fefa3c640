"""Escrow domain errors. Each carries the HTTP status it maps to in main.py."""


class EscrowError(Exception):
    status_code = 400
    code = "escrow_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(EscrowError):
    status_code = 404
    code = "not_found"


class UnauthorizedError(EscrowError):
    status_code = 403
    code = "unauthorized"


class InvalidStateError(EscrowError):
    status_code = 409
    code = "invalid_state"

    def __init__(self, current: str, action: str, actor: str | None = None):
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Cannot {action} escrow in status {current}"
        if actor:
            msg += f" as {actor}"
        super().__init__(msg)


class EscrowValidationError(EscrowError):
    status_code = 422
    code = "validation_error"


class GatewayError(EscrowError):
    """The payment provider declined or failed the call."""

    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, provider: str | None = None, gateway_code: str | None = None):
        self.provider = provider
        self.gateway_code = gateway_code
        super().__init__(message)


class ConfigurationError(EscrowError):
    """A provider key is missing or the provider does not support the operation."""

    status_code = 503
    code = "configuration_error"


class LedgerImmutableError(EscrowError):
    status_code = 500
    code = "ledger_immutable"
