"""Domain-specific exceptions"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(DomainException):
    """Request data is malformed or missing"""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(DomainException):
    """Merchant, payment or settlement does not exist"""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message, {"resource": resource, "id": identifier})


class ConflictError(DomainException):
    """Idempotency collision or duplicate key"""

    code = "CONFLICT"
    status_code = 409


class RateUnavailableError(DomainException):
    """No exchange rate can be resolved for the currency pair"""

    code = "RATE_UNAVAILABLE"
    status_code = 422

    def __init__(self, from_currency: str, to_currency: str):
        super().__init__(
            f"Exchange rate not available for {from_currency}/{to_currency}",
            {"from": from_currency, "to": to_currency},
        )


class InsufficientStateError(DomainException):
    """Requested lifecycle transition is not allowed from the current state"""

    code = "INVALID_STATE"
    status_code = 409


class RateProviderError(DomainException):
    """Upstream FX provider returned an error or is unavailable"""

    code = "RATE_PROVIDER_ERROR"
    status_code = 503


class BankTransferError(DomainException):
    """Bank API rejected the transfer or is unavailable"""

    code = "BANK_TRANSFER_ERROR"
    status_code = 503
