"""Error kinds raised by the rental services.

Services raise these; ``app.main`` renders them as ``{"detail", "kind", "cause"}``
with the status code carried by the class. ``detail`` is safe to show to a
customer, ``cause`` is the admin-facing explanation.
"""


class RentalError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, cause: str | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        out = {"detail": self.message, "kind": self.kind}
        if self.cause:
            out["cause"] = self.cause
        return out


class ValidationError(RentalError):
    kind = "validation_error"
    status_code = 400


class UnauthorizedError(RentalError):
    kind = "unauthorized"
    status_code = 401


class NotFoundError(RentalError):
    kind = "not_found"
    status_code = 404


class ConflictError(RentalError):
    """Date overlap or a state transition that is invalid from the current status."""
    kind = "conflict"
    status_code = 409


class PaymentDeclinedError(RentalError):
    kind = "payment_declined"
    status_code = 402


class PaymentAuthenticationRequired(RentalError):
    """Not a failure: the customer has to complete 3-D Secure for this intent."""
    kind = "payment_authentication_required"
    status_code = 202

    def __init__(self, message: str, payment_intent_id: str = "", client_secret: str | None = None, cause: str | None = None):
        super().__init__(message, cause)
        self.payment_intent_id = payment_intent_id
        self.client_secret = client_secret

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["requiresAction"] = True
        out["paymentIntentId"] = self.payment_intent_id
        out["clientSecret"] = self.client_secret
        return out


class PaymentProviderUnavailable(RentalError):
    """Transient processor failure; the caller decides whether to retry."""
    kind = "payment_provider_unavailable"
    status_code = 503


class PaymentConfigurationError(RentalError):
    kind = "payment_configuration_error"
    status_code = 500


class StorageUnavailable(RentalError):
    kind = "storage_unavailable"
    status_code = 503
