"""
Error taxonomy shared by the services and the HTTP layer.

Each error carries the HTTP status it maps to; ``main.py`` renders them
into the ``{success, message, error}`` envelope.
"""


class AppError(Exception):
    status_code = 500
    code = "unexpected_error"

    def __init__(self, message: str = "Internal Server Error"):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class InsufficientStockError(ValidationError):
    code = "insufficient_stock"


class StateTransitionError(AppError):
    status_code = 400
    code = "invalid_state"


class InvalidTransitionError(StateTransitionError):
    code = "invalid_transition"


class AlreadyPaidError(StateTransitionError):
    code = "already_paid"


class AlreadyProcessedError(StateTransitionError):
    code = "already_processed"


class PaymentNotSuccessfulError(StateTransitionError):
    code = "payment_not_successful"


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"


class NotAssignedError(AuthorizationError):
    code = "not_assigned"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class AlreadyAssignedError(ConflictError):
    code = "already_assigned"


class DuplicateReturnError(ConflictError):
    code = "duplicate_return"


class ExternalServiceError(AppError):
    # provider failures surface as a client error carrying the provider message
    status_code = 400
    code = "external_service_error"


class UnexpectedError(AppError):
    status_code = 500
    code = "unexpected_error"
