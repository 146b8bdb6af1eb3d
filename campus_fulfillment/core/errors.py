"""Error taxonomy shared by the fulfillment services.

Services raise these; the route layer turns them into JSON error bodies
with the matching HTTP status.
"""


class FulfillmentError(Exception):
    status = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code, "status": self.status}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class NotFound(FulfillmentError):
    status = 404


class Forbidden(FulfillmentError):
    status = 403


class InvalidTransition(FulfillmentError):
    status = 409


class CapacityExceeded(FulfillmentError):
    status = 409


class AlreadyClaimed(FulfillmentError):
    status = 409


class InsufficientFunds(FulfillmentError):
    status = 400


class InvalidAmount(FulfillmentError):
    status = 400


class BankNotVerified(FulfillmentError):
    status = 400


class GatewayError(FulfillmentError):
    """Payout gateway rejected the call, failed, or timed out."""
    status = 502


class ValidationError(FulfillmentError):
    status = 400
