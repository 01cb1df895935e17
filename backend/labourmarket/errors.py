"""Error taxonomy shared by the engine, the payment bridge and the API layer.

Every error carries the HTTP status it maps to; the API layer renders them
as ``{"detail": message}`` like FastAPI's ``HTTPException``.
"""


class LabourMarketError(Exception):
    status_code = 500
    default_message = "Server Error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(LabourMarketError):
    status_code = 400
    default_message = "Invalid input"


class Unauthorized(LabourMarketError):
    status_code = 401
    default_message = "Not authorized"


class Forbidden(LabourMarketError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(LabourMarketError):
    status_code = 404
    default_message = "Not found"


class Conflict(LabourMarketError):
    status_code = 409
    default_message = "Conflict"


class Internal(LabourMarketError):
    status_code = 500
