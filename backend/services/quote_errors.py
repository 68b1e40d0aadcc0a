"""
AgencyDesk CRM - Quote error taxonomy

  ValidationError          bad input, user-correctable           -> 422
  RecipientNotFoundError   client/lead missing in agency scope   -> 422
  NotFoundError            unknown quote id (uniform message)    -> 404
  AlreadyProcessedError    quote already approved/rejected       -> 409
  ExpiredError             validity date has passed              -> 409
  QuoteLockedError         edit of a non-draft quote             -> 409
  DispatchInProgressError  concurrent send of the same quote     -> 409
  RenderError              PDF generation failed                 -> 500
  DispatchFailure          email transport failed                -> 502
"""


class QuoteError(Exception):
    """Base class for every quote domain error."""

    status_code = 400
    public_message = None

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context


# ==================== INPUT ====================

class ValidationError(QuoteError):
    status_code = 422


class InvalidLineItemError(ValidationError):
    pass


class AmountOverflowError(ValidationError):
    pass


class EmptySignatureError(ValidationError):
    pass


class RecipientNotFoundError(QuoteError):
    status_code = 422


# ==================== LOOKUP ====================

class NotFoundError(QuoteError):
    status_code = 404

    def __init__(self, message: str = "Quote not found", **context):
        # Same text whatever the cause (malformed id, unknown id, draft)
        super().__init__("Quote not found", **context)


# ==================== STATE CONFLICTS ====================

class StateConflictError(QuoteError):
    status_code = 409


class AlreadyProcessedError(StateConflictError):
    pass


class ExpiredError(StateConflictError):
    pass


class QuoteLockedError(StateConflictError):
    pass


class DispatchInProgressError(StateConflictError):
    pass


# ==================== SERVER FAULTS ====================

class RenderError(QuoteError):
    status_code = 500
    public_message = "Could not complete the request. Please try again later."


class DispatchFailure(QuoteError):
    status_code = 502
    public_message = "Could not complete the request. Please try again later."
