############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# errors.py: Domain error taxonomy for bot orchestration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Domain errors raised by the orchestration core.

Each error carries the HTTP status the API layer renders it with, so the
routes never need to translate exceptions one by one.
"""

from typing import Optional


class ClawsterError(Exception):
    """Base class for all orchestration errors."""

    http_status: int = 500
    code: str = "server_error"

    # Set by PhalaClient.spawn so callers can clean up partial creations
    app_id: Optional[str] = None
    commit_attempted: bool = False

    def __init__(self, message: str = "", detail: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.detail = detail


class ValidationError(ClawsterError):
    """Malformed input, rejected before any remote call."""

    http_status = 400
    code = "invalid_request"


class NotFoundError(ClawsterError):
    """Bot (or other local record) does not exist for this owner."""

    http_status = 404
    code = "not_found"


class Conflict(ClawsterError):
    """Duplicate non-terminated bot name for the same owner."""

    http_status = 409
    code = "conflict"


class PaymentRequired(ClawsterError):
    """Spawn is gated on payment; carries the checkout URL."""

    http_status = 402
    code = "payment_required"

    def __init__(self, message: str = "", checkout_url: Optional[str] = None):
        super().__init__(message or "Payment required")
        self.checkout_url = checkout_url


class ProvisioningError(ClawsterError):
    """Declare/Commit (or other provider call) rejected the request."""

    http_status = 502
    code = "provisioning_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.status_code = status_code


class EncryptionError(ClawsterError):
    """A cryptographic primitive failed while sealing secrets."""

    http_status = 500
    code = "encryption_error"


class ExternalUnavailable(ClawsterError):
    """Transient remote failure (5xx, timeout, transport). Caller may retry."""

    http_status = 503
    code = "external_unavailable"

    def __init__(self, message: str = "", status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.status_code = status_code


class ExternalNotFound(ClawsterError):
    """Remote resource does not exist (HTTP 404)."""

    http_status = 404
    code = "external_not_found"


class TerminationFailed(ClawsterError):
    """No candidate external ID could be confirmed deleted."""

    http_status = 502
    code = "termination_failed"


class BillingError(ClawsterError):
    """Billing provider rejected a request or a webhook could not be verified."""

    http_status = 400
    code = "billing_error"
