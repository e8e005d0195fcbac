"""
Typed error hierarchy for call initiation, lifecycle and provider failures.

Every error carries the HTTP status the API surfaces it with, a human
message, and optional extra payload merged into the JSON error body.
"""

from __future__ import annotations

from typing import Any, Optional


class CallHelmError(Exception):
    """
    Base exception for all domain errors.

    Attributes:
        message: Human-readable description, returned as ``error``.
        status_code: HTTP status used by the API layer.
        payload: Extra fields merged into the JSON error body.
    """

    status_code: int = 500

    def __init__(self, message: str, payload: Optional[dict[str, Any]] = None):
        self.message = message
        self.payload = payload or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.payload}


# ── Input / authorization ──────────────────────────────────────


class InvalidRequestError(CallHelmError):
    """Malformed input, rejected before any external call."""

    status_code = 400


class AuthenticationError(CallHelmError):
    status_code = 401


class OrganizationNotFoundError(CallHelmError):
    """The authenticated user has no active organization membership."""

    status_code = 400

    def __init__(self, message: str = "No organization found"):
        super().__init__(message)


class NotFoundError(CallHelmError):
    status_code = 404


# ── Quota ───────────────────────────────────────────────────────


class QuotaExceededError(CallHelmError):
    """
    Included call minutes are used up on a gated tier.

    Carries the usage figures so the UI can render an upgrade prompt.
    """

    status_code = 402

    def __init__(self, used_minutes: float, included_minutes: float):
        self.used_minutes = used_minutes
        self.included_minutes = included_minutes
        super().__init__(
            "Call minutes limit reached",
            payload={
                "message": (
                    "You have used all your included minutes for this month. "
                    "Please upgrade your plan to continue making calls."
                ),
                "usedMinutes": used_minutes,
                "includedMinutes": included_minutes,
                "showUpgrade": True,
            },
        )


# ── Telephony providers ────────────────────────────────────────


class ProviderError(CallHelmError):
    """
    A vendor call-control request failed.

    The vendor's own message is passed through. No Call record is created
    when this is raised during initiation.
    """

    status_code = 500

    def __init__(self, provider: str, message: str, vendor_status: Optional[int] = None):
        self.provider = provider
        self.vendor_status = vendor_status
        super().__init__(f"Failed to initiate call: {message}")


class ProviderAuthError(ProviderError):
    """Credentials rejected by the vendor."""


class InvalidNumberError(ProviderError):
    """The vendor refused one of the numbers."""


class ProviderRejectedError(ProviderError):
    """Any other non-success vendor response."""


class ProviderNotConfiguredError(CallHelmError):
    """No credentials for the selected vendor."""

    status_code = 503

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            f"Voice service '{provider}' is not configured. Please contact your administrator."
        )


# ── Persistence ─────────────────────────────────────────────────


class PersistenceError(CallHelmError):
    status_code = 500
