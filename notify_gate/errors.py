"""
Error taxonomy for the notification gate.

Every business-level failure of a dispatch is one of these exceptions.
They are raised inside the session store, the provider resolver and the
send step, and the dispatch gate turns each of them into a tagged
DispatchResult. None of them escape DispatchGate.dispatch().
"""

from typing import Any, Optional


class NotifyGateError(Exception):
    """Base class for recoverable notification gate errors."""

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        raw_payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.raw_payload = raw_payload


class InvalidInput(NotifyGateError):
    """Phone, tenant or message missing or malformed."""


class FeatureDisabled(NotifyGateError):
    """Messaging is switched off globally or for the tenant."""


class ProviderNotConfigured(NotifyGateError):
    """The tenant never configured messaging provider credentials."""


class ProviderUnavailable(NotifyGateError):
    """The tenant's provider instance is not in the active state."""


class DailyLimitExceeded(ProviderUnavailable):
    """The tenant used up its daily message quota."""


class NoActiveSession(NotifyGateError):
    """The customer has no open consent session for this tenant."""


class ProviderRequestFailed(NotifyGateError):
    """Network failure or non-2xx response from the provider."""


class MalformedProviderResponse(NotifyGateError):
    """The provider answered with a body that does not match the expected shape."""


class ProviderReportedFailure(NotifyGateError):
    """The provider parsed the request but reported the message as not sent."""


class SessionStoreError(NotifyGateError):
    """The session store could not be queried or updated."""


class UnknownNotificationKind(ValueError):
    """
    Raised by the formatter for a kind without a template.

    This is a programming error, so it does not derive from NotifyGateError.
    """
