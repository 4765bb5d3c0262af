"""
Outbound dispatch gate.

Every outbound customer message goes through DispatchGate.dispatch(),
which runs one fixed pipeline and stops at the first state that rules the
send out:

    VALIDATE -> CHECK_ENABLED -> RESOLVE_PROVIDER -> CHECK_SESSION
             -> FORMAT -> SEND

The session check is never skipped by debug mode; debug mode only replaces
the provider call with a simulated success. Skipping the session check is a
constructor flag for internal diagnostic tooling and is logged on every use.

dispatch() does not raise for business reasons. Each NotifyGateError is
turned into a DispatchResult with one of the DispatchOutcome tags.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import sessionmaker
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from notify_gate.config import Settings
from notify_gate.errors import (
    FeatureDisabled,
    InvalidInput,
    MalformedProviderResponse,
    NoActiveSession,
    NotifyGateError,
    ProviderNotConfigured,
    ProviderReportedFailure,
    ProviderRequestFailed,
    ProviderUnavailable,
    SessionStoreError,
    UnknownNotificationKind,
)
from notify_gate.formatter import NotificationEvent, NotificationKind, format_notification
from notify_gate.metrics import observe_provider_latency, record_dispatch_outcome
from notify_gate.providers import ProviderInstanceConfig, ProviderResolver
from notify_gate.sessions import SessionStore, utcnow
from notify_gate.utils import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15
MAX_MESSAGE_LENGTH = 4096

# Only failures where the request never reached the provider are retried
RETRYABLE_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SKIPPED_NO_SESSION = "skipped_no_session"
    SKIPPED_DISABLED = "skipped_disabled"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_RESPONSE = "malformed_response"
    INTERNAL_ERROR = "internal_error"


_OUTCOME_FOR_ERROR = {
    InvalidInput: DispatchOutcome.INTERNAL_ERROR,
    FeatureDisabled: DispatchOutcome.SKIPPED_DISABLED,
    ProviderNotConfigured: DispatchOutcome.PROVIDER_ERROR,
    ProviderUnavailable: DispatchOutcome.PROVIDER_ERROR,
    NoActiveSession: DispatchOutcome.SKIPPED_NO_SESSION,
    ProviderRequestFailed: DispatchOutcome.PROVIDER_ERROR,
    MalformedProviderResponse: DispatchOutcome.MALFORMED_RESPONSE,
    ProviderReportedFailure: DispatchOutcome.PROVIDER_ERROR,
    SessionStoreError: DispatchOutcome.INTERNAL_ERROR,
}


def outcome_for(error: NotifyGateError) -> DispatchOutcome:
    for cls in type(error).__mro__:
        if cls in _OUTCOME_FOR_ERROR:
            return _OUTCOME_FOR_ERROR[cls]
    return DispatchOutcome.INTERNAL_ERROR


class DispatchResult(BaseModel):
    """Outcome of one dispatch attempt."""
    outcome: DispatchOutcome
    reason: str = ""
    provider_message_id: Optional[str] = None
    raw_payload: Any = None
    error: Optional[str] = Field(None, description="Error class name for non-sent outcomes")
    http_status: Optional[int] = None
    reference_id: Optional[str] = None
    debug: bool = False

    @property
    def sent(self) -> bool:
        return self.outcome is DispatchOutcome.SENT


class ProviderSendResponse(BaseModel):
    """The only provider response shape accepted as well-formed."""
    model_config = ConfigDict(strict=True, extra="ignore")

    sent: bool
    message: str
    id: Optional[str] = None


def make_reference_id(
    tenant_id: str,
    ticket_id: Optional[str],
    kind_label: str,
    now: datetime,
    bucket_seconds: int = 300,
) -> str:
    """
    Provider-side deduplication key.

    Stable for the same (tenant, ticket, kind) inside one time bucket, so a
    retried dispatch reuses the key of the first attempt.
    """
    if not ticket_id:
        return f"{tenant_id}-{int(now.timestamp() * 1000)}"
    bucket = int(now.timestamp()) // max(bucket_seconds, 1)
    digest = hashlib.sha256(f"{tenant_id}:{ticket_id}:{kind_label}:{bucket}".encode("utf-8"))
    return digest.hexdigest()[:32]


def _as_kind(notification: Union[NotificationKind, str, None]) -> Optional[NotificationKind]:
    if isinstance(notification, NotificationKind):
        return notification
    if isinstance(notification, str):
        try:
            return NotificationKind(notification)
        except ValueError:
            return None
    return None


def _payload_of(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


@dataclass
class _Attempt:
    phone: str = ""
    tenant_id: str = ""
    reference_id: Optional[str] = None


class DispatchGate:
    """
    Policy core deciding whether, and then how, a customer message is sent.

    Args:
        session_store: consent sessions
        resolver: tenant provider configuration
        http_client: client used for provider sends
        messaging_enabled: global feature flag
        debug_mode: simulate the provider call; all policy checks still run
        bypass_session_check: diagnostic tooling only, never set for customer flows
        send_timeout: bound on one provider call, in seconds
        retry_network_errors: retry once when the provider cannot be reached
        retry_delay: pause before that retry, in seconds
        reference_bucket_seconds: time bucket folded into reference ids
        priority: provider priority field sent with every message
    """

    def __init__(
        self,
        session_store: SessionStore,
        resolver: ProviderResolver,
        http_client: httpx.Client,
        *,
        messaging_enabled: bool = True,
        debug_mode: bool = False,
        bypass_session_check: bool = False,
        send_timeout: float = 10.0,
        retry_network_errors: bool = True,
        retry_delay: float = 0.5,
        reference_bucket_seconds: int = 300,
        priority: str = "1",
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if send_timeout <= 0:
            raise ValueError("send_timeout must be positive")
        self.session_store = session_store
        self.resolver = resolver
        self._http = http_client
        self.messaging_enabled = messaging_enabled
        self.debug_mode = debug_mode
        self.bypass_session_check = bypass_session_check
        self.send_timeout = send_timeout
        self.retry_network_errors = retry_network_errors
        self.retry_delay = retry_delay
        self.reference_bucket_seconds = reference_bucket_seconds
        self.priority = priority
        self._clock = clock
        self._sleep = sleep

        if bypass_session_check:
            logger.warning("Dispatch gate constructed with session check BYPASSED")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def dispatch(
        self,
        phone: str,
        tenant_id: str,
        notification: Union[NotificationKind, str],
        context: Optional[Mapping[str, Any]] = None,
        *,
        ticket_id: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> DispatchResult:
        """
        Run the dispatch pipeline for one message.

        Args:
            phone: customer phone in any separator style
            tenant_id: organization id
            notification: a NotificationKind (or its tag) rendered from context,
                or any other text sent as the raw message body
            context: template fields for a NotificationKind
            ticket_id: ticket the message is about; feeds the reference id
            reference_id: explicit provider deduplication key

        Returns:
            DispatchResult tagged with the terminal state reached.
        """
        attempt = _Attempt(tenant_id=tenant_id or "", reference_id=reference_id)
        try:
            result = self._run(attempt, phone, tenant_id, notification, context, ticket_id)
        except NotifyGateError as err:
            result = DispatchResult(
                outcome=outcome_for(err),
                reason=err.message,
                error=type(err).__name__,
                http_status=err.http_status,
                raw_payload=err.raw_payload,
                reference_id=attempt.reference_id,
                debug=self.debug_mode,
            )
        except UnknownNotificationKind:
            raise
        except Exception as e:
            logger.exception(f"Unexpected dispatch failure for org={attempt.tenant_id}")
            result = DispatchResult(
                outcome=DispatchOutcome.INTERNAL_ERROR,
                reason=f"unexpected error: {e}",
                error=type(e).__name__,
                reference_id=attempt.reference_id,
                debug=self.debug_mode,
            )

        record_dispatch_outcome(result.outcome.value, result.debug)
        log = logger.info if result.outcome in (
            DispatchOutcome.SENT,
            DispatchOutcome.SKIPPED_NO_SESSION,
            DispatchOutcome.SKIPPED_DISABLED,
        ) else logger.warning
        log(
            "Dispatch finished",
            extra={
                "outcome": result.outcome.value,
                "org": attempt.tenant_id,
                "phone": mask_phone(attempt.phone),
                "reference_id": result.reference_id,
                "error": result.error,
                "debug": result.debug,
            },
        )
        return result

    def notify(self, event: NotificationEvent) -> DispatchResult:
        """Dispatch a fully built NotificationEvent."""
        context = event.model_dump(exclude={"phone", "kind", "tenant_id", "ticket_id"})
        return self.dispatch(
            event.phone, event.tenant_id, event.kind, context, ticket_id=event.ticket_id
        )

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _run(
        self,
        attempt: _Attempt,
        phone: str,
        tenant_id: str,
        notification: Union[NotificationKind, str],
        context: Optional[Mapping[str, Any]],
        ticket_id: Optional[str],
    ) -> DispatchResult:
        # VALIDATE
        digits, event, raw_body = self._validate(phone, tenant_id, notification, context, ticket_id)
        attempt.phone = digits
        if event is not None:
            ticket_id = event.ticket_id

        # CHECK_ENABLED (global flag)
        if not self.messaging_enabled:
            raise FeatureDisabled("messaging is disabled")

        # CHECK_ENABLED (tenant flag, independent of provider credentials)
        if not self.resolver.is_messaging_enabled(tenant_id):
            raise FeatureDisabled(f"messaging is disabled for organization {tenant_id}")

        # RESOLVE_PROVIDER
        config = self.resolver.get_tenant_config(tenant_id)
        self.resolver.ensure_available(config)

        # CHECK_SESSION
        if self.bypass_session_check:
            logger.warning(
                "SESSION CHECK BYPASSED for diagnostic dispatch",
                extra={"org": tenant_id, "phone": mask_phone(digits)},
            )
        elif not self.session_store.has_active_session(digits, tenant_id):
            raise NoActiveSession(
                "no active WhatsApp session - customer must send a message first"
            )

        # FORMAT
        body = format_notification(event) if event is not None else raw_body
        if attempt.reference_id is None:
            kind_label = (
                event.kind.value if event is not None
                else "message:" + hashlib.sha1(body.encode("utf-8")).hexdigest()[:8]
            )
            attempt.reference_id = make_reference_id(
                tenant_id, ticket_id, kind_label, self._clock(), self.reference_bucket_seconds
            )

        # SEND
        if self.debug_mode:
            logger.info(
                f"Debug mode - would send {len(body)} chars to {mask_phone(digits)} via {config.instance_id}"
            )
            return DispatchResult(
                outcome=DispatchOutcome.SENT,
                reason="simulated send (debug mode)",
                provider_message_id=f"debug-{attempt.reference_id}",
                raw_payload={
                    "debug": True,
                    "endpoint": config.endpoint,
                    "to": digits,
                    "message_length": len(body),
                },
                reference_id=attempt.reference_id,
                debug=True,
            )

        parsed, payload, status = self._send(config, digits, body, attempt.reference_id)

        try:
            self.resolver.increment_message_count(tenant_id)
        except Exception as e:
            logger.warning(f"Failed to increment daily message count for {tenant_id}: {e}")

        return DispatchResult(
            outcome=DispatchOutcome.SENT,
            reason=parsed.message,
            provider_message_id=parsed.id,
            raw_payload=payload,
            http_status=status,
            reference_id=attempt.reference_id,
        )

    def _validate(
        self,
        phone: str,
        tenant_id: str,
        notification: Union[NotificationKind, str],
        context: Optional[Mapping[str, Any]],
        ticket_id: Optional[str],
    ) -> Tuple[str, Optional[NotificationEvent], Optional[str]]:
        digits = normalize_phone(phone) if isinstance(phone, str) else ""
        if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
            raise InvalidInput("missing/invalid fields: phone")
        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise InvalidInput("missing/invalid fields: tenant_id")

        kind = _as_kind(notification)
        if kind is not None:
            fields: Dict[str, Any] = dict(context or {})
            fields.update(phone=digits, kind=kind, tenant_id=tenant_id)
            if ticket_id is not None:
                fields["ticket_id"] = ticket_id
            try:
                return digits, NotificationEvent(**fields), None
            except ValidationError as e:
                names = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
                raise InvalidInput(f"missing/invalid fields: {', '.join(names)}") from e

        if not isinstance(notification, str) or not notification.strip():
            raise InvalidInput("missing/invalid fields: message")
        if len(notification) > MAX_MESSAGE_LENGTH:
            raise InvalidInput(f"message longer than {MAX_MESSAGE_LENGTH} characters")
        return digits, None, notification

    # -------------------------------------------------------------------------
    # Provider call
    # -------------------------------------------------------------------------

    def _post(self, url: str, data: Dict[str, str]) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(2 if self.retry_network_errors else 1),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        response = None
        for attempt in retrying:
            with attempt:
                response = self._http.post(url, data=data, timeout=self.send_timeout)
        return response

    def _send(
        self,
        config: ProviderInstanceConfig,
        phone: str,
        body: str,
        reference_id: str,
    ) -> Tuple[ProviderSendResponse, Any, int]:
        """
        POST the message to the provider and interpret the answer.

        Raises:
            ProviderRequestFailed: network failure or non-2xx status
            MalformedProviderResponse: body is not {sent, message, id?}
            ProviderReportedFailure: provider answered sent=false
        """
        logger.info(f"Sending WhatsApp message to {mask_phone(phone)} via {config.instance_id}")
        started = time.perf_counter()
        try:
            response = self._post(
                config.endpoint,
                {
                    "token": config.token,
                    "to": phone,
                    "body": body,
                    "priority": self.priority,
                    "referenceId": reference_id,
                },
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Provider request failed for {config.instance_id}: {e!r}")
            raise ProviderRequestFailed(f"provider request failed: {str(e) or type(e).__name__}") from e
        finally:
            observe_provider_latency("send", time.perf_counter() - started)

        if not response.is_success:
            logger.error(f"Provider returned HTTP {response.status_code} for {config.instance_id}")
            raise ProviderRequestFailed(
                f"provider returned HTTP {response.status_code}",
                http_status=response.status_code,
                raw_payload=response.text,
            )

        try:
            parsed = ProviderSendResponse.model_validate_json(response.content)
        except ValidationError as e:
            logger.error(f"Unexpected provider response shape from {config.instance_id}")
            raise MalformedProviderResponse(
                "unexpected provider response shape",
                http_status=response.status_code,
                raw_payload=response.text,
            ) from e

        payload = _payload_of(response)
        if not parsed.sent:
            raise ProviderReportedFailure(
                parsed.message or "provider reported the message as not sent",
                http_status=response.status_code,
                raw_payload=payload,
            )
        return parsed, payload, response.status_code


def build_gate(
    settings: Settings,
    session_factory: sessionmaker,
    http_client: Optional[httpx.Client] = None,
) -> DispatchGate:
    """Wire a gate from settings. Customer-facing flows never bypass the session check."""
    client = http_client or httpx.Client(timeout=settings.PROVIDER_SEND_TIMEOUT_SECONDS)
    store = SessionStore(
        session_factory,
        window=timedelta(hours=settings.SESSION_WINDOW_HOURS),
        legacy_fallback=settings.SESSION_LEGACY_FALLBACK,
    )
    resolver = ProviderResolver(
        session_factory,
        client,
        default_base_url=settings.PROVIDER_DEFAULT_BASE_URL,
        test_timeout=settings.PROVIDER_TEST_TIMEOUT_SECONDS,
        cache_ttl=settings.PROVIDER_CONFIG_CACHE_TTL_SECONDS,
    )
    return DispatchGate(
        store,
        resolver,
        client,
        messaging_enabled=settings.MESSAGING_ENABLED,
        debug_mode=settings.DEBUG_MODE,
        send_timeout=settings.PROVIDER_SEND_TIMEOUT_SECONDS,
        retry_network_errors=settings.PROVIDER_RETRY_NETWORK_ERRORS,
        retry_delay=settings.PROVIDER_RETRY_DELAY_SECONDS,
        reference_bucket_seconds=settings.REFERENCE_BUCKET_SECONDS,
    )
