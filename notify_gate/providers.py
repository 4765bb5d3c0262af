"""
Per-tenant messaging provider instances.

Each organization brings its own UltraMsg-style instance (instance id,
token, base URL) and a health status maintained by connection tests. The
resolver reads that configuration for every dispatch, optionally through a
short-lived in-process cache, and probes instances on demand.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from sqlalchemy import case
from sqlalchemy.orm import sessionmaker

from notify_gate.config import settings
from notify_gate.errors import (
    DailyLimitExceeded,
    ProviderNotConfigured,
    ProviderUnavailable,
)
from notify_gate.metrics import observe_provider_latency
from notify_gate.models import Organization

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 1000

# Probe recipient that the provider rejects without delivering anything
PROBE_RECIPIENT = "1234567890"

# Provider errors that still prove the instance is reachable and authenticated
_REACHABLE_ERROR_HINTS = ("invalid", "number", "format")
_QUOTA_ERROR_HINTS = ("daily limit exceeded", "demo daily limit")


class ProviderStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProviderStatus":
        """Unrecognized or empty stored values read as unknown."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


def messages_endpoint(base_url: str, instance_id: str) -> str:
    return f"{base_url.rstrip('/')}/{instance_id}/messages/chat"


@dataclass(frozen=True)
class ProviderInstanceConfig:
    """Messaging provider credentials and health of one tenant."""
    tenant_id: str
    instance_id: str
    token: str
    base_url: str
    status: ProviderStatus
    messaging_enabled: bool = True
    organization_name: Optional[str] = None
    daily_limit: int = DEFAULT_DAILY_LIMIT
    daily_count: int = 0
    last_tested: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return messages_endpoint(self.base_url, self.instance_id)

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks
        return (
            f"ProviderInstanceConfig(tenant_id={self.tenant_id!r}, "
            f"instance_id={self.instance_id!r}, base_url={self.base_url!r}, "
            f"status={self.status.value!r})"
        )


@dataclass(frozen=True)
class ConnectionTestResult:
    ok: bool
    detail: str
    response_time_ms: float = 0.0
    payload: Any = None


class ProviderResolver:
    """
    Maps a tenant to its provider instance.

    Args:
        session_factory: SQLAlchemy sessionmaker for the organizations table
        http_client: client used for connection probes
        default_base_url: used when a tenant stores no base URL;
            falls back to PROVIDER_DEFAULT_BASE_URL
        test_timeout: bound on a connection probe, in seconds
        cache_ttl: seconds a resolved config may be reused; 0 disables caching
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        http_client: httpx.Client,
        default_base_url: Optional[str] = None,
        test_timeout: float = 5.0,
        cache_ttl: float = 0.0,
        today: Callable[[], date] = lambda: datetime.now(timezone.utc).date(),
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._http = http_client
        self.default_base_url = default_base_url or settings.PROVIDER_DEFAULT_BASE_URL
        self.test_timeout = test_timeout
        self.cache_ttl = cache_ttl
        self._today = today
        self._monotonic = monotonic
        self._cache: Dict[str, Tuple[float, ProviderInstanceConfig]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def is_messaging_enabled(self, tenant_id: str) -> bool:
        """
        Read the tenant's messaging feature flag.

        Does not look at provider credentials, so a disabled tenant without
        any configured instance still reads as disabled.

        Raises:
            ProviderNotConfigured: unknown tenant.
        """
        cached = self._cached(tenant_id)
        if cached is not None:
            return cached.messaging_enabled

        with self._session_factory() as db:
            row = (
                db.query(Organization.messaging_enabled)
                .filter(Organization.id == tenant_id)
                .first()
            )
        if row is None:
            logger.info(f"Organization {tenant_id} not found")
            raise ProviderNotConfigured(f"organization {tenant_id} not found")
        return bool(row.messaging_enabled)

    def get_tenant_config(self, tenant_id: str) -> ProviderInstanceConfig:
        """
        Load the provider configuration of a tenant.

        Raises:
            ProviderNotConfigured: unknown tenant, or no instance id / token stored.
        """
        cached = self._cached(tenant_id)
        if cached is not None:
            return cached

        with self._session_factory() as db:
            org = db.get(Organization, tenant_id)
            if org is None:
                logger.info(f"Organization {tenant_id} not found")
                raise ProviderNotConfigured(f"organization {tenant_id} not found")
            if not org.provider_instance_id or not org.provider_token:
                logger.info(f"Organization {tenant_id} has no messaging provider configuration")
                raise ProviderNotConfigured(
                    f"organization {tenant_id} has no messaging provider configuration"
                )

            daily_count = org.daily_message_count or 0
            if org.daily_count_date != self._today():
                daily_count = 0

            config = ProviderInstanceConfig(
                tenant_id=org.id,
                instance_id=org.provider_instance_id,
                token=org.provider_token,
                base_url=org.provider_base_url or self.default_base_url,
                status=ProviderStatus.parse(org.provider_status),
                messaging_enabled=bool(org.messaging_enabled),
                organization_name=org.name,
                daily_limit=org.daily_message_limit or DEFAULT_DAILY_LIMIT,
                daily_count=daily_count,
                last_tested=org.provider_last_tested,
                last_error=org.provider_last_error,
            )

        self._store(tenant_id, config)
        return config

    @staticmethod
    def ensure_available(config: ProviderInstanceConfig) -> None:
        """
        Raises:
            ProviderUnavailable: the instance status is not active.
            DailyLimitExceeded: the tenant's daily quota is used up.
        """
        if config.status is not ProviderStatus.ACTIVE:
            raise ProviderUnavailable(
                f"provider instance {config.instance_id} is {config.status.value}"
            )
        if config.daily_count >= config.daily_limit:
            raise DailyLimitExceeded(
                f"daily message limit of {config.daily_limit} reached"
            )

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _cached(self, tenant_id: str) -> Optional[ProviderInstanceConfig]:
        if self.cache_ttl <= 0:
            return None
        with self._lock:
            entry = self._cache.get(tenant_id)
            if entry is None:
                return None
            expires, config = entry
            if expires <= self._monotonic():
                del self._cache[tenant_id]
                return None
            return config

    def _store(self, tenant_id: str, config: ProviderInstanceConfig) -> None:
        if self.cache_ttl <= 0:
            return
        with self._lock:
            self._cache[tenant_id] = (self._monotonic() + self.cache_ttl, config)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        """Drop one cached tenant config, or all of them."""
        with self._lock:
            if tenant_id is None:
                self._cache.clear()
            else:
                self._cache.pop(tenant_id, None)

    # -------------------------------------------------------------------------
    # Connection testing
    # -------------------------------------------------------------------------

    def test_connection(
        self,
        instance_id: str,
        token: str,
        base_url: Optional[str] = None,
    ) -> ConnectionTestResult:
        """
        Probe a provider instance with a message to an undeliverable number.

        Never raises: every failure is reported in the returned result.
        """
        if not instance_id or not token:
            return ConnectionTestResult(ok=False, detail="Instance ID and token are required")

        url = messages_endpoint(base_url or self.default_base_url, instance_id)
        logger.info(f"Testing provider connection: {instance_id}")
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 2)

        try:
            response = self._http.post(
                url,
                data={
                    "token": token,
                    "to": PROBE_RECIPIENT,
                    "body": "Connection Test",
                    "priority": "10",
                },
                timeout=self.test_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Provider connection test failed for {instance_id}: {e}")
            return ConnectionTestResult(
                ok=False, detail=str(e) or type(e).__name__, response_time_ms=elapsed_ms()
            )
        finally:
            observe_provider_latency("test_connection", time.perf_counter() - started)

        if not response.is_success:
            return ConnectionTestResult(
                ok=False,
                detail=f"HTTP {response.status_code}: {response.reason_phrase}",
                response_time_ms=elapsed_ms(),
                payload=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            return ConnectionTestResult(
                ok=False,
                detail="Provider returned a non-JSON response",
                response_time_ms=elapsed_ms(),
                payload=response.text,
            )

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            lowered = str(error).lower()
            if any(hint in lowered for hint in _QUOTA_ERROR_HINTS):
                return ConnectionTestResult(
                    ok=True,
                    detail="Connection successful (Daily limit reached)",
                    response_time_ms=elapsed_ms(),
                    payload=data,
                )
            if any(hint in lowered for hint in _REACHABLE_ERROR_HINTS):
                return ConnectionTestResult(
                    ok=True,
                    detail="Connection successful (API accessible)",
                    response_time_ms=elapsed_ms(),
                    payload=data,
                )
            return ConnectionTestResult(
                ok=False,
                detail=f"Provider API error: {error}",
                response_time_ms=elapsed_ms(),
                payload=data,
            )

        return ConnectionTestResult(
            ok=True, detail="Connection successful", response_time_ms=elapsed_ms(), payload=data
        )

    def test_tenant_connection(self, tenant_id: str) -> ConnectionTestResult:
        """
        Probe the stored instance of a tenant and record the outcome.

        Raises:
            ProviderNotConfigured: the tenant has nothing to probe.
        """
        self.invalidate(tenant_id)
        config = self.get_tenant_config(tenant_id)
        result = self.test_connection(config.instance_id, config.token, config.base_url)
        self.record_connection_test(tenant_id, result)
        return result

    def record_connection_test(self, tenant_id: str, result: ConnectionTestResult) -> ProviderStatus:
        """Persist a probe outcome and flip the instance status to active or error."""
        status = ProviderStatus.ACTIVE if result.ok else ProviderStatus.ERROR
        with self._session_factory() as db:
            db.query(Organization).filter(Organization.id == tenant_id).update(
                {
                    "provider_status": status.value,
                    "provider_last_tested": datetime.now(timezone.utc),
                    "provider_last_error": None if result.ok else result.detail,
                },
                synchronize_session=False,
            )
            db.commit()
        self.invalidate(tenant_id)
        logger.info(f"Recorded connection test for {tenant_id}: status={status.value}")
        return status

    # -------------------------------------------------------------------------
    # Quota
    # -------------------------------------------------------------------------

    def increment_message_count(self, tenant_id: str) -> None:
        """Count one sent message against today's quota; the counter restarts each day."""
        today = self._today()
        with self._session_factory() as db:
            db.query(Organization).filter(Organization.id == tenant_id).update(
                {
                    "daily_message_count": case(
                        (Organization.daily_count_date == today, Organization.daily_message_count + 1),
                        else_=1,
                    ),
                    "daily_count_date": today,
                },
                synchronize_session=False,
            )
            db.commit()

        with self._lock:
            entry = self._cache.get(tenant_id)
            if entry is not None:
                expires, config = entry
                self._cache[tenant_id] = (expires, replace(config, daily_count=config.daily_count + 1))
