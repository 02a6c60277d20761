import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import requests

from .config import Settings
from .errors import (
    CircuitOpenError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from .resilience import CircuitBreaker, TokenBucket, is_transient, with_retry

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    """One message ready to hand to a provider."""

    to: str
    body: str
    subject: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class ProviderClient:
    """
    Base adapter for a transactional messaging HTTP API.

    Every send waits for a rate-limit token, then runs through the circuit
    breaker, inside which transient failures are retried with backoff.
    ``send`` never raises for provider failures; it reports them in the
    returned ``SendResult`` along with whether a later retry could succeed.
    """

    name = "provider"

    def __init__(
        self,
        rate_limiter: TokenBucket,
        circuit_breaker: CircuitBreaker,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_initial_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_initial_delay = retry_initial_delay
        self._sleep = sleep

    def send(self, message: OutboundMessage) -> SendResult:
        start = time.monotonic()
        try:
            self.rate_limiter.acquire()
            message_id = self.circuit_breaker.call(
                with_retry,
                lambda: self._send_once(message),
                max_attempts=self.retry_attempts,
                initial_delay=self.retry_initial_delay,
                sleep=self._sleep,
            )
        except CircuitOpenError as exc:
            logger.warning("%s send to %s rejected: %s", self.name, message.to, exc)
            return SendResult(success=False, error=str(exc), retryable=True)
        except PermanentProviderError as exc:
            logger.error("%s rejected message to %s: %s", self.name, message.to, exc)
            return SendResult(success=False, error=str(exc), retryable=False)
        except TransientProviderError as exc:
            logger.error("%s send to %s failed: %s", self.name, message.to, exc)
            return SendResult(success=False, error=str(exc), retryable=True)

        duration = int((time.monotonic() - start) * 1000)
        logger.info("%s message sent to %s (id=%s, %dms)", self.name, message.to, message_id, duration)
        return SendResult(success=True, provider_message_id=message_id)

    def ping(self) -> None:
        """Raise ``ProviderError`` when the provider API is unreachable."""
        raise NotImplementedError

    def _send_once(self, message: OutboundMessage) -> Optional[str]:
        raise NotImplementedError

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            if is_transient(exc):
                raise TransientProviderError(f"{self.name} network error: {exc}") from exc
            raise PermanentProviderError(f"{self.name} request error: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise TransientProviderError(f"{self.name} rate limit exceeded", status)
        if status >= 500:
            raise TransientProviderError(f"{self.name} returned {status}: {response.text[:200]}", status)
        if status >= 400:
            raise PermanentProviderError(f"{self.name} returned {status}: {response.text[:200]}", status)
        return response


def _response_id(response: requests.Response, key: str) -> Optional[str]:
    # The provider accepted the message; an unreadable body only loses the id.
    try:
        body = response.json()
    except ValueError:
        logger.warning("Provider returned %s with a non-JSON body", response.status_code)
        return None
    return body.get(key) if isinstance(body, dict) else None


class EmailClient(ProviderClient):
    """Resend-compatible transactional email API."""

    name = "email"

    def __init__(self, api_key: str, from_address: str, api_url: str = "https://api.resend.com", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise PermanentProviderError("Email API key is not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _send_once(self, message: OutboundMessage) -> Optional[str]:
        payload = {
            "from": self.from_address,
            "to": [message.to],
            "subject": message.subject or "",
            "html": message.body,
        }
        if message.headers:
            payload["headers"] = message.headers
        response = self._request("POST", f"{self.api_url}/emails", json=payload, headers=self._headers())
        return _response_id(response, "id")

    def ping(self) -> None:
        try:
            self._request("GET", f"{self.api_url}/domains", headers=self._headers())
        except TransientProviderError as exc:
            # A rate-limited API is still a reachable API.
            if exc.status_code != 429:
                raise


def format_e164(phone: str) -> str:
    cleaned = re.sub(r"[^0-9+]", "", phone or "")
    if cleaned.startswith("+"):
        return cleaned
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return f"+{cleaned}"
    raise PermanentProviderError(f"Cannot format phone number {phone!r}")


class SmsClient(ProviderClient):
    """Twilio-compatible SMS API."""

    name = "sms"

    def __init__(self, account_sid: str, auth_token: str, from_phone: str,
                 api_url: str = "https://api.twilio.com", **kwargs):
        super().__init__(**kwargs)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_phone = from_phone
        self.api_url = api_url.rstrip("/")

    def _account_url(self) -> str:
        if not (self.account_sid and self.auth_token and self.from_phone):
            raise PermanentProviderError("SMS provider is not configured")
        return f"{self.api_url}/2010-04-01/Accounts/{self.account_sid}"

    def _send_once(self, message: OutboundMessage) -> Optional[str]:
        data = {"To": format_e164(message.to), "From": self.from_phone, "Body": message.body}
        response = self._request(
            "POST",
            f"{self._account_url()}/Messages.json",
            data=data,
            auth=(self.account_sid, self.auth_token),
        )
        return _response_id(response, "sid")

    def ping(self) -> None:
        self._request("GET", f"{self._account_url()}.json", auth=(self.account_sid, self.auth_token))


def _guards(name: str, settings: Settings, sleep=time.sleep):
    limiter = TokenBucket(
        settings.rate_limit_capacity,
        settings.rate_limit_refill,
        settings.rate_limit_interval_seconds,
        sleep=sleep,
    )
    breaker = CircuitBreaker(
        name,
        failure_threshold=settings.circuit_failure_threshold,
        failure_window=settings.circuit_failure_window_seconds,
        reset_timeout=settings.circuit_reset_seconds,
        counts_as_failure=is_transient,
    )
    return limiter, breaker


def build_email_client(settings: Settings, session: Optional[requests.Session] = None) -> EmailClient:
    limiter, breaker = _guards("email-api", settings)
    return EmailClient(
        api_key=settings.email_api_key,
        from_address=f"{settings.store_name} <{settings.from_email}>",
        api_url=settings.email_api_url,
        rate_limiter=limiter,
        circuit_breaker=breaker,
        session=session,
        timeout=settings.provider_timeout_seconds,
        retry_attempts=settings.provider_retry_attempts,
        retry_initial_delay=settings.provider_retry_initial_delay,
    )


def build_sms_client(settings: Settings, session: Optional[requests.Session] = None) -> SmsClient:
    limiter, breaker = _guards("sms-api", settings)
    return SmsClient(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_phone=settings.twilio_phone_number,
        api_url=settings.twilio_api_url,
        rate_limiter=limiter,
        circuit_breaker=breaker,
        session=session,
        timeout=settings.provider_timeout_seconds,
        retry_attempts=settings.provider_retry_attempts,
        retry_initial_delay=settings.provider_retry_initial_delay,
    )


__all__ = [
    "EmailClient",
    "OutboundMessage",
    "ProviderClient",
    "ProviderError",
    "SendResult",
    "SmsClient",
    "build_email_client",
    "build_sms_client",
    "format_e164",
]
