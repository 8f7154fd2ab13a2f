"""
Email Gateways — transactional email over a provider's HTTP API.

Provides:
- HttpMailGateway: JSON POST to the provider with bearer auth (httpx)
- LogOnlyMailGateway: used when no credentials are configured; logs the
  intended message and returns so the process keeps running
- create_mail_gateway: picks one from MailConfig
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from channels.base import MailGateway, MailTransportError
from config.settings import MailConfig

logger = structlog.get_logger()

# Values shipped in sample configs; treated as "not configured"
_PLACEHOLDER_CREDENTIALS = {"", "your-api-key", "your-app-password", "changeme"}


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, MailTransportError) and exc.retryable


def _log_retry(retry_state) -> None:
    logger.warning("email_send_retrying",
                   attempt=retry_state.attempt_number,
                   error=str(retry_state.outcome.exception()))


class HttpMailGateway(MailGateway):
    """
    Sends plain-text mail through a transactional provider's REST endpoint.

    Request body:
        {"from": {"email", "name"}, "to": [{"email"}], "subject", "text"}
    Any non-2xx response or network error raises MailTransportError. With
    mail.send_attempts > 1, network errors, 5xx and 429 are retried with
    exponential backoff before the error surfaces.
    """

    name = "http"

    def __init__(self, config: MailConfig, transport: httpx.AsyncBaseTransport = None):
        super().__init__()
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    def _build_message(self, to: str, subject: str, body: str) -> dict[str, Any]:
        return {
            "from": {"email": self.config.from_email, "name": self.config.from_name},
            "to": [{"email": to}],
            "subject": subject,
            "text": body,
        }

    async def _do_send(self, to: str, subject: str, body: str) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.send_attempts)),
            wait=wait_exponential(multiplier=self.config.retry_wait, max=10),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                await self._post(to, subject, body)

    async def _post(self, to: str, subject: str, body: str) -> None:
        client = self._get_client()
        try:
            response = await client.post(self.config.api_url, json=self._build_message(to, subject, body))
        except httpx.HTTPError as e:
            raise MailTransportError(f"Mail provider unreachable: {e}", recipient=to) from e

        if response.is_error:
            raise MailTransportError(
                f"Mail provider returned {response.status_code}: {response.text[:200]}",
                recipient=to,
                status_code=response.status_code,
            )
        logger.info("email_sent", to=to, subject=subject, status=response.status_code)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class LogOnlyMailGateway(MailGateway):
    """Stand-in used when mail credentials are absent; never raises for a valid recipient."""

    name = "log_only"

    @property
    def configured(self) -> bool:
        return False

    async def _do_send(self, to: str, subject: str, body: str) -> None:
        logger.warning("email_not_sent_unconfigured", to=to, subject=subject)


def mail_is_configured(config: MailConfig) -> bool:
    return bool(config.api_url) and config.api_key not in _PLACEHOLDER_CREDENTIALS and "${" not in config.api_key


def create_mail_gateway(config: MailConfig) -> MailGateway:
    """Factory: an HTTP gateway when credentials are present, else log-only."""
    if mail_is_configured(config):
        logger.info("mail_gateway_created", gateway="http", api_url=config.api_url)
        return HttpMailGateway(config)
    logger.warning("mail_gateway_unconfigured",
                   hint="set mail.api_url and mail.api_key to enable email notifications")
    return LogOnlyMailGateway()
