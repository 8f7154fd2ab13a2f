"""
Mail Gateway — base interface and errors for outbound email.

Provides:
- MailError / MailTransportError: structured error hierarchy
- MailMetrics: per-gateway send/fail counters
- MailGateway: abstract base wrapping every send with logging and metrics
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class MailError(Exception):
    """Base exception for all mail operations."""

    def __init__(self, message: str, recipient: str = "", retryable: bool = False):
        self.recipient = recipient
        self.retryable = retryable
        super().__init__(message)


class MailTransportError(MailError):
    """The provider rejected the message or could not be reached."""

    def __init__(self, message: str, recipient: str = "", status_code: int = None):
        self.status_code = status_code
        retryable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(message, recipient, retryable=retryable)


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

@dataclass
class MailMetrics:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    total_latency_ms: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.sent if self.sent else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
        }


# ══════════════════════════════════════════════════════════════
#  GATEWAY
# ══════════════════════════════════════════════════════════════

class MailGateway(abc.ABC):
    """
    Abstract mail gateway.

    Subclasses implement _do_send; send() adds logging and metrics and
    normalises every provider failure into MailTransportError.
    """

    name: str = "mail"

    def __init__(self):
        self.metrics = MailMetrics()

    @property
    def configured(self) -> bool:
        """False when the gateway only logs instead of delivering."""
        return True

    async def send(self, to: str, subject: str, body: str) -> None:
        if not to:
            raise MailTransportError("Recipient address is empty")

        start = time.monotonic()
        try:
            await self._do_send(to, subject, body)
        except MailTransportError:
            self.metrics.failed += 1
            logger.error("email_send_failed", gateway=self.name, to=to, subject=subject)
            raise
        except Exception as e:
            self.metrics.failed += 1
            logger.error("email_send_failed", gateway=self.name, to=to, subject=subject, error=str(e))
            raise MailTransportError(str(e) or type(e).__name__, recipient=to) from e

        if self.configured:
            self.metrics.sent += 1
            self.metrics.total_latency_ms += (time.monotonic() - start) * 1000
        else:
            self.metrics.skipped += 1

    @abc.abstractmethod
    async def _do_send(self, to: str, subject: str, body: str) -> None:
        ...

    async def close(self) -> None:
        pass
