"""Mail gateways used to deliver notification email."""
from channels.base import (
    MailGateway,
    MailError,
    MailTransportError,
    MailMetrics,
)
from channels.email_adapter import (
    HttpMailGateway,
    LogOnlyMailGateway,
    create_mail_gateway,
)

__all__ = [
    "MailGateway", "MailError", "MailTransportError", "MailMetrics",
    "HttpMailGateway", "LogOnlyMailGateway", "create_mail_gateway",
]
