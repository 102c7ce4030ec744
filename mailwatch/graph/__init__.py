"""Microsoft Graph collaborators: auth, subscriptions, mail reader"""

from .auth import TokenProvider
from .client import (
    GraphClient,
    GraphSubscriptionClient,
    ProviderSubscription,
    SubscriptionProviderPort,
    format_graph_datetime,
    parse_graph_datetime,
)
from .errors import (
    GraphAPIError,
    GraphAuthError,
    GraphNotFoundError,
    GraphPermissionError,
    GraphTransientError,
    error_for_status,
)
from .mail_reader import GraphMailReader, MailReaderPort, MessageAttachment, MessageSummary

__all__ = [
    "TokenProvider",
    "GraphClient",
    "GraphSubscriptionClient",
    "ProviderSubscription",
    "SubscriptionProviderPort",
    "format_graph_datetime",
    "parse_graph_datetime",
    "GraphAPIError",
    "GraphAuthError",
    "GraphNotFoundError",
    "GraphPermissionError",
    "GraphTransientError",
    "error_for_status",
    "GraphMailReader",
    "MailReaderPort",
    "MessageAttachment",
    "MessageSummary",
]
