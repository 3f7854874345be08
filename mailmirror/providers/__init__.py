"""
Remote message sources.

A source exposes folder enumeration, paged change tracking, a date-window
fallback query and raw MIME download.
"""

from mailmirror.providers.base import (
    RemoteMessageSource,
    RemoteMailFolder,
    RemoteMessage,
    MessageIdentity,
    ChangeKind,
    DeltaPage,
    RemoteSourceError,
    AuthenticationError,
    RateLimitError,
    TransientRemoteError,
    DeltaTokenInvalidError,
    RemoteNotFoundError,
    RetryExhaustedError,
)

__all__ = [
    "RemoteMessageSource",
    "RemoteMailFolder",
    "RemoteMessage",
    "MessageIdentity",
    "ChangeKind",
    "DeltaPage",
    "RemoteSourceError",
    "AuthenticationError",
    "RateLimitError",
    "TransientRemoteError",
    "DeltaTokenInvalidError",
    "RemoteNotFoundError",
    "RetryExhaustedError",
]
