"""Exceptions raised by the MySQL provider.

Every error carries the phase it was raised in through its type; the
underlying cause, when there is one, is chained with ``raise ... from``.
"""


class ProviderError(Exception):
    """Base class for all provider errors."""


class ConfigurationError(ProviderError, ValueError):
    """Invalid or incomplete provider configuration. Never retried."""


class CredentialExchangeError(ProviderError):
    """The identity provider refused or failed the token exchange."""


class ConnectionEstablishmentError(ProviderError, ConnectionError):
    """The shared connection could not be established."""


class ConnectionTimeoutError(ConnectionEstablishmentError):
    """The retry budget ran out before the server became reachable."""


class ConnectionCancelledError(ConnectionEstablishmentError):
    """The caller cancelled while the connection was being established."""


class ServerOperationError(ProviderError, RuntimeError):
    """A statement failed against an established connection."""


class ServerVersionError(ServerOperationError):
    """The server version could not be queried or parsed."""
