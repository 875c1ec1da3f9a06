"""Configure-time assembly of a provider instance."""

import threading
from typing import Mapping, Optional

from mysqlprovider.azure.identity import TokenExchanger
from mysqlprovider.utils import logger
from .base import ProviderConfig
from .connection import Backoff, ConnectionConfiguration, ConnectionManager, Database, Driver
from .credentials import resolve_credentials
from .dialect import Dialect, dialect_for, quote_identifier
from .dialer import resolve_dialer


class Provider:
    """Entry point resource handlers use to reach the server."""

    quote_identifier = staticmethod(quote_identifier)

    def __init__(self, connection: ConnectionManager):
        self.connection = connection

    @property
    def config(self) -> ConnectionConfiguration:
        return self.connection.config

    def get_connection(self, cancel: Optional[threading.Event] = None) -> Database:
        return self.connection.get_connection(cancel)

    def dialect(self, cancel: Optional[threading.Event] = None) -> Dialect:
        return dialect_for(self.get_connection(cancel))

    def close(self) -> None:
        self.connection.close()


def configure(
    config: ProviderConfig,
    exchanger: Optional[TokenExchanger] = None,
    driver: Optional[Driver] = None,
    backoff: Optional[Backoff] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Provider:
    """
    Build a provider from validated configuration.

    Resolves the dialer and the credentials (exchanging an AAD token when
    configured) but does not connect; the first handler to ask for the
    connection opens it.

    Raises:
        ConfigurationError: Invalid proxy, auth mode or AAD credentials
        CredentialExchangeError: Azure AD did not issue a token
    """
    dialer = resolve_dialer(config.proxy, environ)
    credentials = resolve_credentials(
        config.authentication_plugin,
        config.username,
        config.password,
        config.aad_auth,
        exchanger,
    )

    connection_config = ConnectionConfiguration(
        endpoint=config.endpoint,
        username=credentials.username,
        password=credentials.password,
        tls=config.tls,
        auth_mode=credentials.auth_mode,
        max_conn_lifetime=config.max_conn_lifetime_sec,
        max_open_conns=config.max_open_conns,
        connect_retry_timeout=config.connect_retry_timeout_sec,
    )
    logger.debug(
        f"Configured provider for {connection_config.endpoint} "
        f"({connection_config.transport.value}, auth {connection_config.auth_mode.value}, "
        f"tls {connection_config.tls.value})"
    )

    return Provider(ConnectionManager(connection_config, dialer, driver, backoff))
