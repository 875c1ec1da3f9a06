"""Network dialers used to reach the MySQL server over TCP."""

import os
import re
import socket
from typing import Mapping, Optional, Protocol, Tuple
from urllib.parse import unquote, urlsplit
from urllib.request import proxy_bypass_environment

import socks

from mysqlprovider.utils import logger
from mysqlprovider.errors import ConfigurationError

PROXY_URL_PATTERN = re.compile(r"^socks5h?://(?:[^@/\s]+@)?[^@/\s]+:\d+/?$")
PROXY_ENV_VARS = ("ALL_PROXY", "all_proxy")
NO_PROXY_ENV_VARS = ("NO_PROXY", "no_proxy")


class Dialer(Protocol):
    """Opens TCP sockets to the database server."""

    def dial(self, host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
        ...


class DirectDialer:
    """Connects straight to the target address."""

    def dial(self, host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
        return socket.create_connection((host, port), timeout=timeout)

    def __repr__(self) -> str:
        return "DirectDialer()"


class Socks5Dialer:
    """Connects through a SOCKS5 proxy.

    With ``remote_dns`` the proxy resolves host names (the ``socks5h`` scheme),
    otherwise they are resolved locally before the proxy is asked to connect.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        remote_dns: bool = False,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.remote_dns = remote_dns

    def dial(self, host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
        return socks.create_connection(
            (host, port),
            timeout=timeout,
            proxy_type=socks.SOCKS5,
            proxy_addr=self.host,
            proxy_port=self.port,
            proxy_rdns=self.remote_dns,
            proxy_username=self.username,
            proxy_password=self.password,
        )

    def __repr__(self) -> str:
        scheme = "socks5h" if self.remote_dns else "socks5"
        return f"Socks5Dialer({scheme}://{self.host}:{self.port})"


class BypassDialer:
    """Uses ``proxy`` unless the target host is listed in ``no_proxy``."""

    def __init__(self, proxy: Dialer, no_proxy: str, direct: Optional[Dialer] = None):
        self.proxy = proxy
        self.no_proxy = no_proxy
        self.direct = direct or DirectDialer()

    def bypasses(self, host: str) -> bool:
        return bool(proxy_bypass_environment(host, {"no": self.no_proxy}))

    def dial(self, host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
        if self.bypasses(host):
            return self.direct.dial(host, port, timeout)
        return self.proxy.dial(host, port, timeout)

    def __repr__(self) -> str:
        return f"BypassDialer({self.proxy!r}, no_proxy={self.no_proxy!r})"


def parse_proxy_url(proxy_url: str) -> Socks5Dialer:
    """
    Build a SOCKS5 dialer from a ``socks5[h]://[user[:pass]@]host:port`` URL.

    Raises:
        ConfigurationError: If the URL is not a usable SOCKS5 proxy URL
    """
    if not isinstance(proxy_url, str) or not PROXY_URL_PATTERN.match(proxy_url):
        raise ConfigurationError(
            f"The proxy URL is not a valid socks url: {proxy_url!r}"
        )

    parts = urlsplit(proxy_url)
    try:
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"The proxy URL has an invalid port: {e}") from e
    if not parts.hostname or port is None:
        raise ConfigurationError(
            f"The proxy URL must name a host and port: {proxy_url!r}"
        )

    return Socks5Dialer(
        host=parts.hostname,
        port=port,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
        remote_dns=parts.scheme == "socks5h",
    )


def _first_env(environ: Mapping[str, str], names: Tuple[str, ...]) -> str:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return ""


def dialer_from_environment(environ: Optional[Mapping[str, str]] = None) -> Dialer:
    """Dialer described by ALL_PROXY and NO_PROXY, or a direct dialer."""
    if environ is None:
        environ = os.environ

    proxy_url = _first_env(environ, PROXY_ENV_VARS)
    if not proxy_url:
        return DirectDialer()

    try:
        proxy = parse_proxy_url(proxy_url)
    except ConfigurationError as e:
        logger.warning(f"Ignoring proxy from environment: {e}")
        return DirectDialer()

    no_proxy = _first_env(environ, NO_PROXY_ENV_VARS)
    if no_proxy:
        return BypassDialer(proxy, no_proxy)
    return proxy


def resolve_dialer(
    proxy: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Dialer:
    """
    Resolve the dialer used for every TCP connection of a provider.

    Args:
        proxy: Explicit proxy override, must be ``socks5[h]://host:port``
        environ: Environment consulted when there is no override

    Returns:
        The dialer to hand to the connection manager

    Raises:
        ConfigurationError: If ``proxy`` is given but malformed
    """
    if proxy:
        dialer = parse_proxy_url(proxy)
        logger.debug(f"Using proxy override {dialer!r}")
        return dialer

    dialer = dialer_from_environment(environ)
    logger.debug(f"Using dialer {dialer!r}")
    return dialer
