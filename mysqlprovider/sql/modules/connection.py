"""Shared, lazily established connection to the MySQL server.

The provider opens exactly one pooled connection handle per configuration.
Opening it is retried for a while because the server is often still being
provisioned when the first resource asks for it.
"""

import ssl
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Protocol, Tuple

import pymysql
from packaging.version import Version
from pydantic import BaseModel, ConfigDict, Field
from pymysql.constants import CR
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import ArgumentError, NoSuchModuleError, SQLAlchemyError

from mysqlprovider.errors import (
    ConfigurationError,
    ConnectionCancelledError,
    ConnectionEstablishmentError,
    ConnectionTimeoutError,
    ProviderError,
    ServerVersionError,
)
from mysqlprovider.utils import logger
from .credentials import AuthMode
from .dialect import parse_server_version
from .dialer import DirectDialer, Dialer

DRIVER_NAME = "mysql+pymysql"
DEFAULT_PORT = 3306
DEFAULT_CONNECT_TIMEOUT = 10
SERVER_VERSION_QUERY = "SELECT @@GLOBAL.innodb_version"
# how often a waiting caller checks its own cancellation
WAIT_POLL_INTERVAL = 0.05


class Transport(str, Enum):
    TCP = "tcp"
    UNIX = "unix"


class TLSMode(str, Enum):
    """TLS setting, valued as written in the provider configuration."""

    DISABLED = "false"
    REQUIRED = "true"
    SKIP_VERIFY = "skip-verify"

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        if self is TLSMode.DISABLED:
            return None
        context = ssl.create_default_context()
        if self is TLSMode.SKIP_VERIFY:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


def split_endpoint(endpoint: str) -> Tuple[str, int]:
    """Split ``host[:port]`` (IPv6 hosts in brackets) into host and port."""
    if endpoint.startswith("["):
        host, _, rest = endpoint[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif endpoint.count(":") == 1:
        host, _, port = endpoint.partition(":")
    else:
        host, port = endpoint, ""

    if not host:
        raise ConfigurationError(f"endpoint '{endpoint}' does not name a host")
    if not port:
        return host, DEFAULT_PORT
    if not port.isdigit():
        raise ConfigurationError(f"endpoint '{endpoint}' has an invalid port")
    return host, int(port)


class ConnectionConfiguration(BaseModel):
    """Everything needed to reach the server, fixed at configure time"""

    model_config = ConfigDict(frozen=True)

    endpoint: str = Field(min_length=1)
    username: str
    password: str = Field(default="", repr=False)
    tls: TLSMode = TLSMode.DISABLED
    auth_mode: AuthMode = AuthMode.NATIVE
    max_conn_lifetime: float = Field(default=0, ge=0)
    max_open_conns: int = Field(default=0, ge=0)
    connect_retry_timeout: float = Field(default=300, ge=0)

    @property
    def transport(self) -> Transport:
        if self.endpoint.startswith("/"):
            return Transport.UNIX
        return Transport.TCP

    def format_dsn(self) -> URL:
        """Connection URL carrying credentials, address, TLS and auth plugin flags."""
        query = {
            "tls": self.tls.value,
            "allow_native_passwords": _flag(self.auth_mode is AuthMode.NATIVE),
            "allow_cleartext_passwords": _flag(self.auth_mode is AuthMode.CLEARTEXT),
        }
        if self.transport is Transport.UNIX:
            query["unix_socket"] = self.endpoint
            host, port = None, None
        else:
            host, port = split_endpoint(self.endpoint)

        return URL.create(
            DRIVER_NAME,
            username=self.username,
            password=self.password or None,
            host=host,
            port=port,
            query=query,
        )


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _parse_flag(value) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes")


def _negotiated_tls(sock) -> bool:
    return isinstance(sock, ssl.SSLSocket)


def _refused_auth_plugin(name: str):
    class RefusedAuthPlugin:
        def __init__(self, con):
            self.con = con

        def authenticate(self, pkt):
            raise pymysql.err.OperationalError(
                CR.CR_AUTH_PLUGIN_CANNOT_LOAD,
                f"authentication plugin '{name}' is not enabled for this provider",
            )

    return RefusedAuthPlugin


def auth_plugin_map(allow_native: bool, allow_cleartext: bool) -> dict:
    """pymysql handlers that refuse the password exchanges not allowed."""
    plugins = {}
    if not allow_native:
        plugins["mysql_native_password"] = _refused_auth_plugin("mysql_native_password")
    if not allow_cleartext:
        plugins["mysql_clear_password"] = _refused_auth_plugin("mysql_clear_password")
    return plugins


def pool_options(max_lifetime: float, max_open: int) -> dict:
    """create_engine pool arguments; zero means unbounded for both limits."""
    options = {"pool_recycle": max_lifetime if max_lifetime > 0 else -1}
    if max_open > 0:
        options.update(pool_size=max_open, max_overflow=0)
    else:
        options.update(max_overflow=-1)
    return options


class Database:
    """Pooled connection handle shared by every resource of a provider."""

    def __init__(self, engine: Optional[Engine], engine_factory: Optional[Callable[..., Engine]] = None):
        self.engine = engine
        self._engine_factory = engine_factory
        self._version: Optional[Version] = None
        self._version_lock = threading.Lock()

    def __repr__(self) -> str:
        url = self.engine.url.render_as_string(hide_password=True) if self.engine else None
        return f"Database({url})"

    @staticmethod
    def _run(conn, sql: str, params=None):
        if params is None:
            # no parameters: the driver must not apply %-formatting
            return conn.execution_options(no_parameters=True).exec_driver_sql(sql)
        return conn.exec_driver_sql(sql, params)

    def ping(self) -> None:
        with self.engine.connect() as conn:
            self._run(conn, "SELECT 1")

    def query(self, sql: str, params=None) -> List[Tuple[Any, ...]]:
        with self.engine.connect() as conn:
            return [tuple(row) for row in self._run(conn, sql, params).fetchall()]

    def query_scalar(self, sql: str, params=None) -> Any:
        with self.engine.connect() as conn:
            return self._run(conn, sql, params).scalar()

    def execute(self, sql: str, params=None) -> int:
        with self.engine.begin() as conn:
            return self._run(conn, sql, params).rowcount

    def server_version(self) -> Version:
        """Version of the server, queried once for this handle."""
        with self._version_lock:
            if self._version is None:
                try:
                    raw = self.query_scalar(SERVER_VERSION_QUERY)
                except SQLAlchemyError as e:
                    raise ServerVersionError(f"could not determine server version: {e}") from e
                self._version = parse_server_version(raw)
                logger.debug(f"Server version is {self._version}")
            return self._version

    def set_pool_limits(self, max_lifetime: float, max_open: int) -> None:
        """Replace the pool with one bounded by connection lifetime and count."""
        if self._engine_factory is None:
            return
        previous = self.engine
        self.engine = self._engine_factory(**pool_options(max_lifetime, max_open))
        if previous is not None:
            previous.dispose()

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


class Driver(Protocol):
    def open(self, dsn: URL, dialer: Dialer) -> Database:
        ...


class MySQLDriver:
    """Opens ``Database`` handles with pymysql, dialing TCP through a dialer."""

    def open(self, dsn: URL, dialer: Dialer) -> Database:
        def engine_factory(**options) -> Engine:
            return self.create_engine(dsn, dialer, **options)

        return Database(engine_factory(), engine_factory)

    def create_engine(self, dsn: URL, dialer: Dialer, **options) -> Engine:
        try:
            engine = create_engine(dsn, **options)
        except (ArgumentError, NoSuchModuleError) as e:
            raise ConfigurationError(
                f"invalid connection URL {dsn.render_as_string(hide_password=True)}: {e}"
            ) from e
        event.listen(engine, "do_connect", self._connect_hook(dialer))
        return engine

    @staticmethod
    def _connect_hook(dialer: Dialer):
        def do_connect(dialect, conn_rec, cargs, cparams):
            tls = TLSMode(cparams.pop("tls", TLSMode.DISABLED.value))
            allow_native = _parse_flag(cparams.pop("allow_native_passwords", "true"))
            allow_cleartext = _parse_flag(cparams.pop("allow_cleartext_passwords", "false"))

            context = tls.ssl_context()
            if context is None:
                cparams["ssl_disabled"] = True
            else:
                cparams["ssl"] = context
            cparams["auth_plugin_map"] = auth_plugin_map(allow_native, allow_cleartext)

            if cparams.get("unix_socket"):
                return pymysql.connect(*cargs, **cparams)

            host = cparams.get("host") or "localhost"
            port = int(cparams.get("port") or DEFAULT_PORT)
            timeout = cparams.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
            connection = pymysql.connect(*cargs, defer_connect=True, **cparams)
            sock = dialer.dial(host, port, timeout)
            try:
                connection.connect(sock)
            except Exception:
                sock.close()
                raise

            # pymysql swaps in the TLS-wrapped socket once the handshake upgrades
            active = getattr(connection, "_sock", None) or sock
            if tls is not TLSMode.DISABLED and not _negotiated_tls(active):
                connection.close()
                raise ConnectionEstablishmentError(
                    f"server at {host}:{port} did not negotiate TLS (tls={tls.value})"
                )
            # the dial timeout bounds the handshake only
            active.settimeout(cparams.get("read_timeout"))
            return connection

        return do_connect


class Backoff:
    """Waits between connection attempts: doubling, clamped to [minimum, maximum]."""

    def __init__(self, initial: float = 0.1, minimum: float = 0.5, maximum: float = 10.0):
        self.initial = initial
        self.minimum = minimum
        self.maximum = maximum

    def delays(self) -> Iterator[float]:
        delay = self.initial
        while True:
            yield min(max(delay, self.minimum), self.maximum)
            delay *= 2


def retry_until(
    attempt: Callable[[], Any],
    timeout: float,
    cancel: Optional[threading.Event] = None,
    backoff: Optional[Backoff] = None,
    description: str = "operation",
) -> Any:
    """
    Call ``attempt`` until it succeeds or ``timeout`` seconds have passed.

    Any exception other than a ``ProviderError`` counts as transient.
    Waits never extend past the deadline and end early when ``cancel`` is set.

    Raises:
        ConnectionTimeoutError: The deadline passed, chained to the last failure
        ConnectionCancelledError: ``cancel`` was set
    """
    cancel = cancel or threading.Event()
    backoff = backoff or Backoff()
    started = time.monotonic()
    deadline = started + timeout
    delays = backoff.delays()
    attempts = 0
    last_error: Optional[BaseException] = None

    while True:
        if cancel.is_set():
            raise ConnectionCancelledError(f"{description} cancelled") from last_error

        attempts += 1
        try:
            return attempt()
        except ProviderError:
            raise
        except Exception as e:
            last_error = e
            logger.debug(f"{description} attempt {attempts} failed: {e}")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            elapsed = time.monotonic() - started
            raise ConnectionTimeoutError(
                f"{description} timed out after {elapsed:.1f}s and {attempts} attempts: {last_error}"
            ) from last_error

        if cancel.wait(min(next(delays), remaining)):
            raise ConnectionCancelledError(f"{description} cancelled") from last_error


class ConnectionState(str, Enum):
    UNOPENED = "unopened"
    OPENING = "opening"
    OPEN = "open"
    FAILED = "failed"


class ConnectionManager:
    """Owns the single connection handle of a configured provider.

    The first caller of ``get_connection`` establishes the handle while
    concurrent callers wait for the same outcome. Once open, the handle is
    returned without locking or probing. A failed establishment is final and
    re-raised to every caller; a cancelled one lets the next caller try again.
    """

    def __init__(
        self,
        config: ConnectionConfiguration,
        dialer: Optional[Dialer] = None,
        driver: Optional[Driver] = None,
        backoff: Optional[Backoff] = None,
    ):
        self.config = config
        self.dialer = dialer or DirectDialer()
        self.driver = driver or MySQLDriver()
        self.backoff = backoff or Backoff()
        self.state = ConnectionState.UNOPENED
        self._database: Optional[Database] = None
        self._future: Optional[Future] = None
        self._lock = threading.Lock()

    def get_connection(self, cancel: Optional[threading.Event] = None) -> Database:
        database = self._database
        if database is not None:
            return database

        while True:
            with self._lock:
                if self._database is not None:
                    return self._database
                future = self._future
                owner = future is None
                if owner:
                    future = self._future = Future()
                    self.state = ConnectionState.OPENING

            if owner:
                self._establish(future, cancel)

            try:
                return self._wait(future, cancel)
            except ConnectionCancelledError:
                if owner or (cancel is not None and cancel.is_set()):
                    raise
                logger.debug("Connection attempt was cancelled by its caller, retrying")

    def _wait(self, future: Future, cancel: Optional[threading.Event]) -> Database:
        if cancel is None:
            return future.result()
        while True:
            try:
                return future.result(timeout=WAIT_POLL_INTERVAL)
            except FutureTimeoutError:
                if cancel.is_set():
                    raise ConnectionCancelledError(
                        "cancelled while waiting for the connection to the server"
                    ) from None

    def _establish(self, future: Future, cancel: Optional[threading.Event]) -> None:
        try:
            database = self._connect(cancel)
        except ConnectionCancelledError as e:
            self._reset()
            future.set_exception(e)
        except Exception as e:
            with self._lock:
                self.state = ConnectionState.FAILED
            logger.error(f"Could not connect to {self.config.endpoint}: {e}")
            future.set_exception(e)
        except BaseException:
            self._reset()
            future.set_exception(ConnectionCancelledError("connection attempt interrupted"))
            raise
        else:
            with self._lock:
                self._database = database
                self.state = ConnectionState.OPEN
            future.set_result(database)

    def _reset(self) -> None:
        with self._lock:
            self._future = None
            self.state = ConnectionState.UNOPENED

    def _connect(self, cancel: Optional[threading.Event]) -> Database:
        dsn = self.config.format_dsn()
        logger.info(
            f"Connecting to {self.config.endpoint} over {self.config.transport.value} "
            f"(retrying for up to {self.config.connect_retry_timeout:g}s)"
        )
        logger.debug(f"Connection URL {dsn.render_as_string(hide_password=True)}")

        try:
            database = retry_until(
                lambda: self._open_and_ping(dsn),
                timeout=self.config.connect_retry_timeout,
                cancel=cancel,
                backoff=self.backoff,
                description=f"connection to {self.config.endpoint}",
            )
        except ConnectionTimeoutError as e:
            raise ConnectionTimeoutError(f"could not connect to server: {e}") from e.__cause__

        database.set_pool_limits(self.config.max_conn_lifetime, self.config.max_open_conns)
        logger.info(f"Connected to {self.config.endpoint}")
        return database

    def _open_and_ping(self, dsn: URL) -> Database:
        database = self.driver.open(dsn, self.dialer)
        try:
            database.ping()
        except Exception:
            database.close()
            raise
        return database

    def close(self) -> None:
        """Dispose of the pool; for command line runs that end the process anyway."""
        database = self._database
        if database is not None:
            database.close()
