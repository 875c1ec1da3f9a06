"""Server version gate and version-sensitive statement construction."""

import re
from enum import Enum

from packaging.version import InvalidVersion, Version

from mysqlprovider.errors import ServerOperationError, ServerVersionError

# ALTER USER ... IDENTIFIED BY replaced SET PASSWORD in MySQL 5.7.6
MODERN_PASSWORD_SYNTAX = Version("5.7.6")
ROLES_MINIMUM_VERSION = Version("8.0.0")

_LEADING_VERSION = re.compile(r"^\s*v?(\d+(?:\.\d+)*)")


def quote_identifier(name: str) -> str:
    """Quote ``name`` as a MySQL identifier, doubling embedded backticks."""
    return "`" + name.replace("`", "``") + "`"


def quote_literal(value: str) -> str:
    """
    Quote ``value`` as a MySQL string literal.

    Embedded quotes are doubled, which parses the same with or without
    NO_BACKSLASH_ESCAPES. Backslashes are escaped for the default mode.
    """
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def quote_account(user: str, host: str) -> str:
    """Account name in ``user@host`` form with both parts quoted."""
    return f"{quote_identifier(user)}@{quote_identifier(host)}"


def parse_server_version(raw) -> Version:
    """
    Parse the version a server reports.

    Only the leading dotted number is used, so vendor suffixes such as
    ``5.6.22-72.0`` or ``10.6.12-MariaDB`` are accepted.

    Raises:
        ServerVersionError: If no version number can be read from ``raw``
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", "replace")
    match = _LEADING_VERSION.match(raw) if isinstance(raw, str) else None
    if match is None:
        raise ServerVersionError(f"could not parse server version {raw!r}")
    try:
        return Version(match.group(1))
    except InvalidVersion as e:
        raise ServerVersionError(f"could not parse server version {raw!r}: {e}") from e


class Dialect(Enum):
    """SQL variant selected from the server version."""

    LEGACY = "legacy"
    MODERN = "modern"

    @classmethod
    def for_version(cls, version: Version) -> "Dialect":
        if version < MODERN_PASSWORD_SYNTAX:
            return cls.LEGACY
        return cls.MODERN

    def set_password_sql(self, user: str, host: str, password: str) -> str:
        account = quote_account(user, host)
        if self is Dialect.LEGACY:
            return f"SET PASSWORD FOR {account} = PASSWORD({quote_literal(password)})"
        return f"ALTER USER {account} IDENTIFIED BY {quote_literal(password)}"


def dialect_for(database) -> Dialect:
    """Dialect of the server behind ``database``; the version is fetched once per handle."""
    return Dialect.for_version(database.server_version())


def require_version(database, minimum: Version, feature: str) -> Version:
    """Fail with a clear message when the server is too old for ``feature``."""
    version = database.server_version()
    if version < minimum:
        raise ServerOperationError(
            f"{feature} require MySQL {minimum} or newer, server is {version}"
        )
    return version
