"""MySQL provider modules"""

from .base import (
    BaseResource,
    SQLConfig,
    ProviderConfig,
    DatabaseConfig,
    UserConfig,
    UserPasswordConfig,
    RoleConfig,
    GrantConfig,
    SQLStatementConfig,
    ResourceState,
)
from .connection import ConnectionManager, ConnectionState, Database, MySQLDriver
from .credentials import AuthMode, resolve_credentials
from .dialect import Dialect
from .dialer import resolve_dialer
from .mysql import MySQLProvider, MySQLBuilder, ResourceResult
from .provider import Provider, configure

__all__ = [
    "BaseResource",
    "SQLConfig",
    "ProviderConfig",
    "DatabaseConfig",
    "UserConfig",
    "UserPasswordConfig",
    "RoleConfig",
    "GrantConfig",
    "SQLStatementConfig",
    "ResourceState",
    "ConnectionManager",
    "ConnectionState",
    "Database",
    "MySQLDriver",
    "AuthMode",
    "resolve_credentials",
    "Dialect",
    "resolve_dialer",
    "MySQLProvider",
    "MySQLBuilder",
    "ResourceResult",
    "Provider",
    "configure",
]
