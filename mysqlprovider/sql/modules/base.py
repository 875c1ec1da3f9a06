import os
import re
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError

from mysqlprovider.azure.secrets import resolve_secret
from mysqlprovider.errors import ServerOperationError
from mysqlprovider.utils import logger, redact_statement, resolve_env_variable
from .connection import Database, TLSMode
from .credentials import AADCredentials, AuthMode
from .dialer import parse_proxy_url

if TYPE_CHECKING:
    from .provider import Provider

PLUGIN_NAME_PATTERN = re.compile(r"^\w+$")
# a privilege name with an optional column list
PRIVILEGE_PATTERN = re.compile(r"^[A-Z][A-Z _]*( ?\([\w`, ]+\))?$")


class ProviderConfig(BaseModel):
    """Provider configuration"""

    model_config = ConfigDict(validate_default=True)

    endpoint: str = Field(default_factory=lambda: os.getenv("MYSQL_ENDPOINT", ""))
    username: str = Field(default_factory=lambda: os.getenv("MYSQL_USERNAME", ""))
    password: str = Field(default_factory=lambda: os.getenv("MYSQL_PASSWORD", ""), repr=False)
    proxy: Optional[str] = None
    tls: TLSMode = Field(default_factory=lambda: os.getenv("MYSQL_TLS_CONFIG", "false"))
    max_conn_lifetime_sec: int = Field(default=0, ge=0)
    max_open_conns: int = Field(default=0, ge=0)
    authentication_plugin: AuthMode = AuthMode.NATIVE
    aad_auth: Optional[AADCredentials] = None
    connect_retry_timeout_sec: int = Field(default=300, ge=0)

    @field_validator("endpoint", mode="before")
    @classmethod
    def resolve_endpoint(cls, v: str) -> str:
        """Resolve endpoint from environment variable if specified as ${VAR_NAME}"""
        v = resolve_env_variable(v, "provider.endpoint")
        if not v:
            raise ValueError("endpoint must not be an empty string")
        return v

    @field_validator("username", mode="before")
    @classmethod
    def resolve_username(cls, v: str) -> str:
        """Resolve username from environment variable if specified as ${VAR_NAME}"""
        v = resolve_env_variable(v, "provider.username")
        if not v:
            raise ValueError("username is required")
        return v

    @field_validator("password", mode="before")
    @classmethod
    def resolve_password(cls, v: Optional[str]) -> str:
        """Resolve password from ${VAR_NAME} or a keyvault:// reference"""
        if v is None:
            return ""
        return resolve_secret(v, "provider.password")

    @field_validator("proxy")
    @classmethod
    def validate_proxy(cls, v: Optional[str]) -> Optional[str]:
        if v:
            parse_proxy_url(v)
        return v or None

    @field_validator("tls", mode="before")
    @classmethod
    def normalize_tls(cls, v: Any) -> Any:
        # YAML reads bare true/false as booleans
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("authentication_plugin", mode="before")
    @classmethod
    def normalize_authentication_plugin(cls, v: Any) -> AuthMode:
        return AuthMode.parse(v)


class DatabaseConfig(BaseModel):
    """Database configuration"""

    name: str = Field(min_length=1)
    default_character_set: str = "utf8mb4"
    default_collation: str = "utf8mb4_general_ci"


class UserConfig(BaseModel):
    """User configuration"""

    user: str = Field(min_length=1)
    host: str = "localhost"
    plaintext_password: Optional[str] = Field(default=None, repr=False)
    auth_plugin: Optional[str] = None

    @field_validator("plaintext_password", mode="before")
    @classmethod
    def resolve_password(cls, v: Optional[str]) -> Optional[str]:
        """Resolve password from ${VAR_NAME} or a keyvault:// reference"""
        if v is None:
            return v
        return resolve_secret(v, "user.plaintext_password")

    @field_validator("auth_plugin")
    @classmethod
    def validate_auth_plugin(cls, v: Optional[str]) -> Optional[str]:
        if v and not PLUGIN_NAME_PATTERN.match(v):
            raise ValueError(f"invalid auth_plugin '{v}'")
        return v or None


class UserPasswordConfig(BaseModel):
    """Generated password for an existing user"""

    user: str = Field(min_length=1)
    host: str = "localhost"


class RoleConfig(BaseModel):
    """Role configuration"""

    name: str = Field(min_length=1)


class GrantConfig(BaseModel):
    """Privileges or roles granted to a user or role"""

    user: Optional[str] = None
    host: str = "localhost"
    role: Optional[str] = None
    database: str = Field(min_length=1)
    table: str = "*"
    privileges: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    grant_option: bool = False

    @field_validator("privileges")
    @classmethod
    def normalize_privileges(cls, v: List[str]) -> List[str]:
        privileges = set()
        for privilege in v:
            privilege = " ".join(privilege.upper().split())
            if not PRIVILEGE_PATTERN.match(privilege):
                raise ValueError(f"invalid privilege '{privilege}'")
            # SHOW GRANTS reports the long form
            privileges.add("ALL PRIVILEGES" if privilege == "ALL" else privilege)
        return sorted(privileges)

    @field_validator("roles")
    @classmethod
    def normalize_roles(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @model_validator(mode="after")
    def check_grantee(self) -> "GrantConfig":
        if bool(self.user) == bool(self.role):
            raise ValueError("exactly one of 'user' or 'role' must be set")
        if bool(self.privileges) == bool(self.roles):
            raise ValueError("exactly one of 'privileges' or 'roles' must be set")
        return self


class SQLStatementConfig(BaseModel):
    """Raw SQL run on create and on delete"""

    name: str = Field(min_length=1)
    create_sql: str = Field(min_length=1)
    delete_sql: str = Field(min_length=1)


class SQLConfig(BaseModel):
    """Complete configuration schema"""

    provider: ProviderConfig
    databases: List[DatabaseConfig] = Field(default_factory=list)
    roles: List[RoleConfig] = Field(default_factory=list)
    users: List[UserConfig] = Field(default_factory=list)
    user_passwords: List[UserPasswordConfig] = Field(default_factory=list)
    grants: List[GrantConfig] = Field(default_factory=list)
    sql: List[SQLStatementConfig] = Field(default_factory=list)


class ResourceState(BaseModel):
    """Observed state of one declared resource"""

    kind: str
    id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    sensitive: List[str] = Field(default_factory=list)

    def redacted(self) -> Dict[str, Any]:
        return {
            key: "(sensitive)" if key in self.sensitive else value
            for key, value in self.attributes.items()
        }


class BaseResource(ABC):
    """Abstract base class for resource handlers"""

    kind: str = ""
    # False when the server cannot report the state back after creation
    observable: bool = True

    def __init__(self, provider: "Provider", cancel: Optional[threading.Event] = None):
        self.provider = provider
        self.cancel = cancel

    def connection(self) -> Database:
        return self.provider.get_connection(self.cancel)

    @abstractmethod
    def resource_id(self, spec: BaseModel) -> str:
        """Identifier of the resource described by ``spec``"""
        pass

    @abstractmethod
    def create(self, spec: BaseModel) -> ResourceState:
        """Create the resource"""
        pass

    @abstractmethod
    def read(self, state: ResourceState) -> Optional[ResourceState]:
        """Read the resource; None when it does not exist"""
        pass

    def update(self, spec: BaseModel, state: ResourceState) -> ResourceState:
        """Bring an existing resource in line with ``spec``"""
        self.delete(state)
        return self.create(spec)

    @abstractmethod
    def delete(self, state: ResourceState) -> None:
        """Delete the resource"""
        pass

    def state_for(self, spec: BaseModel) -> ResourceState:
        return ResourceState(kind=self.kind, id=self.resource_id(spec), attributes=spec.model_dump())

    def has_drifted(self, spec: BaseModel, current: ResourceState) -> bool:
        desired = spec.model_dump()
        return any(
            desired.get(key) != value
            for key, value in current.attributes.items()
            if key in desired and key not in current.sensitive
        )

    def apply(self, spec: BaseModel) -> ResourceState:
        """Create the resource if it does not exist, update it if it drifted"""
        if not self.observable:
            return self.create(spec)

        current = self.read(self.state_for(spec))
        if current is None:
            return self.create(spec)
        if self.has_drifted(spec, current):
            logger.info(f"{self.kind} '{current.id}' has drifted, updating")
            return self.update(spec, current)
        logger.info(f"{self.kind} '{current.id}' is up to date")
        return current

    def execute(self, sql: str, params=None) -> int:
        logger.debug(f"Executing statement: {redact_statement(sql)}")
        try:
            return self.connection().execute(sql, params)
        except SQLAlchemyError as e:
            raise ServerOperationError(
                f"{self.kind}: statement failed: {redact_statement(sql)}: {driver_error(e)}"
            ) from e

    def query(self, sql: str, params=None) -> list:
        try:
            return self.connection().query(sql, params)
        except SQLAlchemyError as e:
            raise ServerOperationError(f"{self.kind}: query failed: {driver_error(e)}") from e


def driver_error(error: SQLAlchemyError) -> BaseException:
    # the wrapped driver error, without the statement text SQLAlchemy appends
    return getattr(error, "orig", None) or error
