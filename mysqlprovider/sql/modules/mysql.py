import re
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Type

import yaml
from packaging.version import Version
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from mysqlprovider.errors import ServerOperationError
from mysqlprovider.utils import logger
from .base import (
    BaseResource,
    DatabaseConfig,
    GrantConfig,
    ResourceState,
    RoleConfig,
    SQLConfig,
    SQLStatementConfig,
    UserConfig,
    UserPasswordConfig,
    driver_error,
)
from .dialect import (
    ROLES_MINIMUM_VERSION,
    Dialect,
    quote_account,
    quote_identifier,
    quote_literal,
    require_version,
)
from .provider import Provider, configure

ER_NONEXISTING_GRANT = 1141
_GRANT_ON = re.compile(r"^GRANT (?P<privileges>.+?) ON (?P<target>\S+) TO ", re.IGNORECASE)
_ROLE_GRANT = re.compile(r"^GRANT (?P<roles>.+?) TO ", re.IGNORECASE)
_ACCOUNT = re.compile(r"`((?:[^`]|``)+)`@`(?:[^`]|``)*`")


def _error_code(error: SQLAlchemyError) -> Optional[int]:
    args = getattr(getattr(error, "orig", None), "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def _split_privileges(text: str) -> List[str]:
    """Split a SHOW GRANTS privilege list, keeping column lists together."""
    privileges, depth, current = [], 0, ""
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            privileges.append(current.strip())
            current = ""
        else:
            current += char
    if current.strip():
        privileges.append(current.strip())
    return privileges


class DatabaseResource(BaseResource):
    """MySQL database (schema)"""

    kind = "database"

    def resource_id(self, spec: DatabaseConfig) -> str:
        return spec.name

    @staticmethod
    def _options(spec: DatabaseConfig) -> str:
        return (
            f"DEFAULT CHARACTER SET {quote_literal(spec.default_character_set)} "
            f"DEFAULT COLLATE {quote_literal(spec.default_collation)}"
        )

    def create(self, spec: DatabaseConfig) -> ResourceState:
        self.execute(f"CREATE DATABASE {quote_identifier(spec.name)} {self._options(spec)}")
        logger.info(f"Created database '{spec.name}'")
        return self.state_for(spec)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        rows = self.query(
            "SELECT DEFAULT_CHARACTER_SET_NAME, DEFAULT_COLLATION_NAME "
            "FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = %s",
            (state.id,),
        )
        if not rows:
            return None
        charset, collation = rows[0]
        return ResourceState(
            kind=self.kind,
            id=state.id,
            attributes={
                "name": state.id,
                "default_character_set": charset,
                "default_collation": collation,
            },
        )

    def update(self, spec: DatabaseConfig, state: ResourceState) -> ResourceState:
        self.execute(f"ALTER DATABASE {quote_identifier(spec.name)} {self._options(spec)}")
        logger.info(f"Altered database '{spec.name}'")
        return self.state_for(spec)

    def delete(self, state: ResourceState) -> None:
        self.execute(f"DROP DATABASE {quote_identifier(state.id)}")
        logger.info(f"Dropped database '{state.id}'")


class UserResource(BaseResource):
    """MySQL user account"""

    kind = "user"

    def resource_id(self, spec: UserConfig) -> str:
        return f"{spec.user}@{spec.host}"

    @staticmethod
    def _identified(spec: UserConfig) -> str:
        if spec.auth_plugin:
            clause = f" IDENTIFIED WITH {spec.auth_plugin}"
            if spec.plaintext_password:
                clause += f" BY {quote_literal(spec.plaintext_password)}"
            return clause
        if spec.plaintext_password:
            return f" IDENTIFIED BY {quote_literal(spec.plaintext_password)}"
        return ""

    def state_for(self, spec: UserConfig) -> ResourceState:
        state = super().state_for(spec)
        state.sensitive = ["plaintext_password"]
        return state

    def create(self, spec: UserConfig) -> ResourceState:
        account = quote_account(spec.user, spec.host)
        self.execute(f"CREATE USER {account}{self._identified(spec)}")
        logger.info(f"Created user '{self.resource_id(spec)}'")
        return self.state_for(spec)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        user, host = state.attributes["user"], state.attributes["host"]
        rows = self.query(
            "SELECT User, Host, plugin FROM mysql.user WHERE User = %s AND Host = %s",
            (user, host),
        )
        if not rows:
            return None
        attributes = {"user": rows[0][0], "host": rows[0][1]}
        if state.attributes.get("auth_plugin"):
            attributes["auth_plugin"] = rows[0][2]
        return ResourceState(kind=self.kind, id=state.id, attributes=attributes)

    def has_drifted(self, spec: UserConfig, current: ResourceState) -> bool:
        # passwords cannot be read back, so a configured one is always reapplied
        return bool(spec.plaintext_password) or super().has_drifted(spec, current)

    def update(self, spec: UserConfig, state: ResourceState) -> ResourceState:
        account = quote_account(spec.user, spec.host)
        if spec.auth_plugin:
            if self.provider.dialect(self.cancel) is Dialect.LEGACY:
                raise ServerOperationError(
                    f"user '{state.id}': changing auth_plugin requires MySQL 5.7.6 or newer"
                )
            self.execute(f"ALTER USER {account}{self._identified(spec)}")
        elif spec.plaintext_password:
            dialect = self.provider.dialect(self.cancel)
            self.execute(dialect.set_password_sql(spec.user, spec.host, spec.plaintext_password))
        logger.info(f"Updated user '{state.id}'")
        return self.state_for(spec)

    def delete(self, state: ResourceState) -> None:
        account = quote_account(state.attributes["user"], state.attributes["host"])
        self.execute(f"DROP USER {account}")
        logger.info(f"Dropped user '{state.id}'")


class UserPasswordResource(BaseResource):
    """Random password generated for an existing user, replaced on every execute"""

    kind = "user_password"
    observable = False

    def resource_id(self, spec: UserPasswordConfig) -> str:
        return f"{spec.user}@{spec.host}"

    def create(self, spec: UserPasswordConfig) -> ResourceState:
        password = str(uuid.uuid4())

        # ALTER USER syntax introduced in MySQL 5.7.6 deprecates SET PASSWORD
        dialect = self.provider.dialect(self.cancel)
        self.execute(dialect.set_password_sql(spec.user, spec.host, password))
        logger.info(f"Set generated password for '{self.resource_id(spec)}'")

        return ResourceState(
            kind=self.kind,
            id=self.resource_id(spec),
            attributes={"user": spec.user, "host": spec.host, "password": password},
            sensitive=["password"],
        )

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        # a password cannot be read back from the server
        return state

    def delete(self, state: ResourceState) -> None:
        # nothing to undo on the server
        logger.debug(f"Forgetting generated password for '{state.id}'")


class RoleResource(BaseResource):
    """MySQL 8 role"""

    kind = "role"

    def resource_id(self, spec: RoleConfig) -> str:
        return spec.name

    def create(self, spec: RoleConfig) -> ResourceState:
        require_version(self.connection(), ROLES_MINIMUM_VERSION, "roles")
        self.execute(f"CREATE ROLE {quote_identifier(spec.name)}")
        logger.info(f"Created role '{spec.name}'")
        return self.state_for(spec)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        rows = self.query(
            "SELECT User FROM mysql.user WHERE User = %s AND Host = %s",
            (state.id, "%"),
        )
        if not rows:
            return None
        return ResourceState(kind=self.kind, id=state.id, attributes={"name": state.id})

    def update(self, spec: RoleConfig, state: ResourceState) -> ResourceState:
        # a role has no attributes besides its name
        return state

    def delete(self, state: ResourceState) -> None:
        self.execute(f"DROP ROLE {quote_identifier(state.id)}")
        logger.info(f"Dropped role '{state.id}'")


class GrantResource(BaseResource):
    """Privileges or roles granted to a user or role"""

    kind = "grant"

    @staticmethod
    def _grantee(attributes: dict) -> str:
        if attributes.get("role"):
            return quote_identifier(attributes["role"])
        return quote_account(attributes["user"], attributes["host"])

    @staticmethod
    def _target(attributes: dict) -> str:
        database, table = attributes["database"], attributes.get("table") or "*"
        database = database if database == "*" else quote_identifier(database)
        table = table if table == "*" else quote_identifier(table)
        return f"{database}.{table}"

    def resource_id(self, spec: GrantConfig) -> str:
        grantee = spec.role or f"{spec.user}@{spec.host}"
        return f"{grantee}:{spec.database}.{spec.table}"

    def create(self, spec: GrantConfig) -> ResourceState:
        attributes = spec.model_dump()
        grantee = self._grantee(attributes)
        if spec.roles:
            require_version(self.connection(), ROLES_MINIMUM_VERSION, "roles")
            roles = ", ".join(quote_identifier(role) for role in spec.roles)
            self.execute(f"GRANT {roles} TO {grantee}")
        else:
            statement = f"GRANT {', '.join(spec.privileges)} ON {self._target(attributes)} TO {grantee}"
            if spec.grant_option:
                statement += " WITH GRANT OPTION"
            self.execute(statement)
        logger.info(f"Granted on '{self.resource_id(spec)}'")
        return self.state_for(spec)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        attributes = state.attributes
        try:
            rows = self.connection().query(f"SHOW GRANTS FOR {self._grantee(attributes)}")
        except SQLAlchemyError as e:
            if _error_code(e) == ER_NONEXISTING_GRANT:
                return None
            raise ServerOperationError(
                f"{self.kind}: could not read grants for '{state.id}': {driver_error(e)}"
            ) from e

        target = self._target(attributes)
        privileges, roles, grant_option = set(), set(), False
        for (line,) in rows:
            on_match = _GRANT_ON.match(line)
            if on_match:
                if on_match.group("target") == target:
                    privileges.update(_split_privileges(on_match.group("privileges")))
                    grant_option = grant_option or "WITH GRANT OPTION" in line.upper()
                continue
            role_match = _ROLE_GRANT.match(line)
            if role_match:
                roles.update(
                    name.replace("``", "`") for name in _ACCOUNT.findall(role_match.group("roles"))
                )

        privileges.discard("USAGE")
        if attributes.get("roles"):
            granted_roles = sorted(set(attributes["roles"]) & roles)
            if not granted_roles:
                return None
            observed = dict(attributes, roles=granted_roles)
        else:
            if not privileges:
                return None
            observed = dict(attributes, privileges=sorted(privileges), grant_option=grant_option)
        return ResourceState(kind=self.kind, id=state.id, attributes=observed)

    def delete(self, state: ResourceState) -> None:
        attributes = state.attributes
        grantee = self._grantee(attributes)
        if attributes.get("roles"):
            roles = ", ".join(quote_identifier(role) for role in attributes["roles"])
            self.execute(f"REVOKE {roles} FROM {grantee}")
        else:
            target = self._target(attributes)
            self.execute(f"REVOKE {', '.join(attributes['privileges'])} ON {target} FROM {grantee}")
            if attributes.get("grant_option"):
                self.execute(f"REVOKE GRANT OPTION ON {target} FROM {grantee}")
        logger.info(f"Revoked '{state.id}'")


class SQLResource(BaseResource):
    """Raw statements run on create and delete"""

    kind = "sql"
    observable = False

    def resource_id(self, spec: SQLStatementConfig) -> str:
        return spec.name

    def create(self, spec: SQLStatementConfig) -> ResourceState:
        self.execute(spec.create_sql)
        logger.info(f"Executed create_sql of '{spec.name}'")
        return self.state_for(spec)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        # the effect of arbitrary SQL cannot be observed
        return state

    def delete(self, state: ResourceState) -> None:
        self.execute(state.attributes["delete_sql"])
        logger.info(f"Executed delete_sql of '{state.id}'")


# Applied in this order; destroyed in reverse
STAGES: Tuple[Tuple[str, Type[BaseResource]], ...] = (
    ("databases", DatabaseResource),
    ("roles", RoleResource),
    ("users", UserResource),
    ("user_passwords", UserPasswordResource),
    ("grants", GrantResource),
    ("sql", SQLResource),
)


class ResourceResult(BaseModel):
    """Outcome of one resource operation"""

    kind: str
    id: str
    state: Optional[ResourceState] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MySQLProvider:
    """Applies a declarative configuration to a MySQL server"""

    def __init__(self, config: SQLConfig, parallelism: int = 4, **configure_options):
        self.config = config
        self.parallelism = max(1, parallelism)
        self.cancel = threading.Event()
        self._configure_options = configure_options
        self._provider: Optional[Provider] = None

    @property
    def provider(self) -> Provider:
        if self._provider is None:
            self.connect()
        return self._provider

    def connect(self) -> None:
        """Configure the provider; the server is contacted on first use"""
        if self._provider is None:
            self._provider = configure(self.config.provider, **self._configure_options)

    def disconnect(self) -> None:
        if self._provider is not None:
            self._provider.close()
            self._provider = None

    def ping(self) -> Tuple[Version, Dialect]:
        """Establish the connection and report the server version and dialect"""
        database = self.provider.get_connection(self.cancel)
        return database.server_version(), self.provider.dialect(self.cancel)

    def execute(self) -> List[ResourceResult]:
        """Create or update every declared resource"""
        logger.info("Starting MySQL Configuration")
        results = self._run(STAGES, lambda handler, spec: handler.apply(spec))
        logger.info("MySQL Configuration Complete")
        return results

    def destroy(self) -> List[ResourceResult]:
        """Delete every declared resource"""
        logger.info("Destroying MySQL Configuration")
        results = self._run(tuple(reversed(STAGES)), self._destroy_one)
        logger.info("MySQL Configuration Destroyed")
        return results

    @staticmethod
    def _destroy_one(handler: BaseResource, spec: BaseModel) -> Optional[ResourceState]:
        state = handler.state_for(spec)
        if handler.observable:
            current = handler.read(state)
            if current is None:
                logger.info(f"{handler.kind} '{state.id}' does not exist")
                return None
            state = current
        handler.delete(state)
        return None

    def _run(
        self,
        stages: Tuple[Tuple[str, Type[BaseResource]], ...],
        action: Callable[[BaseResource, BaseModel], Optional[ResourceState]],
    ) -> List[ResourceResult]:
        results: List[ResourceResult] = []
        for stage, handler_class in stages:
            specs = getattr(self.config, stage)
            if not specs:
                continue
            if self.cancel.is_set():
                logger.warning(f"Cancelled, skipping {stage}")
                break
            logger.info(f"Processing {stage}")
            handler = handler_class(self.provider, self.cancel)
            with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
                futures = [(spec, pool.submit(action, handler, spec)) for spec in specs]
                try:
                    for spec, future in futures:
                        results.append(self._result(handler, spec, future))
                except KeyboardInterrupt:
                    # unblock workers waiting on the connection before the pool joins them
                    self.cancel.set()
                    raise
        return results

    @staticmethod
    def _result(handler: BaseResource, spec: BaseModel, future) -> ResourceResult:
        resource_id = handler.resource_id(spec)
        try:
            state = future.result()
        except Exception as e:
            logger.error(f"{handler.kind} '{resource_id}' failed: {e}")
            return ResourceResult(kind=handler.kind, id=resource_id, error=str(e))
        return ResourceResult(kind=handler.kind, id=resource_id, state=state)

    def __enter__(self):
        """Context manager entry"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.disconnect()


class MySQLBuilder:
    """Builder pattern for MySQL provider"""

    def __init__(self):
        self._config: Optional[SQLConfig] = None

    def from_dict(self, config_dict: dict) -> "MySQLBuilder":
        """Build from dictionary"""
        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ValueError(
                f"Configuration must be a mapping, got {type(config_dict).__name__}"
            )
        self._config = SQLConfig(**config_dict)
        return self

    def from_yaml(self, yaml_path: str | Path) -> "MySQLBuilder":
        """Build from YAML file"""
        path = Path(yaml_path)

        if not path.exists():
            raise FileNotFoundError(f"YAML file not found: {yaml_path}")

        with open(path, "r") as f:
            config_dict = yaml.safe_load(f)

        return self.from_dict(config_dict)

    def from_yaml_string(self, yaml_string: str) -> "MySQLBuilder":
        """Build from YAML string"""
        config_dict = yaml.safe_load(yaml_string)
        return self.from_dict(config_dict)

    def build(self, **options) -> MySQLProvider:
        """Build the MySQL provider"""
        if self._config is None:
            raise ValueError(
                "Configuration not set. Use from_dict(), from_yaml(), or from_yaml_string() first."
            )

        return MySQLProvider(self._config, **options)
