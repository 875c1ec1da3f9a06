"""Resolution of the credentials presented to the MySQL server."""

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mysqlprovider.azure.identity import AAD_DATABASE_SCOPE, AzureTokenExchanger, TokenExchanger
from mysqlprovider.azure.secrets import resolve_secret
from mysqlprovider.utils import logger
from mysqlprovider.errors import ConfigurationError


class AuthMode(str, Enum):
    """Password exchange the driver is allowed to answer."""

    CLEARTEXT = "cleartext"
    NATIVE = "native"
    AAD_AUTH = "aad_auth"

    @classmethod
    def parse(cls, value: str) -> "AuthMode":
        if isinstance(value, AuthMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(mode.value for mode in cls)
            raise ConfigurationError(
                f"Unknown authentication_plugin '{value}', expected one of: {allowed}"
            ) from None


class AADCredentials(BaseModel):
    """Service principal used for Azure AD authentication"""

    client_id: Optional[str] = None
    client_secret: Optional[str] = Field(default=None, repr=False)
    tenant_id: Optional[str] = None

    @field_validator("client_secret", mode="before")
    @classmethod
    def resolve_client_secret(cls, v: Optional[str]) -> Optional[str]:
        """Resolve the client secret from ${VAR_NAME} or a Key Vault reference"""
        if v is None:
            return v
        return resolve_secret(v, "aad_auth.client_secret")


class ResolvedCredentials(BaseModel):
    """Username, secret and password exchange to use on the wire"""

    model_config = ConfigDict(frozen=True)

    username: str
    password: str
    auth_mode: AuthMode

    def __repr__(self) -> str:
        return (
            f"ResolvedCredentials(username={self.username!r}, "
            f"password='***', auth_mode={self.auth_mode.value!r})"
        )


def _require_uuid(value: Optional[str], field_name: str) -> str:
    if not value:
        raise ConfigurationError(
            f"{field_name} is not set and is required when authentication_plugin is aad_auth"
        )
    try:
        uuid.UUID(value)
    except ValueError:
        raise ConfigurationError(f"{field_name} must be a UUID, got {value!r}") from None
    return value


def resolve_credentials(
    mode: str,
    username: str,
    password: str = "",
    aad: Optional[AADCredentials] = None,
    exchanger: Optional[TokenExchanger] = None,
) -> ResolvedCredentials:
    """
    Resolve what the provider sends to the server.

    ``cleartext`` and ``native`` pass username and password through. ``aad_auth``
    exchanges the service principal for an Azure AD token once; the token
    becomes the password and is sent with the cleartext plugin.

    Raises:
        ConfigurationError: Unknown mode or incomplete AAD credentials
        CredentialExchangeError: Azure AD did not issue a token
    """
    auth_mode = AuthMode.parse(mode)
    password = password or ""

    if auth_mode is not AuthMode.AAD_AUTH:
        return ResolvedCredentials(username=username, password=password, auth_mode=auth_mode)

    if aad is None:
        raise ConfigurationError(
            "aad_auth.client_id is not set and is required when authentication_plugin is aad_auth"
        )
    client_id = _require_uuid(aad.client_id, "aad_auth.client_id")
    tenant_id = _require_uuid(aad.tenant_id, "aad_auth.tenant_id")
    # the provider password doubles as the client secret when none is given
    client_secret = aad.client_secret or password
    if not client_secret:
        raise ConfigurationError(
            "aad_auth.client_secret is not set and is required when authentication_plugin is aad_auth"
        )

    exchanger = exchanger or AzureTokenExchanger()
    token = exchanger.exchange(client_id, client_secret, tenant_id, AAD_DATABASE_SCOPE)
    logger.info(f"Obtained AAD token for '{username}'")

    return ResolvedCredentials(username=username, password=token, auth_mode=AuthMode.CLEARTEXT)
