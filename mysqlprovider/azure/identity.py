"""Azure AD token exchange for Azure Database for MySQL."""

from typing import Protocol

from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential

from mysqlprovider.errors import CredentialExchangeError
from mysqlprovider.utils import logger

# Scope Azure Database for MySQL accepts for AAD authentication
AAD_DATABASE_SCOPE = "https://ossrdbms-aad.database.windows.net/.default"


class TokenExchanger(Protocol):
    """Exchanges client credentials for a bearer token."""

    def exchange(
        self, client_id: str, client_secret: str, tenant_id: str, audience: str
    ) -> str:
        ...


class AzureTokenExchanger:
    """Client-credentials flow backed by azure-identity."""

    def exchange(
        self, client_id: str, client_secret: str, tenant_id: str, audience: str
    ) -> str:
        """
        Request an access token for ``audience`` as the given service principal.

        Args:
            client_id: Application (client) ID of the service principal
            client_secret: Client secret of the service principal
            tenant_id: Directory (tenant) ID
            audience: Scope the token is requested for

        Returns:
            The bearer token

        Raises:
            CredentialExchangeError: If Azure AD does not issue a token
        """
        logger.debug(f"Requesting AAD token for client {client_id} in tenant {tenant_id}")
        try:
            credential = ClientSecretCredential(
                tenant_id=tenant_id,
                client_id=client_id,
                client_secret=client_secret,
            )
        except ValueError as e:
            raise CredentialExchangeError(f"Invalid AAD client credentials: {e}") from e

        try:
            access_token = credential.get_token(audience)
        except (AzureError, ValueError) as e:
            raise CredentialExchangeError(f"Failed to obtain AAD token: {e}") from e
        finally:
            credential.close()

        return access_token.token
