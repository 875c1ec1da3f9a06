"""Azure Key Vault secret references in provider configuration."""

from typing import Optional, Tuple

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from pydantic import BaseModel

from mysqlprovider.utils import resolve_env_variable

KEYVAULT_SCHEME = "keyvault://"


class Secret(BaseModel):
    """Secret model."""

    name: str
    value: str
    id: Optional[str] = None
    content_type: Optional[str] = None


def get_secret_client(vault_name: str) -> SecretClient:
    """Get Key Vault client."""
    vault_url = f"https://{vault_name}.vault.azure.net/"
    credential = DefaultAzureCredential()
    return SecretClient(vault_url=vault_url, credential=credential)


def get_secret(vault_name: str, name: str) -> Secret:
    """
    Get a specific secret by name.

    Args:
        vault_name: Name of the Key Vault
        name: Secret name

    Returns:
        Secret object
    """
    client = get_secret_client(vault_name)

    secret_bundle = client.get_secret(name)

    return Secret(
        name=secret_bundle.name,
        value=secret_bundle.value,
        id=secret_bundle.id,
        content_type=secret_bundle.properties.content_type,
    )


def parse_secret_reference(value: str) -> Optional[Tuple[str, str]]:
    """Split ``keyvault://<vault>/<secret>`` into vault and secret name."""
    if not isinstance(value, str) or not value.startswith(KEYVAULT_SCHEME):
        return None
    vault, _, name = value[len(KEYVAULT_SCHEME):].partition("/")
    if not vault or not name or "/" in name:
        raise ValueError(
            f"Invalid Key Vault reference '{value}', expected keyvault://<vault>/<secret>"
        )
    return vault, name


def resolve_secret(value: str, field_name: str = "field") -> str:
    """
    Resolve a secret value from configuration.

    ``${VAR_NAME}`` is read from the environment and ``keyvault://vault/name``
    from Azure Key Vault; anything else is returned unchanged.

    Raises:
        ValueError: If the reference cannot be resolved
    """
    value = resolve_env_variable(value, field_name)
    reference = parse_secret_reference(value)
    if reference is None:
        return value

    vault_name, name = reference
    try:
        return get_secret(vault_name, name).value
    except AzureError as e:
        raise ValueError(
            f"Could not read secret '{name}' from Key Vault '{vault_name}' for {field_name}: {e}"
        ) from e
