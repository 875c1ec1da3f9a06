import logging
import os
import re
from rich.logging import RichHandler

def _logger(flag: str = "", format: str = ""):
    if format == "" or format is None:
        format = "%(levelname)s|%(name)s| %(message)s"

    logger = logging.getLogger("mysqlprovider")

    if os.environ.get(flag) is not None:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(log_time_format="")
        logger.addHandler(handler)
    return logger


# export LOG_LEVEL=true
logger = _logger("LOG_LEVEL")

_PASSWORD_CLAUSE = re.compile(
    r"(IDENTIFIED\s+(?:WITH\s+\S+\s+)?BY\s+|PASSWORD\s*\(\s*)'(?:[^'\\]|\\.|'')*'",
    re.IGNORECASE,
)


def redact_statement(statement: str) -> str:
    """Mask password literals before a statement reaches the log."""
    return _PASSWORD_CLAUSE.sub(lambda m: f"{m.group(1)}'<redacted>'", statement)


def resolve_env_variable(value: str, field_name: str = "field") -> str:
    """
    Resolve an environment variable reference.

    A value of the form ${VAR_NAME} is replaced with the value of the
    environment variable VAR_NAME. Any other value is returned unchanged.

    Raises:
        ValueError: If the referenced environment variable is not set

    Example:
        >>> os.environ['MYSQL_PASSWORD'] = 'secret123'
        >>> resolve_env_variable('${MYSQL_PASSWORD}')
        'secret123'
        >>> resolve_env_variable('plaintext')
        'plaintext'
    """
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        env_value = os.getenv(env_var)
        if env_value is None:
            raise ValueError(
                f"Environment variable '{env_var}' for {field_name} is not set"
            )
        return env_value
    return value


__all__ = ["logger", "redact_statement", "resolve_env_variable"]
