"""Log the effective settings once at boot, with credentials masked."""

from urllib.parse import urlsplit, urlunsplit

from paystream.common.config import CommonSettings
from paystream.common.logging import logger


_URL_FIELDS = ("postgres_dsn", "redis_url")


def _mask_credentials(url: str) -> str:
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = f"{parts.username}:***@{parts.hostname}"
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit(parts._replace(netloc=netloc))


def effective_config(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Selected settings as printable strings; URL passwords become `***`."""

    values = {}
    for field in fields:
        value = str(getattr(config, field))
        values[field] = _mask_credentials(value) if field in _URL_FIELDS else value
    return values


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    logger.info("startup_config service=%s config=%s", config.service_name, effective_config(config, fields))
