"""Startup-time config logging with secret redaction."""

from pydantic_settings import BaseSettings

from storymint.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn", "redis_url")


def redacted_settings(config: BaseSettings, fields: list[str] | None = None) -> dict:
    """Return the chosen settings fields with secret-like values masked."""

    values = config.model_dump()
    if fields is not None:
        values = {name: values[name] for name in fields}
    return {
        name: "<redacted>" if any(marker in name.lower() for marker in SECRET_MARKERS) and value else value
        for name, value in values.items()
    }


def log_startup_config(config: BaseSettings, fields: list[str] | None = None) -> None:
    """Log the effective configuration once at process start."""

    logger.info("startup_config=%s", redacted_settings(config, fields))
