import logging

from .settings import config_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configures the root logger once for the process."""
    logging.basicConfig(
        level=(level or config_settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
