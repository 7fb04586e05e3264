"""Entry points for embedding the chat core in an application.

    configure_logging(config.logging.level)
    context = create_context()
"""
import logging
from pathlib import Path
from typing import Optional

from photochat.auth.storage import CredentialStore, FileCredentialStore
from photochat.config import load_config
from photochat.context import ChatContext

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Connection-level chatter from these is not useful when debugging chat logic.
_NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
)

logger = logging.getLogger(__name__)


def configure_logging(level: str = "info") -> None:
    """Set up root logging and quieten third-party loggers."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    configured_level = getattr(logging, level.upper(), None)
    if isinstance(configured_level, int):
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", level.upper())
    else:
        logger.warning("Unknown log level %r; keeping INFO", level)


def create_context(
    settings_path: Optional[Path] = None,
    *,
    store: Optional[CredentialStore] = None,
) -> ChatContext:
    """Build a ChatContext from the settings file.

    The credential store defaults to the JSON file named by
    ``storage.credentials_path``.
    """
    config = load_config(settings_path)
    if store is None:
        store = FileCredentialStore(Path(config.storage.credentials_path))
    return ChatContext(config, store)
