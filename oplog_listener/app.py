"""
Application entry point: builds a listener from environment settings and runs it
until a shutdown signal or a fatal error.
"""

from typing import Optional
import logging
import signal
import sys

from config.settings import get_settings

from .config import ListenerConfig
from .listener import Listener
from .utils.logging import configure_logging

logger = logging.getLogger(__name__)


class ListenerApp:
    """
    Owns a running listener and the process signal handlers around it.

    Example:
        >>> app = ListenerApp()
        >>> app.start(ListenerConfig.from_settings(get_settings()))
        >>> app.run_forever()
    """

    def __init__(self):
        self.listener: Optional[Listener] = None
        self._original_sigterm = None
        self._original_sigint = None

    def start(self, config: ListenerConfig, **listener_kwargs) -> Listener:
        """Create and start a listener tagged with the application version."""
        from . import app_version

        self.listener = Listener(config, **listener_kwargs)
        self.listener.app_version = app_version
        logger.info(
            f"starting oplog listener v{app_version} for {config.mongo.namespace}",
            extra={"namespace": config.mongo.namespace, "app_version": app_version}
        )
        self.listener.start()
        return self.listener

    def stop(self) -> None:
        if self.listener is not None:
            self.listener.stop()

    def _setup_signal_handlers(self) -> None:
        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)

    def run_forever(self) -> int:
        """
        Block until the listener stops.

        Returns:
            Process exit code: 1 after a fatal entire-collection failure, else 0
        """
        if self.listener is None:
            raise RuntimeError("ListenerApp.start must be called first")

        self._setup_signal_handlers()
        try:
            # Short waits keep the main thread responsive to signals
            while not self.listener.wait(1.0):
                pass
        finally:
            self._restore_signal_handlers()
        return 1 if self.listener.fatal_error is not None else 0


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)

    app = ListenerApp()
    app.start(ListenerConfig.from_settings(settings))
    sys.exit(app.run_forever())


if __name__ == "__main__":
    main()
