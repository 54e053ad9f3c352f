"""Signal handling while the builder VM runs."""

import logging
import signal
from typing import Callable, Set

logger = logging.getLogger(__name__)


class SignalManager:
    """Routes SIGINT/SIGTERM to registered shutdown handlers."""

    def __init__(self):
        self._handlers: Set[Callable[[], None]] = set()
        self._original_handlers = {}
        self._signals_setup = False
        self._shutdown_requested = False

    def add_shutdown_handler(self, handler: Callable[[], None]):
        """Add a shutdown handler to be called on signal.

        Args:
            handler: Callable to be executed during shutdown
        """
        self._handlers.add(handler)

    def remove_shutdown_handler(self, handler: Callable[[], None]):
        """Remove a shutdown handler.

        Args:
            handler: Callable to be removed from shutdown handlers
        """
        self._handlers.discard(handler)

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown")
        self._shutdown_requested = True

        for handler in list(self._handlers):
            try:
                handler()
            except Exception as e:
                logger.error(f"Error in shutdown handler: {e}")

    def setup_signal_handlers(self):
        """Setup signal handlers once."""
        if self._signals_setup:
            logger.debug("Signal handlers already setup")
            return

        # Store original handlers for cleanup
        self._original_handlers[signal.SIGTERM] = signal.signal(signal.SIGTERM, self._handle_signal)
        self._original_handlers[signal.SIGINT] = signal.signal(signal.SIGINT, self._handle_signal)

        self._signals_setup = True
        logger.debug("Signal handlers setup complete")

    def cleanup(self):
        """Restore original signal handlers."""
        if not self._signals_setup:
            return

        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)

        self._original_handlers.clear()
        self._handlers.clear()
        self._signals_setup = False
        logger.debug("Signal handlers cleaned up")

    def is_shutdown_requested(self) -> bool:
        """Check if shutdown has been requested."""
        return self._shutdown_requested
