"""
dedicated entry point for the usage reconciler
runs in its own container and refreshes account usage from drive
"""
import logging
import sys

from streamvault.core.config import settings
from streamvault.core.logging_config import configure_logging

logger = logging.getLogger("streamvault.reconcile_worker")

if __name__ == "__main__":
    configure_logging()
    logger.info("usage reconcile worker starting")
    logger.info(f"interval: {settings.USAGE_RECONCILE_INTERVAL_SECONDS}s")

    try:
        from streamvault.worker import usage_reconciler_poller
        usage_reconciler_poller()
    except KeyboardInterrupt:
        logger.info("reconcile worker stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.critical(f"fatal error: {e}", exc_info=True)
        sys.exit(1)
