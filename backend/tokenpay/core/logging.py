"""Logging configuration for the application"""
import logging

from tokenpay.core.config import settings


def _level(name: str, default: int = logging.INFO) -> int:
    return getattr(logging, (name or "").upper(), default)


def setup_logging():
    """Configure logging for the application"""
    root_level = _level(settings.LOG_LEVEL)
    logging.basicConfig(
        level=root_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Delivery and balance trails can be turned up without raising everything else
    webhook_logger.setLevel(_level(settings.WEBHOOK_LOG_LEVEL, root_level))
    ledger_logger.setLevel(_level(settings.LEDGER_LOG_LEVEL, root_level))

    # Silence noisy third-party libraries
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# One line per webhook delivery: event id, type and outcome
webhook_logger = logging.getLogger("webhook")
# Every payment status move and wallet balance change
ledger_logger = logging.getLogger("ledger")
