from .logger import setup_logging, get_logger, copy_trade_logger, broker_logger, hub_logger, api_logger
from .retry import RetryConfig, RetryableClient, READ_RETRY, WRITE_RETRY

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "copy_trade_logger",
    "broker_logger",
    "hub_logger",
    "api_logger",

    # Retry
    "RetryConfig",
    "RetryableClient",
    "READ_RETRY",
    "WRITE_RETRY",
]
