"""Logging configuration."""

from .logger import get_logger, log_performance, logger, setup_file_logging

__all__ = ["get_logger", "log_performance", "logger", "setup_file_logging"]
