"""Shared utilities."""

from .logging import get_log_path, setup_logging

__all__ = ["setup_logging", "get_log_path"]
