"""Offline-first sync service: mutation queue, fast push and reconciling pulls."""

from fieldsync import logging_config  # noqa: F401  registers the TRACE level

__version__ = "1.0.0"
