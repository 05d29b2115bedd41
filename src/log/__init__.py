"""
Logging module for the application.
This module provides console logging setup and the per-process log file sinks.
"""

from .setup import setup_logging, attach_process_log, detach_process_logs

__all__ = ["setup_logging", "attach_process_log", "detach_process_logs"]
