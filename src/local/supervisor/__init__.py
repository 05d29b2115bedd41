"""
The Supervisor package.
Launches and supervises the PostgreSQL + listmonk process pair.

This package contains the central ProcessManager class and its helper modules,
which together handle port allocation, storage initialization, readiness
detection, schema migrations and ordered shutdown.
"""
from .supervisor import ProcessManager

__all__ = ['ProcessManager']
