"""HTTP and WebSocket progress transports."""

from ms_audit.web.app import TargetRunLocks, TaskStream, create_app

__all__ = ["TargetRunLocks", "TaskStream", "create_app"]
