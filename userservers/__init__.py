"""Per-user service supervisor: a daemon, its control client and their message format."""

__version__ = "0.1.0"
__all__ = ["flag", "ipc", "service", "service_manager", "daemon", "ctl"]