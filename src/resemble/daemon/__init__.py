"""Model daemon supervision.

The launcher script (get_is_related.py) is package data: it is copied into
the models directory and run in its own interpreter, never imported here.
"""

from .supervisor import (
    DaemonState,
    DaemonSupervisor,
    ModelDaemon,
    get_daemon_pid,
    get_python_executable,
    stop_daemon,
)

__all__ = [
    "DaemonState",
    "DaemonSupervisor",
    "ModelDaemon",
    "get_daemon_pid",
    "get_python_executable",
    "stop_daemon",
]
