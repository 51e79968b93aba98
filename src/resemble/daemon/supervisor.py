"""Lifecycle management for the local model daemon.

The supervisor lazily brings up a single scoring daemon per process:

    Uninitialized -> Probing -> Ready
                             -> Failed

Probing first checks whether a daemon is already answering on the configured
port and attaches to it if so. Otherwise the launcher script is staged into
the models directory and spawned with subprocess (not fork), its combined
output redirected to a log file, and the health endpoint is polled at a fixed
interval for a bounded number of attempts.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from importlib import resources
from pathlib import Path

import structlog

from resemble.clients import ScoringClient
from resemble.config import ResembleSettings
from resemble.errors import BootstrapFailure, ResourceStagingFailure

logger = structlog.get_logger()

LAUNCHER_RESOURCE = "get_is_related.py"


class DaemonState(Enum):
    UNINITIALIZED = "uninitialized"
    PROBING = "probing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ModelDaemon:
    """Handle to a ready scoring daemon.

    Attributes:
        endpoint: Base URL of the daemon
        pid: PID of the process we spawned, or None when we attached to a
            daemon that was already running
    """

    endpoint: str
    pid: int | None = None
    is_ready: bool = True


def get_python_executable() -> str:
    """Get the Python executable used to run the launcher.

    1. If VIRTUAL_ENV env var is set, use ``{VIRTUAL_ENV}/bin/python``.
    2. If sys.executable lives inside a venv (``pyvenv.cfg`` in a parent
       directory), use it as-is.
    3. Fall back to sys.executable.
    """
    virtual_env = os.environ.get("VIRTUAL_ENV")
    if virtual_env:
        venv_python = Path(virtual_env) / "bin" / "python"
        if venv_python.is_file():
            return str(venv_python)

    exe_path = Path(sys.executable).resolve()
    for parent in exe_path.parents:
        if (parent / "pyvenv.cfg").is_file():
            return str(exe_path)

    return sys.executable


def get_pid_file(settings: ResembleSettings) -> Path:
    """Get the daemon PID file path."""
    return settings.home.expanduser() / "daemon.pid"


def get_log_file(settings: ResembleSettings) -> Path:
    """Get the daemon log file path."""
    return settings.home.expanduser() / "daemon.log"


def get_daemon_pid(settings: ResembleSettings) -> int | None:
    """Get the PID of a daemon we spawned earlier.

    Returns:
        PID if the PID file holds one, None otherwise
    """
    pid_file = get_pid_file(settings)
    if not pid_file.exists():
        return None

    try:
        return int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return None


def stop_daemon(settings: ResembleSettings) -> bool:
    """Stop a daemon spawned by an earlier run.

    Returns:
        True if a daemon was stopped, False if none was running
    """
    pid_file = get_pid_file(settings)
    pid = get_daemon_pid(settings)
    if pid is None:
        return False

    try:
        os.kill(pid, signal.SIGTERM)

        # Wait for process to exit (up to 5 seconds)
        for _ in range(50):
            try:
                os.kill(pid, 0)
                time.sleep(0.1)
            except (OSError, ProcessLookupError):
                break

        # Force kill if still running
        try:
            os.kill(pid, signal.SIGKILL)
        except (OSError, ProcessLookupError):
            pass

        if pid_file.exists():
            pid_file.unlink()
        logger.info("daemon.stopped", pid=pid)
        return True
    except (OSError, ProcessLookupError):
        if pid_file.exists():
            pid_file.unlink()
        return False


class DaemonSupervisor:
    """Owns the one model daemon used by this process.

    Construct one supervisor per run and share it between workers;
    get_instance() is safe to call concurrently and bootstraps at most once.
    A failed bootstrap is remembered and re-raised to later callers.
    """

    def __init__(
        self,
        settings: ResembleSettings,
        client: ScoringClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the supervisor.

        Args:
            settings: Daemon location, launcher, poll budget
            client: Client used for health checks (defaults to one built
                from settings)
            sleep: Sleep function between readiness polls
        """
        self.settings = settings
        self.client = client or ScoringClient(
            settings.daemon_url,
            timeout=settings.request_timeout,
            health_timeout=settings.health_timeout,
        )
        self._sleep = sleep
        self._lock = threading.Lock()
        self._instance: ModelDaemon | None = None
        self._failure: BootstrapFailure | None = None
        self.state = DaemonState.UNINITIALIZED
        self.process: subprocess.Popen[bytes] | None = None

    def get_instance(self) -> ModelDaemon:
        """Return the ready daemon, bootstrapping it on first use.

        Blocks until the daemon is ready or the poll budget is exhausted.

        Raises:
            BootstrapFailure: If the daemon did not become ready
            ResourceStagingFailure: If the launcher could not be staged
        """
        instance = self._instance
        if instance is not None:
            return instance

        with self._lock:
            if self._instance is not None:
                return self._instance
            if self._failure is not None:
                raise self._failure
            try:
                self._instance = self._bootstrap()
            except BootstrapFailure as e:
                self._failure = e
                raise
            return self._instance

    def _bootstrap(self) -> ModelDaemon:
        endpoint = self.settings.daemon_url
        self.state = DaemonState.PROBING
        logger.info("daemon.probing", endpoint=endpoint)

        if self.client.check_up() == 200:
            self.state = DaemonState.READY
            logger.info("daemon.attached", endpoint=endpoint)
            return ModelDaemon(endpoint=endpoint)

        try:
            launcher = self.stage_launcher()
            proc = self._spawn(launcher)
        except ResourceStagingFailure:
            self.state = DaemonState.FAILED
            raise

        if not self._wait_until_ready(proc):
            self.state = DaemonState.FAILED
            output = self._read_output()
            logger.error(
                "daemon.bootstrap_failed",
                endpoint=endpoint,
                returncode=proc.poll(),
            )
            raise BootstrapFailure("Unable to start model daemon", output=output)

        self.state = DaemonState.READY
        logger.info("daemon.ready", endpoint=endpoint, pid=proc.pid)
        return ModelDaemon(endpoint=endpoint, pid=proc.pid)

    def stage_launcher(self) -> Path:
        """Copy the launcher script into the models directory if absent.

        Returns:
            Path of the staged launcher

        Raises:
            ResourceStagingFailure: If the directory or file cannot be written
        """
        launcher = self.settings.launcher_path
        try:
            launcher.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceStagingFailure(
                f"Unable to create models directory at {launcher.parent}"
            ) from e

        if launcher.exists():
            return launcher

        source = resources.files("resemble.daemon").joinpath(LAUNCHER_RESOURCE)
        try:
            launcher.write_bytes(source.read_bytes())
        except OSError as e:
            raise ResourceStagingFailure(
                f"Unable to stage launcher at {launcher}"
            ) from e
        logger.info("daemon.launcher_staged", path=str(launcher))
        return launcher

    def _spawn(self, launcher: Path) -> subprocess.Popen[bytes]:
        log_file = get_log_file(self.settings)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceStagingFailure(
                f"Unable to create directory for {log_file}"
            ) from e

        cmd = [
            self.settings.python_executable or get_python_executable(),
            str(launcher),
            "--host", self.settings.daemon_host,
            "--port", str(self.settings.daemon_port),
        ]

        with open(log_file, "w") as log_out:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_out,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,  # Outlives this run; later runs attach
                )
            except OSError as e:
                self.state = DaemonState.FAILED
                raise BootstrapFailure(f"Unable to launch {cmd[0]}: {e}") from e

        get_pid_file(self.settings).write_text(str(proc.pid))
        self.process = proc
        logger.info("daemon.spawned", pid=proc.pid, log_file=str(log_file))
        return proc

    def _wait_until_ready(self, proc: subprocess.Popen[bytes]) -> bool:
        for attempt in range(self.settings.health_poll_attempts):
            returncode = proc.poll()
            if returncode is not None and returncode != 0:
                logger.warning("daemon.exited", returncode=returncode, attempt=attempt)
                return False
            if self.client.check_up() == 200:
                return True
            self._sleep(self.settings.health_poll_interval)
        return False

    def _read_output(self) -> str:
        log_file = get_log_file(self.settings)
        try:
            return log_file.read_text(errors="replace")
        except OSError:
            return ""
