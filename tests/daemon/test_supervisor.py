"""Tests for the model daemon supervisor.

Verifies:
1. Attaching to an already-running daemon without spawning
2. Launcher staging into the models directory
3. Bounded readiness polling and BootstrapFailure diagnostics
4. At most one bootstrap under concurrent first callers
"""

from __future__ import annotations

import os
import signal
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from resemble.clients import UNREACHABLE_STATUS
from resemble.config import ResembleSettings
from resemble.daemon import (
    DaemonState,
    DaemonSupervisor,
    get_daemon_pid,
    stop_daemon,
)
from resemble.daemon.supervisor import get_log_file, get_pid_file
from resemble.errors import BootstrapFailure, ResourceStagingFailure


def make_process(pid: int = 4242, returncode: int | None = None) -> MagicMock:
    proc = MagicMock()
    proc.pid = pid
    proc.poll.return_value = returncode
    return proc


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def sleep() -> MagicMock:
    return MagicMock()


@pytest.fixture
def supervisor(
    resemble_settings: ResembleSettings, client: MagicMock, sleep: MagicMock
) -> DaemonSupervisor:
    return DaemonSupervisor(resemble_settings, client=client, sleep=sleep)


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------


class TestAttach:
    """Daemon already answering on the configured port."""

    def test_ready_without_spawning(
        self, supervisor: DaemonSupervisor, client: MagicMock
    ) -> None:
        client.check_up.return_value = 200

        with patch("resemble.daemon.supervisor.subprocess.Popen") as mock_popen:
            handle = supervisor.get_instance()

        mock_popen.assert_not_called()
        assert handle.is_ready is True
        assert handle.pid is None
        assert handle.endpoint == "http://127.0.0.1:7860"
        assert supervisor.state is DaemonState.READY

    def test_get_instance_is_idempotent(
        self, supervisor: DaemonSupervisor, client: MagicMock
    ) -> None:
        client.check_up.return_value = 200

        first = supervisor.get_instance()
        second = supervisor.get_instance()

        assert first is second
        assert client.check_up.call_count == 1


# ---------------------------------------------------------------------------
# Launcher staging
# ---------------------------------------------------------------------------


class TestStageLauncher:
    def test_creates_directory_and_copies_launcher(
        self, supervisor: DaemonSupervisor, resemble_settings: ResembleSettings
    ) -> None:
        launcher = supervisor.stage_launcher()

        assert launcher == resemble_settings.launcher_path
        assert launcher.parent.is_dir()
        assert "/run/predict" in launcher.read_text()

    def test_existing_launcher_is_kept(
        self, supervisor: DaemonSupervisor, resemble_settings: ResembleSettings
    ) -> None:
        launcher = resemble_settings.launcher_path
        launcher.parent.mkdir(parents=True)
        launcher.write_text("# customized launcher\n")

        supervisor.stage_launcher()

        assert launcher.read_text() == "# customized launcher\n"

    def test_uncreatable_directory(self, tmp_path: Path, client: MagicMock) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        settings = ResembleSettings(home=tmp_path, models_dir=blocker / "models")

        supervisor = DaemonSupervisor(settings, client=client)

        with pytest.raises(ResourceStagingFailure, match="models directory"):
            supervisor.stage_launcher()


# ---------------------------------------------------------------------------
# Spawn and readiness polling
# ---------------------------------------------------------------------------


class TestBootstrap:
    """Daemon not running yet."""

    def test_spawns_and_becomes_ready(
        self,
        supervisor: DaemonSupervisor,
        resemble_settings: ResembleSettings,
        client: MagicMock,
        sleep: MagicMock,
    ) -> None:
        # Probe fails, first poll fails, second poll succeeds
        client.check_up.side_effect = [UNREACHABLE_STATUS, UNREACHABLE_STATUS, 200]
        proc = make_process()

        with patch(
            "resemble.daemon.supervisor.subprocess.Popen", return_value=proc
        ) as mock_popen:
            handle = supervisor.get_instance()

        assert handle.pid == 4242
        assert supervisor.state is DaemonState.READY
        assert sleep.call_count == 1
        sleep.assert_called_with(resemble_settings.health_poll_interval)

        cmd = mock_popen.call_args[0][0]
        assert cmd[1] == str(resemble_settings.launcher_path)
        assert cmd[2:] == ["--host", "127.0.0.1", "--port", "7860"]
        assert mock_popen.call_args[1]["start_new_session"] is True
        assert get_daemon_pid(resemble_settings) == 4242

    def test_uses_configured_interpreter(
        self, tmp_path: Path, client: MagicMock
    ) -> None:
        settings = ResembleSettings(
            home=tmp_path, models_dir=tmp_path / "models", python_executable="/opt/py"
        )
        client.check_up.side_effect = [UNREACHABLE_STATUS, 200]
        supervisor = DaemonSupervisor(settings, client=client, sleep=MagicMock())

        with patch(
            "resemble.daemon.supervisor.subprocess.Popen", return_value=make_process()
        ) as mock_popen:
            supervisor.get_instance()

        assert mock_popen.call_args[0][0][0] == "/opt/py"

    def test_poll_budget_exhausted(
        self,
        supervisor: DaemonSupervisor,
        resemble_settings: ResembleSettings,
        client: MagicMock,
        sleep: MagicMock,
    ) -> None:
        """60 failed polls raise BootstrapFailure with the process output."""
        client.check_up.return_value = UNREACHABLE_STATUS

        def fake_popen(cmd: list[str], **kwargs: object) -> MagicMock:
            kwargs["stdout"].write("loading model...\n")  # type: ignore[attr-defined]
            return make_process()

        with patch("resemble.daemon.supervisor.subprocess.Popen", side_effect=fake_popen):
            with pytest.raises(BootstrapFailure) as exc_info:
                supervisor.get_instance()

        assert sleep.call_count == 60
        # One probe plus one check per poll
        assert client.check_up.call_count == 61
        assert "loading model..." in exc_info.value.output
        assert "Unable to start model daemon" in str(exc_info.value)
        assert supervisor.state is DaemonState.FAILED

    def test_process_exit_fails_fast(
        self,
        supervisor: DaemonSupervisor,
        client: MagicMock,
        sleep: MagicMock,
    ) -> None:
        """A non-zero exit stops polling without waiting out the budget."""
        client.check_up.return_value = UNREACHABLE_STATUS
        proc = make_process(returncode=1)

        with patch("resemble.daemon.supervisor.subprocess.Popen", return_value=proc):
            with pytest.raises(BootstrapFailure):
                supervisor.get_instance()

        sleep.assert_not_called()

    def test_clean_exit_keeps_polling(
        self,
        supervisor: DaemonSupervisor,
        client: MagicMock,
        sleep: MagicMock,
    ) -> None:
        """Exit status 0 (e.g. a launcher that forks) is not a failure."""
        client.check_up.side_effect = [UNREACHABLE_STATUS, UNREACHABLE_STATUS, 200]
        proc = make_process(returncode=0)

        with patch("resemble.daemon.supervisor.subprocess.Popen", return_value=proc):
            handle = supervisor.get_instance()

        assert handle.is_ready is True

    def test_missing_interpreter(
        self, supervisor: DaemonSupervisor, client: MagicMock
    ) -> None:
        client.check_up.return_value = UNREACHABLE_STATUS

        with patch(
            "resemble.daemon.supervisor.subprocess.Popen",
            side_effect=FileNotFoundError("no such file"),
        ):
            with pytest.raises(BootstrapFailure, match="Unable to launch"):
                supervisor.get_instance()

        assert supervisor.state is DaemonState.FAILED

    def test_failure_is_remembered(
        self, supervisor: DaemonSupervisor, client: MagicMock
    ) -> None:
        client.check_up.return_value = UNREACHABLE_STATUS

        with patch(
            "resemble.daemon.supervisor.subprocess.Popen",
            return_value=make_process(returncode=2),
        ) as mock_popen:
            with pytest.raises(BootstrapFailure):
                supervisor.get_instance()
            with pytest.raises(BootstrapFailure):
                supervisor.get_instance()

        assert mock_popen.call_count == 1

    def test_log_file_written_under_home(
        self,
        supervisor: DaemonSupervisor,
        resemble_settings: ResembleSettings,
        client: MagicMock,
    ) -> None:
        client.check_up.side_effect = [UNREACHABLE_STATUS, 200]

        with patch(
            "resemble.daemon.supervisor.subprocess.Popen", return_value=make_process()
        ):
            supervisor.get_instance()

        assert get_log_file(resemble_settings).exists()


class TestConcurrentBootstrap:
    def test_single_bootstrap_under_race(
        self, supervisor: DaemonSupervisor, client: MagicMock
    ) -> None:
        client.check_up.side_effect = [UNREACHABLE_STATUS] + [200] * 10
        handles = []
        lock = threading.Lock()

        def worker() -> None:
            handle = supervisor.get_instance()
            with lock:
                handles.append(handle)

        with patch(
            "resemble.daemon.supervisor.subprocess.Popen", return_value=make_process()
        ) as mock_popen:
            threads = [threading.Thread(target=worker) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5)

        assert mock_popen.call_count == 1
        assert len(handles) == 8
        assert all(h is handles[0] for h in handles)


# ---------------------------------------------------------------------------
# stop_daemon()
# ---------------------------------------------------------------------------


class TestStopDaemon:
    def test_no_pid_file(self, resemble_settings: ResembleSettings) -> None:
        assert stop_daemon(resemble_settings) is False

    def test_stale_pid_file_cleaned_up(self, resemble_settings: ResembleSettings) -> None:
        pid_file = get_pid_file(resemble_settings)
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("99999999")

        assert stop_daemon(resemble_settings) is False
        assert not pid_file.exists()

    def test_sends_sigterm(self, resemble_settings: ResembleSettings) -> None:
        pid_file = get_pid_file(resemble_settings)
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("12345")

        with (
            patch("resemble.daemon.supervisor.os.kill") as mock_kill,
            patch("resemble.daemon.supervisor.time.sleep"),
        ):
            mock_kill.side_effect = [
                None,  # SIGTERM
                ProcessLookupError,  # poll: process gone
                ProcessLookupError,  # SIGKILL: already dead
            ]
            assert stop_daemon(resemble_settings) is True

        assert mock_kill.call_args_list[0][0] == (12345, signal.SIGTERM)
        assert not pid_file.exists()

    def test_invalid_pid_content(self, resemble_settings: ResembleSettings) -> None:
        pid_file = get_pid_file(resemble_settings)
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("garbage")

        assert get_daemon_pid(resemble_settings) is None
        assert stop_daemon(resemble_settings) is False


def test_current_process_pid_round_trip(resemble_settings: ResembleSettings) -> None:
    pid_file = get_pid_file(resemble_settings)
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text(f"  {os.getpid()}  \n")

    assert get_daemon_pid(resemble_settings) == os.getpid()
