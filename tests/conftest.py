"""Pytest configuration and fixtures."""

import threading
from collections.abc import Generator
from pathlib import Path

import pytest

from resemble.config import ResembleSettings
from resemble.matching import CallSite, MethodType

# Thread names that are expected to be long-running and should be ignored
# by the resource tracker.
_IGNORED_THREAD_PREFIXES = (
    "MainThread",
    "ThreadPoolExecutor",  # Python's ThreadPoolExecutor workers
    "concurrent.futures",  # concurrent.futures workers
    "pydevd",  # Debugger threads
)


def _is_tracked_thread(t: threading.Thread) -> bool:
    """Check if a thread should be tracked for leak detection.

    Only non-daemon threads that aren't from known background services are
    tracked.
    """
    if t.daemon:
        return False
    return not any(t.name.startswith(prefix) for prefix in _IGNORED_THREAD_PREFIXES)


@pytest.fixture(autouse=True)
def thread_leak_tracker(
    request: pytest.FixtureRequest,
) -> Generator[None, None, None]:
    """Fail tests that leave worker threads running.

    To skip this check for a specific test, use:
        @pytest.mark.no_resource_tracking
    """
    if request.node.get_closest_marker("no_resource_tracking"):
        yield
        return

    baseline_threads = {t for t in threading.enumerate() if _is_tracked_thread(t)}

    yield

    current_threads = {t for t in threading.enumerate() if _is_tracked_thread(t)}
    leaked_threads = current_threads - baseline_threads
    if leaked_threads:
        pytest.fail(
            f"Thread leak detected - {[t.name for t in leaked_threads]}. "
            "Tests must join all threads before completion."
        )


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "no_resource_tracking: skip resource leak checking for this test",
    )


@pytest.fixture
def resemble_settings(tmp_path: Path) -> ResembleSettings:
    """Settings pointing at a temp home with a fast poll budget."""
    home = tmp_path / ".resemble"
    return ResembleSettings(
        home=home,
        models_dir=home / "models",
        health_poll_interval=0.01,
        health_poll_attempts=60,
        max_workers=1,
    )


def make_call_site(
    declaring_type: str,
    name: str,
    text: str | None = None,
    return_type: str = "void",
    parameters: tuple[tuple[str, str], ...] = (),
) -> CallSite:
    """Build a call site for tests."""
    method = MethodType(
        declaring_type=declaring_type,
        name=name,
        return_type=return_type,
        parameter_types=tuple(t for t, _ in parameters),
        parameter_names=tuple(n for _, n in parameters),
    )
    return CallSite(method=method, text=text or f"x.{name}()")


@pytest.fixture
def site_factory():
    """Factory fixture for call sites."""
    return make_call_site
