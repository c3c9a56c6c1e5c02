"""Tests for the statistical backend readiness gate."""
import asyncio
import threading
import time
from types import SimpleNamespace
import pytest
from analysis_errors import BackendNotReady, ExternalServiceTimeout
from statistical_backend import CORE_MODULES, REQUIRED_PACKAGES, BackendState, StatisticalBackend


class CountingImporter:
    def __init__(self, delay=0.0, fail=()):
        self.delay = delay
        self.fail = set(fail)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, name):
        with self._lock:
            self.calls.append(name)
        time.sleep(self.delay)
        if name in self.fail:
            raise ModuleNotFoundError(f"No module named '{name}'")
        return SimpleNamespace(__version__="2.0")


def test_initialize_reports_progress_and_versions():
    status, console = [], []
    importer = CountingImporter()
    backend = StatisticalBackend(
        importer=importer, status_callback=status.append, console_callback=console.append
    )
    asyncio.run(backend.initialize())

    assert backend.state == BackendState.READY
    assert importer.calls == list(CORE_MODULES) + list(REQUIRED_PACKAGES)
    assert status[0] == "Initializing statistical backend..."
    assert status[-1] == "Statistical backend ready"
    assert "pydeseq2 2.0" in console
    assert backend.versions["gseapy"] == "2.0"


def test_concurrent_initialization_coalesces():
    importer = CountingImporter(delay=0.01)
    backend = StatisticalBackend(importer=importer)

    async def scenario():
        await asyncio.gather(*(backend.initialize() for _ in range(5)))

    asyncio.run(scenario())
    assert backend.is_ready
    assert importer.calls.count("pydeseq2") == 1


def test_ensure_package_coalesces():
    importer = CountingImporter(delay=0.01)
    backend = StatisticalBackend(importer=importer)

    async def scenario():
        return await asyncio.gather(*(backend.ensure_package("gseapy") for _ in range(3)))

    assert asyncio.run(scenario()) == ["2.0"] * 3
    assert importer.calls == ["gseapy"]


def test_failed_package_can_be_retried():
    importer = CountingImporter(fail={"gseapy"})
    backend = StatisticalBackend(importer=importer)

    with pytest.raises(BackendNotReady) as exc_info:
        asyncio.run(backend.initialize())
    assert backend.state == BackendState.FAILED
    assert exc_info.value.details["package"] == "gseapy"

    importer.fail.clear()
    asyncio.run(backend.initialize())
    assert backend.state == BackendState.READY
    assert importer.calls.count("gseapy") == 2
    # Packages loaded before the failure are not loaded again
    assert importer.calls.count("numpy") == 1


def test_timeout():
    backend = StatisticalBackend(importer=CountingImporter(delay=0.05), timeout=0.01)
    with pytest.raises(ExternalServiceTimeout):
        asyncio.run(backend.initialize())
    assert backend.state == BackendState.FAILED


def test_require_ready_rejects_before_initialization():
    backend = StatisticalBackend(importer=CountingImporter())
    with pytest.raises(BackendNotReady) as exc_info:
        backend.require_ready()
    assert exc_info.value.stage == "backend"


def test_acquire_is_exclusive(ready_backend):
    active, peak = [0], [0]

    async def fit():
        async with ready_backend.acquire():
            active[0] += 1
            peak[0] = max(peak[0], active[0])
            await asyncio.sleep(0.01)
            active[0] -= 1

    async def scenario():
        await asyncio.gather(fit(), fit(), fit())

    asyncio.run(scenario())
    assert peak[0] == 1


def test_acquire_not_reentrant(ready_backend):
    async def scenario():
        async with ready_backend.acquire():
            async with ready_backend.acquire():
                pass

    with pytest.raises(RuntimeError, match="reentrant"):
        asyncio.run(scenario())


def test_acquire_requires_ready():
    backend = StatisticalBackend(importer=CountingImporter())

    async def scenario():
        async with backend.acquire():
            pass

    with pytest.raises(BackendNotReady):
        asyncio.run(scenario())


def test_broken_native_package_fails_cleanly():
    broken = {"gseapy"}

    def importer(name):
        if name in broken:
            raise OSError(f"cannot open shared object file for {name}")
        return SimpleNamespace(__version__="2.0")

    backend = StatisticalBackend(importer=importer)
    with pytest.raises(BackendNotReady) as exc_info:
        asyncio.run(backend.initialize())
    assert exc_info.value.details["package"] == "gseapy"
    assert isinstance(exc_info.value.__cause__, OSError)
    assert backend.state == BackendState.FAILED
    with pytest.raises(BackendNotReady, match="failed to initialize"):
        backend.require_ready()

    broken.clear()
    asyncio.run(backend.initialize())
    assert backend.is_ready


def test_unexpected_bring_up_error_marks_failed(monkeypatch):
    backend = StatisticalBackend(importer=CountingImporter())

    async def explode():
        raise RuntimeError("interpreter state corrupted")

    monkeypatch.setattr(backend, "_bring_up", explode)
    with pytest.raises(BackendNotReady):
        asyncio.run(backend.initialize())
    assert backend.state == BackendState.FAILED
    assert "interpreter state corrupted" in backend.error.message
