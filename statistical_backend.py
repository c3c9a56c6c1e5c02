"""
Statistical backend readiness gate.

The backend is brought up lazily once per session: the numerical environment
first, then each required analysis package. Concurrent initialization requests
share one in-flight task. Model fitting goes through an exclusive,
non-reentrant handle so that only one fit runs at a time.
"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import Callable, Dict, Optional, Sequence
import asyncio
import importlib
import logging
from analysis_errors import AnalysisError, BackendNotReady, ExternalServiceTimeout

logger = logging.getLogger(__name__)

CORE_MODULES = ("numpy", "pandas", "scipy")
REQUIRED_PACKAGES = ("pydeseq2", "gseapy", "statsmodels", "mygene")


class BackendState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class StatisticalBackend:
    """
    Session-scoped readiness gate for the statistical engine.

    Progress strings go to ``status_callback``; raw diagnostic lines (loaded
    module versions) go to ``console_callback``.
    """

    def __init__(
        self,
        packages: Sequence[str] = REQUIRED_PACKAGES,
        timeout: float = 1200.0,
        status_callback: Optional[Callable[[str], None]] = None,
        console_callback: Optional[Callable[[str], None]] = None,
        importer: Optional[Callable[[str], object]] = None,
    ):
        self.packages = list(packages)
        self.timeout = timeout
        self.status_callback = status_callback or (lambda msg: None)
        self.console_callback = console_callback or (lambda line: None)
        self._importer = importer or importlib.import_module

        self.state = BackendState.UNINITIALIZED
        self.error: Optional[AnalysisError] = None
        self._init_task: Optional[asyncio.Task] = None
        self._package_tasks: Dict[str, asyncio.Task] = {}
        self._versions: Dict[str, str] = {}
        self._fit_lock = asyncio.Lock()
        self._holder: Optional[asyncio.Task] = None

    @property
    def is_ready(self) -> bool:
        return self.state == BackendState.READY

    @property
    def versions(self) -> Dict[str, str]:
        """Loaded module -> version string."""
        return dict(self._versions)

    def _status(self, message: str):
        logger.info(message)
        self.status_callback(message)

    def _console(self, line: str):
        logger.debug(line)
        self.console_callback(line)

    async def initialize(self) -> None:
        """
        Bring the backend up, or wait for the bring-up already in flight.

        A failed initialization can be retried by calling this again.

        Raises:
            ExternalServiceTimeout: if bring-up exceeds ``timeout``
            BackendNotReady: if a required package cannot be loaded
        """
        if self.state == BackendState.READY:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.ensure_future(self._initialize())
        await self._init_task

    async def _initialize(self):
        self.state = BackendState.INITIALIZING
        self.error = None
        self._status("Initializing statistical backend...")
        try:
            await asyncio.wait_for(self._bring_up(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.state = BackendState.FAILED
            self.error = ExternalServiceTimeout(
                f"Statistical backend did not initialize within {self.timeout:.0f} seconds",
                stage="backend",
            )
            logger.error(str(self.error))
            raise self.error
        except AnalysisError as e:
            self.state = BackendState.FAILED
            self.error = e
            logger.error(f"Statistical backend initialization failed: {str(e)}")
            raise
        except Exception as e:
            self.state = BackendState.FAILED
            self.error = BackendNotReady(f"Statistical backend initialization failed: {str(e)}")
            logger.error(str(self.error), exc_info=True)
            raise self.error from e
        else:
            self.state = BackendState.READY
            self._status("Statistical backend ready")
        finally:
            # A cancelled bring-up must not leave the gate stuck in INITIALIZING
            if self.state == BackendState.INITIALIZING:
                self.state = BackendState.FAILED

    async def _bring_up(self):
        for module in CORE_MODULES:
            await self.ensure_package(module)
        for package in self.packages:
            await self.ensure_package(package)

    async def ensure_package(self, name: str) -> str:
        """
        Load one package, coalescing concurrent requests for the same name.

        Returns:
            The package version string

        Raises:
            BackendNotReady: if the package cannot be imported (the request
                is forgotten so a later call retries)
        """
        if name in self._versions:
            return self._versions[name]
        task = self._package_tasks.get(name)
        if task is None:
            task = asyncio.ensure_future(self._load(name))
            self._package_tasks[name] = task
        try:
            version = await task
        except BaseException:
            if self._package_tasks.get(name) is task:
                del self._package_tasks[name]
            raise
        self._versions[name] = version
        return version

    async def _load(self, name: str) -> str:
        self._status(f"Loading {name}...")
        try:
            module = await asyncio.to_thread(self._importer, name)
        except Exception as e:
            # Native extensions can fail with OSError and similar, not only ImportError
            raise BackendNotReady(
                f"Required package '{name}' could not be loaded: {str(e)}",
                details={"package": name},
            ) from e
        version = str(getattr(module, "__version__", "unknown"))
        self._console(f"{name} {version}")
        return version

    def require_ready(self) -> None:
        """
        Raises:
            BackendNotReady: unless initialization has completed successfully
        """
        if self.state == BackendState.READY:
            return
        if self.state == BackendState.FAILED and self.error is not None:
            message = f"Statistical backend failed to initialize: {self.error.message}"
        elif self.state == BackendState.INITIALIZING:
            message = "Statistical backend is still initializing. Please wait and retry."
        else:
            message = "Statistical backend has not been initialized."
        raise BackendNotReady(message, details={"state": self.state.value})

    @asynccontextmanager
    async def acquire(self, owner: str = ""):
        """
        Exclusive handle for one model fit.

        Not reentrant: acquiring again from the task that holds it raises
        RuntimeError instead of deadlocking.
        """
        self.require_ready()
        current = asyncio.current_task()
        if current is not None and current is self._holder:
            raise RuntimeError("Statistical backend handle is not reentrant")
        async with self._fit_lock:
            self._holder = current
            logger.debug(f"Backend acquired{f' by {owner}' if owner else ''}")
            try:
                yield self
            finally:
                self._holder = None
                logger.debug(f"Backend released{f' by {owner}' if owner else ''}")
