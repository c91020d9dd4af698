"""Engine lifecycle management with single-flight loading.

Each distinct model gets one EngineHandle moving through
``idle -> loading -> loaded -> idle``. The in-flight load task is the only
synchronization primitive: concurrent `ensure_loaded` callers and
background prefetches all await the same task, so a model is never loaded
twice at once.

EnginePool owns a session's handles and bounds how many models are resident
at the same time by unloading the least-recently-used idle engine before
another one loads.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

import structlog

from engines.backends import ModelBackend

logger = structlog.get_logger()


class EngineStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"


class EngineStateError(RuntimeError):
    """Raised on an invalid lifecycle transition, e.g. unload while idle."""


StatusListener = Callable[[str, EngineStatus], None]
BeforeLoadHook = Callable[["EngineHandle"], Awaitable[None]]


class EngineHandle:
    """Lifecycle wrapper around one ModelBackend.

    Callers never reason about load state: `generate` always goes through
    `ensure_loaded` first.

    Attributes:
        name: Model identifier, used in logs and events.
        last_used: Monotonic timestamp of the last load or generation.
    """

    def __init__(
        self,
        backend: ModelBackend,
        *,
        before_load: BeforeLoadHook | None = None,
        on_status_change: StatusListener | None = None,
    ) -> None:
        self._backend = backend
        self._before_load = before_load
        self._on_status_change = on_status_change
        self._status = EngineStatus.IDLE
        self._load_task: asyncio.Task[None] | None = None
        self._active_generations = 0
        self.name = backend.model
        self.last_used = 0.0

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def load_task(self) -> asyncio.Task[None] | None:
        """The in-flight load, if any."""
        return self._load_task

    @property
    def is_generating(self) -> bool:
        return self._active_generations > 0

    def _set_status(self, status: EngineStatus) -> None:
        self._status = status
        if self._on_status_change is not None:
            self._on_status_change(self.name, status)

    def _start_load(self) -> asyncio.Task[None]:
        # Status flips synchronously so any caller arriving before the task
        # first runs observes `loading` and joins it.
        self._set_status(EngineStatus.LOADING)
        task = asyncio.create_task(self._run_load(), name=f"engine-load:{self.name}")
        task.add_done_callback(self._on_load_done)
        self._load_task = task
        return task

    async def _run_load(self) -> None:
        start_time = time.time()
        logger.info("engine_load_started", model=self.name)
        try:
            if self._before_load is not None:
                await self._before_load(self)
            await self._backend.load()
        except BaseException:
            self._load_task = None
            self._set_status(EngineStatus.IDLE)
            raise
        self._load_task = None
        self.last_used = time.monotonic()
        self._set_status(EngineStatus.LOADED)
        logger.info(
            "engine_load_complete",
            model=self.name,
            latency_ms=int((time.time() - start_time) * 1000),
        )

    def _on_load_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            logger.warning("engine_load_cancelled", model=self.name)
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "engine_load_failed",
                model=self.name,
                error_type=type(error).__name__,
                error=str(error),
            )

    async def ensure_loaded(self) -> None:
        """Make sure the model is loaded.

        Returns immediately when loaded, joins the in-flight load when
        loading, and starts a load when idle. The shared load task is
        shielded so one cancelled waiter does not abort it for the others.

        Raises:
            Exception: Whatever the backend raised while loading; the handle
                is back in `idle` by then.
        """
        if self._status == EngineStatus.LOADED:
            return
        task = self._load_task if self._load_task is not None else self._start_load()
        await asyncio.shield(task)

    def load_in_background(self) -> None:
        """Start loading without waiting. No-op unless idle."""
        if self._status != EngineStatus.IDLE:
            return
        logger.debug("engine_prefetch", model=self.name)
        self._start_load()

    async def unload(self) -> None:
        """Release the model. Only valid from `loaded`.

        Raises:
            EngineStateError: If the handle is idle or still loading.
        """
        if self._status != EngineStatus.LOADED:
            raise EngineStateError(
                f"Cannot unload engine {self.name} while {self._status.value}"
            )
        await self._backend.unload()
        self._set_status(EngineStatus.IDLE)
        logger.info("engine_unloaded", model=self.name)

    async def generate(self, prompt: str) -> str:
        await self.ensure_loaded()
        self._active_generations += 1
        try:
            return await self._backend.generate(prompt)
        finally:
            self._active_generations -= 1
            self.last_used = time.monotonic()

    async def close(self) -> None:
        """Wait out an in-flight load, then unload if loaded."""
        task = self._load_task
        if task is not None:
            # Failures are already logged by the done callback.
            with contextlib.suppress(Exception):
                await asyncio.shield(task)
        if self._status == EngineStatus.LOADED:
            await self.unload()


class EnginePool:
    """One EngineHandle per distinct model, with bounded residency.

    Args:
        backend_factory: Builds the backend for a model identifier.
        max_resident: Maximum number of engines loaded or loading at once.
        on_status_change: Forwarded to every handle.
    """

    def __init__(
        self,
        backend_factory: Callable[[str], ModelBackend],
        *,
        max_resident: int = 2,
        on_status_change: StatusListener | None = None,
    ) -> None:
        if max_resident < 1:
            raise ValueError("max_resident must be at least 1")
        self._backend_factory = backend_factory
        self._max_resident = max_resident
        self._on_status_change = on_status_change
        self._handles: dict[str, EngineHandle] = {}

    @property
    def handles(self) -> dict[str, EngineHandle]:
        return dict(self._handles)

    def get(self, model: str) -> EngineHandle:
        """Return the handle for `model`, creating it on first use."""
        handle = self._handles.get(model)
        if handle is None:
            handle = EngineHandle(
                self._backend_factory(model),
                before_load=self._make_room,
                on_status_change=self._on_status_change,
            )
            self._handles[model] = handle
        return handle

    def resident_count(self, exclude: EngineHandle | None = None) -> int:
        return sum(
            1
            for handle in self._handles.values()
            if handle is not exclude and handle.status != EngineStatus.IDLE
        )

    async def _make_room(self, loading: EngineHandle) -> None:
        """Unload LRU engines until `loading` fits under the residency bound."""
        while self.resident_count(exclude=loading) >= self._max_resident:
            candidates = [
                handle
                for handle in self._handles.values()
                if handle is not loading
                and handle.status == EngineStatus.LOADED
                and not handle.is_generating
            ]
            if not candidates:
                logger.warning(
                    "engine_residency_exceeded",
                    model=loading.name,
                    resident=self.resident_count(exclude=loading),
                    max_resident=self._max_resident,
                )
                return
            victim = min(candidates, key=lambda h: h.last_used)
            logger.info("engine_evicted", model=victim.name, for_model=loading.name)
            await victim.unload()

    async def close(self) -> None:
        """Unload every engine; used at session teardown."""
        for handle in list(self._handles.values()):
            try:
                await handle.close()
            except Exception as e:
                logger.warning("engine_close_failed", model=handle.name, error=str(e))
