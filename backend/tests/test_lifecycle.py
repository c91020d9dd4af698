"""Tests for engines/lifecycle.py -- single-flight loading and residency."""

import asyncio

import pytest

from engines.backends import MockBackend
from engines.lifecycle import EngineHandle, EnginePool, EngineStateError, EngineStatus


def _recording_handle(
    backend: MockBackend,
) -> tuple[EngineHandle, list[tuple[str, EngineStatus]]]:
    transitions: list[tuple[str, EngineStatus]] = []
    handle = EngineHandle(
        backend, on_status_change=lambda name, status: transitions.append((name, status))
    )
    return handle, transitions


class TestEngineHandle:
    async def test_starts_idle(self) -> None:
        handle = EngineHandle(MockBackend("mock/a"))
        assert handle.status == EngineStatus.IDLE
        assert handle.name == "mock/a"

    async def test_generate_loads_first(self) -> None:
        backend = MockBackend("mock/a", responses=["hi"])
        handle, transitions = _recording_handle(backend)
        assert await handle.generate("prompt") == "hi"
        assert backend.load_calls == 1
        assert handle.status == EngineStatus.LOADED
        assert transitions == [("mock/a", EngineStatus.LOADING), ("mock/a", EngineStatus.LOADED)]

    async def test_concurrent_ensure_loaded_single_flight(self) -> None:
        backend = MockBackend("mock/a", load_delay=0.05)
        handle = EngineHandle(backend)
        await asyncio.gather(*(handle.ensure_loaded() for _ in range(5)))
        assert backend.load_calls == 1
        assert handle.status == EngineStatus.LOADED

    async def test_prefetch_then_generate_joins_load(self) -> None:
        backend = MockBackend("mock/a", responses=["ok"], load_delay=0.05)
        handle = EngineHandle(backend)
        handle.load_in_background()
        assert handle.status == EngineStatus.LOADING
        assert await handle.generate("p") == "ok"
        assert backend.load_calls == 1

    async def test_prefetch_noop_when_loaded(self) -> None:
        backend = MockBackend("mock/a")
        handle = EngineHandle(backend)
        await handle.ensure_loaded()
        handle.load_in_background()
        assert handle.load_task is None
        assert backend.load_calls == 1

    async def test_prefetch_noop_while_loading(self) -> None:
        backend = MockBackend("mock/a", load_delay=0.05)
        handle, transitions = _recording_handle(backend)
        handle.load_in_background()
        in_flight = handle.load_task
        assert in_flight is not None

        handle.load_in_background()
        assert handle.load_task is in_flight
        assert handle.status == EngineStatus.LOADING

        await handle.ensure_loaded()
        assert backend.load_calls == 1
        assert transitions == [("mock/a", EngineStatus.LOADING), ("mock/a", EngineStatus.LOADED)]

    async def test_load_failure_returns_to_idle(self) -> None:
        backend = MockBackend("mock/a", load_error=RuntimeError("model missing"))
        handle, transitions = _recording_handle(backend)
        with pytest.raises(RuntimeError, match="model missing"):
            await handle.ensure_loaded()
        assert handle.status == EngineStatus.IDLE
        assert transitions[-1] == ("mock/a", EngineStatus.IDLE)

    async def test_load_retried_after_failure(self) -> None:
        backend = MockBackend("mock/a", responses=["recovered"], load_error=RuntimeError("boom"))
        handle = EngineHandle(backend)
        with pytest.raises(RuntimeError):
            await handle.generate("p")
        backend.load_error = None
        assert await handle.generate("p") == "recovered"
        assert backend.load_calls == 2

    async def test_concurrent_waiters_all_see_failure(self) -> None:
        backend = MockBackend("mock/a", load_delay=0.02, load_error=RuntimeError("boom"))
        handle = EngineHandle(backend)
        results = await asyncio.gather(
            handle.ensure_loaded(), handle.ensure_loaded(), return_exceptions=True
        )
        assert all(isinstance(r, RuntimeError) for r in results)
        assert backend.load_calls == 1

    async def test_cancelled_waiter_does_not_abort_load(self) -> None:
        backend = MockBackend("mock/a", load_delay=0.05)
        handle = EngineHandle(backend)
        waiter = asyncio.create_task(handle.ensure_loaded())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await handle.ensure_loaded()
        assert handle.status == EngineStatus.LOADED
        assert backend.load_calls == 1

    async def test_unload_when_idle_raises(self) -> None:
        with pytest.raises(EngineStateError, match="while idle"):
            await EngineHandle(MockBackend("mock/a")).unload()

    async def test_unload_while_loading_raises(self) -> None:
        handle = EngineHandle(MockBackend("mock/a", load_delay=0.05))
        handle.load_in_background()
        with pytest.raises(EngineStateError, match="while loading"):
            await handle.unload()
        await handle.close()

    async def test_unload(self) -> None:
        backend = MockBackend("mock/a")
        handle = EngineHandle(backend)
        await handle.ensure_loaded()
        await handle.unload()
        assert handle.status == EngineStatus.IDLE
        assert backend.unload_calls == 1

    async def test_close_waits_for_load_then_unloads(self) -> None:
        backend = MockBackend("mock/a", load_delay=0.02)
        handle = EngineHandle(backend)
        handle.load_in_background()
        await handle.close()
        assert handle.status == EngineStatus.IDLE
        assert backend.unload_calls == 1

    async def test_close_after_failed_load(self) -> None:
        backend = MockBackend("mock/a", load_error=RuntimeError("boom"))
        handle = EngineHandle(backend)
        handle.load_in_background()
        await handle.close()
        assert handle.status == EngineStatus.IDLE
        assert backend.unload_calls == 0


class TestEnginePool:
    @staticmethod
    def _pool(max_resident: int = 1) -> tuple[EnginePool, dict[str, MockBackend]]:
        backends: dict[str, MockBackend] = {}

        def factory(model: str) -> MockBackend:
            backends[model] = MockBackend(model, default_response=f"from {model}")
            return backends[model]

        return EnginePool(factory, max_resident=max_resident), backends

    async def test_one_handle_per_model(self) -> None:
        pool, _ = self._pool()
        assert pool.get("m1") is pool.get("m1")
        assert set(pool.handles) == {"m1"}

    async def test_invalid_max_resident(self) -> None:
        with pytest.raises(ValueError):
            EnginePool(MockBackend, max_resident=0)

    async def test_evicts_lru_engine(self) -> None:
        pool, backends = self._pool(max_resident=1)
        assert await pool.get("m1").generate("p") == "from m1"
        assert await pool.get("m2").generate("p") == "from m2"
        assert pool.get("m1").status == EngineStatus.IDLE
        assert backends["m1"].unload_calls == 1
        assert pool.resident_count() == 1

    async def test_evicts_least_recently_used(self) -> None:
        pool, backends = self._pool(max_resident=2)
        await pool.get("m1").generate("p")
        await pool.get("m2").generate("p")
        await pool.get("m1").generate("again")
        await pool.get("m3").generate("p")
        assert backends["m2"].unload_calls == 1
        assert backends["m1"].unload_calls == 0
        assert pool.resident_count() == 2

    async def test_close_unloads_everything(self) -> None:
        pool, backends = self._pool(max_resident=2)
        await pool.get("m1").ensure_loaded()
        await pool.get("m2").ensure_loaded()
        await pool.close()
        assert pool.resident_count() == 0
        assert all(b.unload_calls == 1 for b in backends.values())

    async def test_status_listener_forwarded(self) -> None:
        seen: list[tuple[str, EngineStatus]] = []
        pool = EnginePool(
            lambda model: MockBackend(model),
            on_status_change=lambda name, status: seen.append((name, status)),
        )
        await pool.get("m1").ensure_loaded()
        assert seen == [("m1", EngineStatus.LOADING), ("m1", EngineStatus.LOADED)]
