from __future__ import annotations

import threading

from receiver.app.domain.inflight_registry import InFlightRegistry


def test_pop_returns_handle_once():
    registry: InFlightRegistry[str] = InFlightRegistry()
    registry.add("m-1", "lock-1")

    assert registry.pop("m-1") == "lock-1"
    assert registry.pop("m-1") is None
    assert "m-1" not in registry


def test_pop_unknown_id_returns_none():
    registry: InFlightRegistry[str] = InFlightRegistry()

    assert registry.pop("missing") is None


def test_redelivery_replaces_handle():
    registry: InFlightRegistry[str] = InFlightRegistry()
    registry.add("m-1", "lock-1")
    registry.add("m-1", "lock-2")

    assert len(registry) == 1
    assert registry.pop("m-1") == "lock-2"


def test_clear_returns_all_handles():
    registry: InFlightRegistry[str] = InFlightRegistry()
    registry.add("a", "h-a")
    registry.add("b", "h-b")

    assert sorted(registry.clear()) == ["h-a", "h-b"]
    assert len(registry) == 0
    assert registry.ids() == []


def test_concurrent_pops_remove_each_entry_exactly_once():
    registry: InFlightRegistry[int] = InFlightRegistry()
    for i in range(500):
        registry.add(f"m-{i}", i)

    won: list[int] = []
    won_lock = threading.Lock()

    def worker() -> None:
        for i in range(500):
            handle = registry.pop(f"m-{i}")
            if handle is not None:
                with won_lock:
                    won.append(handle)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(won) == list(range(500))
    assert len(registry) == 0
