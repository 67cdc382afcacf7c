from __future__ import annotations

import asyncio

import pytest

from agent_timeline.controller import TimelineController
from agent_timeline.models import Actor, Category, TimelineEntry, TimelineMode
from agent_timeline.playback import PlaybackEngine, step_delay_ms
from agent_timeline.store import TimelineStore


def _entry(seq: int, ts: int) -> TimelineEntry:
    return TimelineEntry(
        id=f"evt-{seq}",
        timestamp=ts,
        sequence_index=seq,
        source_event=None,
        from_actor=Actor.AGENT,
        to_actor=Actor.LLM,
        label=f"Entry {seq}",
        short_label="E",
        category=Category.CONTROL,
        session_id="s1",
    )


def _paused_store(timestamps: list[int]) -> TimelineStore:
    store = TimelineStore()
    store.append_batch(_entry(i, ts) for i, ts in enumerate(timestamps))
    store.set_mode(TimelineMode.PAUSED)
    store.set_cursor(0)
    return store


async def _until_stopped(engine: PlaybackEngine) -> None:
    for _ in range(200):
        if not engine.running:
            return
        await asyncio.sleep(0)
    raise AssertionError("playback did not finish")


def _recording_sleep(delays: list[float]):
    async def sleep(seconds: float) -> None:
        delays.append(round(seconds * 1000))
        await asyncio.sleep(0)

    return sleep


def test_step_delay_clamps() -> None:
    assert step_delay_ms(_entry(0, 0), _entry(1, 100), 1) == 100
    assert step_delay_ms(_entry(0, 0), _entry(1, 0), 1) == 16
    assert step_delay_ms(_entry(0, 0), _entry(1, 60_000), 1) == 2000
    assert step_delay_ms(_entry(0, 0), _entry(1, 1000), 4) == 250
    assert step_delay_ms(None, _entry(1, 0), 2) == 50


@pytest.mark.asyncio
async def test_delays_follow_timestamps() -> None:
    store = _paused_store([0, 100, 2100])
    delays: list[float] = []
    engine = PlaybackEngine(store, sleep=_recording_sleep(delays))
    store.set_mode(TimelineMode.PLAYING)
    await _until_stopped(engine)
    assert delays == [100, 2000]
    assert store.cursor == 2
    assert store.mode is TimelineMode.PAUSED


@pytest.mark.asyncio
async def test_end_of_history_goes_live_when_connected() -> None:
    store = _paused_store([0, 10])
    engine = PlaybackEngine(store, lambda: True, sleep=_recording_sleep([]))
    store.set_mode(TimelineMode.PLAYING)
    await _until_stopped(engine)
    assert store.mode is TimelineMode.LIVE
    assert store.cursor == 1


@pytest.mark.asyncio
async def test_speed_scales_delays() -> None:
    store = _paused_store([0, 1000, 2000])
    delays: list[float] = []
    engine = PlaybackEngine(store, speed=2, sleep=_recording_sleep(delays))
    store.set_mode(TimelineMode.PLAYING)
    await _until_stopped(engine)
    assert delays == [500, 500]


@pytest.mark.asyncio
async def test_pausing_cancels_pending_advance() -> None:
    store = _paused_store([0, 50, 100, 150])
    engine = PlaybackEngine(store)
    store.set_mode(TimelineMode.PLAYING)
    await asyncio.sleep(0)
    assert store.cursor == 1
    store.set_mode(TimelineMode.PAUSED)
    await asyncio.sleep(0.2)
    assert store.cursor == 1
    assert not engine.running


@pytest.mark.asyncio
async def test_disconnect_while_playing_stops_movement() -> None:
    controller = TimelineController()
    controller.store.append_batch(_entry(i, i * 50) for i in range(5))
    controller.store.set_mode(TimelineMode.PAUSED)
    controller.store.set_cursor(0)
    controller.play()
    await asyncio.sleep(0)
    await controller.disconnect()
    cursor = controller.store.cursor
    await asyncio.sleep(0.2)
    assert controller.store.cursor == cursor
    assert controller.store.mode is TimelineMode.PAUSED
    await controller.close()


def test_invalid_speed_is_rejected() -> None:
    store = TimelineStore()
    with pytest.raises(ValueError):
        PlaybackEngine(store, speed=3)
    engine = PlaybackEngine(store)
    with pytest.raises(ValueError):
        engine.speed = 0
    engine.speed = 0.5
    assert engine.speed == 0.5


def test_faster_and_slower_stop_at_the_ends() -> None:
    engine = PlaybackEngine(TimelineStore(), speed=2)
    assert engine.faster() == 4
    assert engine.faster() == 4
    engine.speed = 0.5
    assert engine.slower() == 0.25
    assert engine.slower() == 0.25
