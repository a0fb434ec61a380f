import asyncio

import pytest

from streamrelay.errors import ConfigurationError, StreamRelayError, UpstreamFetchError
from streamrelay.player.failover import FailoverOrchestrator
from streamrelay.player.models import StreamSource
from streamrelay.player.session import PlaybackSession, SessionCallbacks

SOURCES = [StreamSource(raw_url=f"https://cdn{i}.example/live/index.m3u8", label=f"Mirror {i}") for i in range(3)]


class FakeSession:
    def __init__(self, source, callbacks, fail_on_start=False):
        self.source = source
        self.callbacks = callbacks
        self.fail_on_start = fail_on_start
        self.started = False
        self.destroyed = False

    async def start(self):
        self.started = True
        if self.fail_on_start:
            self.fail()

    def fail(self, error=None):
        self.callbacks.on_error(error or UpstreamFetchError(None, "Network error: Unable to load stream"))

    def destroy(self):
        self.destroyed = True


class SessionLog:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sessions = []

    def __call__(self, source, callbacks):
        session = FakeSession(source, callbacks, fail_on_start=source.raw_url in self.failing)
        self.sessions.append(session)
        return session


async def settle(ticks=10):
    for _ in range(ticks):
        await asyncio.sleep(0)


def test_requires_candidates():
    with pytest.raises(ConfigurationError):
        FailoverOrchestrator([], SessionLog())


@pytest.mark.asyncio
async def test_fatal_errors_walk_the_candidates_and_wrap():
    factory = SessionLog()
    switches = []
    orchestrator = FailoverOrchestrator(SOURCES, factory, on_switch=lambda index, source: switches.append(index))
    await orchestrator.start()

    for _ in range(4):
        orchestrator.session.fail()
        await settle()

    assert switches == [0, 1, 2, 0, 1]
    assert orchestrator.index == 1
    assert orchestrator.active_source is SOURCES[1]
    assert [session.destroyed for session in factory.sessions] == [True, True, True, True, False]
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_failure_during_start_moves_on():
    factory = SessionLog(failing={SOURCES[0].raw_url, SOURCES[1].raw_url})
    orchestrator = FailoverOrchestrator(SOURCES, factory)

    await orchestrator.start()
    await settle()

    assert orchestrator.index == 2
    assert len(factory.sessions) == 3
    assert factory.sessions[-1].started
    assert not factory.sessions[-1].destroyed
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_consumer_sees_every_fatal_error():
    errors = []
    orchestrator = FailoverOrchestrator(SOURCES, SessionLog(), callbacks=SessionCallbacks(on_error=errors.append))
    await orchestrator.start()

    orchestrator.session.fail(StreamRelayError("boom"))
    await settle()

    assert [error.message for error in errors] == ["boom"]
    assert orchestrator.index == 1
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_manual_mode_only_reports():
    errors = []
    factory = SessionLog()
    orchestrator = FailoverOrchestrator(
        SOURCES, factory, auto_failover=False, callbacks=SessionCallbacks(on_error=errors.append)
    )
    await orchestrator.start()

    orchestrator.session.fail()
    await settle()

    assert len(errors) == 1
    assert orchestrator.index == 0
    assert len(factory.sessions) == 1

    await orchestrator.select(2)
    assert orchestrator.index == 2
    assert factory.sessions[0].destroyed
    assert factory.sessions[1].source is SOURCES[2]
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_errors_from_replaced_sessions_are_ignored():
    factory = SessionLog()
    orchestrator = FailoverOrchestrator(SOURCES, factory)
    await orchestrator.start()
    stale = orchestrator.session

    await orchestrator.select(1)
    stale.fail()
    await settle()

    assert orchestrator.index == 1
    assert len(factory.sessions) == 2
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_select_rejects_unknown_index():
    orchestrator = FailoverOrchestrator(SOURCES, SessionLog())
    await orchestrator.start()

    with pytest.raises(IndexError):
        await orchestrator.select(3)
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_single_candidate_restarts_itself():
    factory = SessionLog()
    orchestrator = FailoverOrchestrator(SOURCES[:1], factory)
    await orchestrator.start()

    orchestrator.session.fail()
    await settle()

    assert orchestrator.index == 0
    assert len(factory.sessions) == 2
    assert factory.sessions[0].destroyed
    orchestrator.destroy()


@pytest.mark.asyncio
async def test_destroy_stops_failover():
    factory = SessionLog()
    orchestrator = FailoverOrchestrator(SOURCES, factory)
    await orchestrator.start()
    session = orchestrator.session

    orchestrator.destroy()
    session.fail()
    await settle()

    assert session.destroyed
    assert orchestrator.session is None
    assert len(factory.sessions) == 1
    await orchestrator.start()
    assert len(factory.sessions) == 1


@pytest.mark.asyncio
async def test_real_sessions_fail_over_to_a_playable_source(media, engines, player_settings):
    candidates = [StreamSource(raw_url="   "), StreamSource(raw_url="https://cdn.example/live/index.m3u8")]

    def factory(source, callbacks):
        return PlaybackSession(source, media, engines.registry, callbacks=callbacks, settings=player_settings)

    orchestrator = FailoverOrchestrator(candidates, factory)
    await orchestrator.start()
    await settle()

    assert orchestrator.index == 1
    engines.segmented[0].emit("manifest_parsed")
    await settle()

    assert orchestrator.session.state.loaded
    assert not orchestrator.session.state.is_loading
    orchestrator.destroy()
