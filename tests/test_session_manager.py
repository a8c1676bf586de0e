from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from liverec.chapters import Chapter
from liverec.chzzk_api import ChzzkApiError, LiveDetail, LiveStatus, LiveStatusType
from liverec.config import PostProcess
from liverec.finalizer import FinalizeOutcome, MuxError
from liverec.process_supervisor import CapturePoll, CaptureStatus
from liverec.session import SessionManager, SessionState

OPEN = LiveStatusType.OPEN
CLOSE = LiveStatusType.CLOSE


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeClient:
    def __init__(self, statuses=(), detail: LiveDetail | None = None) -> None:
        self.statuses = list(statuses)
        self.detail = detail
        self.status_calls = 0
        self.detail_calls = 0
        self.auths = []

    async def get_live_status(self, channel_id, auth=None):
        self.status_calls += 1
        self.auths.append(auth)
        item = self.statuses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def get_live_detail(self, channel_id, auth=None):
        self.detail_calls += 1
        if isinstance(self.detail, Exception):
            raise self.detail
        return self.detail


class FakeSupervisor:
    def __init__(self) -> None:
        self.polls: list[CapturePoll] = []
        self.started = []
        self.start_error: Exception | None = None
        self.terminated = 0
        self.released = 0
        self.owned = False
        self.transcode_rc = None
        self.transcode_polls = 0
        self.events: list[str] = []

    def start(self, stream_url, output_path, transcode=None):
        if self.start_error is not None:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            raise self.start_error
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.started.append((stream_url, Path(output_path), transcode))
        self.owned = True
        return object()

    def poll_capture(self) -> CapturePoll:
        if self.polls:
            return self.polls.pop(0)
        return CapturePoll(CaptureStatus.RUNNING)

    def poll_transcode(self):
        self.transcode_polls += 1
        return self.transcode_rc

    def release(self) -> None:
        self.events.append("release")
        self.released += 1
        self.owned = False

    def terminate_and_wait(self):
        self.terminated += 1
        self.owned = False
        return -15


class FakeFinalizer:
    def __init__(self, error: Exception | None = None, events: list[str] | None = None) -> None:
        self.calls = []
        self.events = events
        self.error = error

    def finalize(self, session):
        if self.events is not None:
            self.events.append("finalize")
        self.calls.append((session, [Chapter(c.offset, c.title, c.category) for c in session.chapters]))
        if self.error is not None:
            raise self.error
        return FinalizeOutcome.CHAPTERED


def _detail(title="Opening", category="Talk", url="https://example.test/hls.m3u8", adult=False):
    return LiveDetail(
        status=OPEN,
        title=title,
        category=category,
        channel_id="abc",
        channel_name="Streamer",
        adult=adult,
        playback_url=url,
    )


def _status(title, category, state=OPEN):
    return LiveStatus(state, title, category)


def _manager(tmp_path, client, supervisor=None, finalizer=None, clock=None, **kwargs):
    return SessionManager(
        client=client,
        channel_id="abc",
        save_directory=tmp_path / "Streamer",
        supervisor=supervisor or FakeSupervisor(),
        finalizer=finalizer or FakeFinalizer(),
        clock=clock or FakeClock(),
        poll_interval=0.01,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_idle_stays_idle_when_offline(tmp_path):
    client = FakeClient([_status("", None, CLOSE)])
    manager = _manager(tmp_path, client)

    wait = await manager.tick()

    assert wait is True
    assert manager.state is SessionState.IDLE
    assert client.detail_calls == 0


@pytest.mark.asyncio
async def test_idle_to_capturing_seeds_first_chapter(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    manager = _manager(tmp_path, client, supervisor)

    await manager.tick()

    assert manager.state is SessionState.CAPTURING
    assert manager.session.chapters == [Chapter(0, "Opening", "Talk")]
    url, output, transcode = supervisor.started[0]
    assert url == "https://example.test/hls.m3u8"
    assert output.name == "index.mkv"
    assert output.parent.parent == tmp_path / "Streamer"
    assert output.parent.is_dir()
    assert transcode is None


@pytest.mark.asyncio
async def test_post_process_passes_transcode_options(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    manager = _manager(
        tmp_path,
        client,
        supervisor,
        post_process=PostProcess(enabled=True, video_codec="libx265", audio_codec="aac"),
    )

    await manager.tick()

    transcode = supervisor.started[0][2]
    assert transcode.video_codec == "libx265"
    assert transcode.audio_codec == "aac"
    assert transcode.title == "Opening"
    assert transcode.artist == "Streamer"


@pytest.mark.asyncio
async def test_adult_stream_without_playback_is_skipped(tmp_path):
    client = FakeClient([_status("x", None)], detail=_detail(url=None, adult=True))
    supervisor = FakeSupervisor()
    manager = _manager(tmp_path, client, supervisor)

    await manager.tick()

    assert manager.state is SessionState.IDLE
    assert supervisor.started == []


@pytest.mark.asyncio
async def test_api_error_while_idle_is_transient(tmp_path):
    client = FakeClient([ChzzkApiError("timeout")])
    manager = _manager(tmp_path, client)

    assert await manager.tick() is True
    assert manager.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_spawn_failure_stays_idle_and_cleans_directory(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    supervisor.start_error = FileNotFoundError("streamlink")
    manager = _manager(tmp_path, client, supervisor)

    wait = await manager.tick()

    assert wait is True
    assert manager.state is SessionState.IDLE
    assert list((tmp_path / "Streamer").iterdir()) == []


@pytest.mark.asyncio
async def test_capturing_feeds_tracker(tmp_path):
    clock = FakeClock()
    client = FakeClient(
        [
            _status("Opening", "Talk"),
            _status("Opening", "Talk"),
            _status("Opening", "Games"),
            _status("Ranked", "Games"),
        ],
        detail=_detail(),
    )
    manager = _manager(tmp_path, client, clock=clock)

    await manager.tick()
    for step in (5, 10, 20):
        clock.now += step
        assert await manager.tick() is True

    assert manager.session.chapters == [
        Chapter(0, "Opening", "Games"),
        Chapter(35, "Ranked", "Games"),
    ]


@pytest.mark.asyncio
async def test_status_error_while_capturing_keeps_session(tmp_path):
    client = FakeClient([_status("Opening", "Talk"), ChzzkApiError("503")], detail=_detail())
    manager = _manager(tmp_path, client)

    await manager.tick()
    assert await manager.tick() is True

    assert manager.state is SessionState.CAPTURING
    assert len(manager.session.chapters) == 1


@pytest.mark.asyncio
async def test_process_exit_takes_precedence_over_status(tmp_path):
    client = FakeClient([_status("Opening", "Talk"), _status("Other", "Games")], detail=_detail())
    supervisor = FakeSupervisor()
    finalizer = FakeFinalizer()
    manager = _manager(tmp_path, client, supervisor, finalizer)

    await manager.tick()
    supervisor.polls.append(CapturePoll(CaptureStatus.EXITED, returncode=0))
    wait = await manager.tick()

    assert wait is False
    assert manager.state is SessionState.IDLE
    assert client.status_calls == 1
    assert len(finalizer.calls) == 1
    assert finalizer.calls[0][1] == [Chapter(0, "Opening", "Talk")]
    assert supervisor.released == 1


@pytest.mark.asyncio
async def test_poll_error_is_treated_like_exit(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    finalizer = FakeFinalizer()
    manager = _manager(tmp_path, client, supervisor, finalizer)

    await manager.tick()
    supervisor.polls.append(CapturePoll(CaptureStatus.ERROR, error=OSError("gone")))

    assert await manager.tick() is False
    assert manager.state is SessionState.IDLE
    assert len(finalizer.calls) == 1


@pytest.mark.asyncio
async def test_poll_error_tears_down_children_before_finalizing(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    finalizer = FakeFinalizer(events=supervisor.events)
    manager = _manager(tmp_path, client, supervisor, finalizer)

    await manager.tick()
    supervisor.polls.append(CapturePoll(CaptureStatus.ERROR, error=OSError("gone")))
    await manager.tick()

    assert supervisor.events == ["release", "finalize"]
    assert supervisor.terminated == 0
    assert not supervisor.owned


@pytest.mark.asyncio
async def test_early_transcoder_exit_is_noted_once(tmp_path):
    client = FakeClient([_status("Opening", "Talk")] * 3, detail=_detail())
    supervisor = FakeSupervisor()
    manager = _manager(tmp_path, client, supervisor)

    await manager.tick()
    supervisor.transcode_rc = 1
    await manager.tick()
    await manager.tick()

    assert manager.state is SessionState.CAPTURING
    assert manager.session.transcode_returncode == 1
    assert supervisor.transcode_polls == 1


@pytest.mark.asyncio
async def test_finalize_errors_still_return_to_idle(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    manager = _manager(tmp_path, client, supervisor, FakeFinalizer(MuxError("bad file")))

    await manager.tick()
    supervisor.polls.append(CapturePoll(CaptureStatus.EXITED, returncode=1))

    assert await manager.tick() is False
    assert manager.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_auth_provider_refreshes_each_tick(tmp_path):
    sentinel = object()

    async def provider():
        return sentinel

    client = FakeClient([_status("", None, CLOSE)])
    manager = _manager(tmp_path, client, auth_provider=provider)

    await manager.tick()

    assert manager.auth is sentinel
    assert client.auths == [sentinel]


@pytest.mark.asyncio
async def test_shutdown_while_idle_finalizes_nothing(tmp_path):
    supervisor = FakeSupervisor()
    finalizer = FakeFinalizer()
    manager = _manager(tmp_path, FakeClient(), supervisor, finalizer)
    stop = asyncio.Event()
    stop.set()

    await asyncio.wait_for(manager.run(stop), timeout=1.0)

    assert supervisor.terminated == 0
    assert finalizer.calls == []


@pytest.mark.asyncio
async def test_shutdown_finalizes_exactly_once_with_pending_exit(tmp_path):
    client = FakeClient([_status("Opening", "Talk")], detail=_detail())
    supervisor = FakeSupervisor()
    finalizer = FakeFinalizer()
    manager = _manager(tmp_path, client, supervisor, finalizer)

    await manager.tick()
    supervisor.polls.append(CapturePoll(CaptureStatus.EXITED, returncode=0))
    stop = asyncio.Event()
    stop.set()

    await asyncio.wait_for(manager.run(stop), timeout=1.0)

    assert supervisor.terminated == 1
    assert len(finalizer.calls) == 1
    assert manager.state is SessionState.IDLE

    manager.shutdown()
    assert len(finalizer.calls) == 1


@pytest.mark.asyncio
async def test_stop_interrupts_tick_delay(tmp_path):
    statuses = [_status("Opening", "Talk")] + [_status("Opening", "Talk")] * 50
    client = FakeClient(statuses, detail=_detail())
    supervisor = FakeSupervisor()
    finalizer = FakeFinalizer()
    manager = _manager(tmp_path, client, supervisor, finalizer)
    manager.poll_interval = 30.0
    stop = asyncio.Event()

    task = asyncio.create_task(manager.run(stop))
    await asyncio.sleep(0.05)
    assert manager.state is SessionState.CAPTURING
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert supervisor.terminated == 1
    assert len(finalizer.calls) == 1


@pytest.mark.asyncio
async def test_run_survives_unexpected_tick_errors(tmp_path):
    client = FakeClient([RuntimeError("parser bug"), _status("", None, CLOSE)])
    manager = _manager(tmp_path, client)
    stop = asyncio.Event()

    task = asyncio.create_task(manager.run(stop))
    while client.status_calls < 2:
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert client.status_calls == 2
