import asyncio
import base64

import numpy as np
import pytest

from callscribe.asr.base import ConnectionState, StatusChange, TranscriberFailure, TranscriberStatus, TranscriptUpdate
from callscribe.asr.realtime import EVENT_COMPLETED, EVENT_DELTA, StreamingTranscriber, build_session_config
from callscribe.audio.frame_buffer import AudioFrameBuffer
from callscribe.errors import MISSING_API_KEY, REMOTE_ERROR, TRANSPORT_ERROR, TranscriptionError
from tests.fakes import FakeConnector, drain, wait_until


def _transcriber(connector, **kwargs):
    kwargs.setdefault("api_key", "sk-test")
    kwargs.setdefault("stale_timeout", 0)
    return StreamingTranscriber(connector=connector, **kwargs)


async def _connected(connector, **kwargs):
    t = _transcriber(connector, **kwargs)
    await t.start()
    await wait_until(lambda: t.state is ConnectionState.CONNECTED)
    return t


def _statuses(events):
    return [e.status for e in events if isinstance(e, StatusChange)]


def _updates(events):
    return [e for e in events if isinstance(e, TranscriptUpdate)]


def test_session_config_is_first_message():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector, model="gpt-4o-realtime-preview", language="en")
        url, headers = connector.calls[0]
        assert "model=gpt-4o-realtime-preview" in url
        assert headers["Authorization"] == "Bearer sk-test"
        first = connector.socket.sent[0]
        assert first["type"] == "session.update"
        session = first["session"]
        assert session["modalities"] == ["text"]
        assert session["input_audio_transcription"] == {"model": "whisper-1", "language": "en"}
        assert session["turn_detection"] == {
            "type": "server_vad",
            "threshold": 0.5,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 1000,
        }
        assert _statuses(drain(t.events)) == [TranscriberStatus.CONNECTING, TranscriberStatus.CONNECTED]
        await t.disconnect()

    asyncio.run(scenario())


def test_language_omitted_when_not_set():
    config = build_session_config("whisper-1", None, "server_vad", 0.5, 300, 1000)
    assert "language" not in config["session"]["input_audio_transcription"]


def test_frames_are_sent_as_base64_pcm16():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        buf = AudioFrameBuffer(capacity=4)
        frames = buf.push([1.0, -1.0, 0.0, 0.5, 0.25, 0.0, 0.0, 0.0])
        for frame in frames:
            t.send_frame(frame)
        await wait_until(lambda: len(connector.socket.appended()) == 2)
        decoded = np.frombuffer(base64.b64decode(connector.socket.appended()[0]["audio"]), dtype="<i2")
        assert decoded.tolist() == frames[0].samples.tolist()
        assert t.frames_sent == 2
        await t.disconnect()

    asyncio.run(scenario())


def test_frames_before_connect_are_dropped():
    async def scenario():
        connector = FakeConnector(block=True)
        t = _transcriber(connector)
        await t.start()
        (frame,) = AudioFrameBuffer(capacity=2).push([0.1, 0.2])
        t.send_frame(frame)
        await t.disconnect()
        assert connector.socket.appended() == []

    asyncio.run(scenario())


def test_deltas_accumulate_and_completion_finalizes():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        drain(t.events)
        sock = connector.socket
        sock.feed({"type": EVENT_DELTA, "item_id": "item_1", "delta": "Hello"})
        sock.feed({"type": EVENT_DELTA, "item_id": "item_1", "delta": " there"})
        sock.feed({"type": EVENT_COMPLETED, "item_id": "item_1", "transcript": "Hello there."})
        await wait_until(lambda: t.events.qsize() == 3)
        updates = _updates(drain(t.events))
        assert [(u.utterance_id, u.text, u.is_final) for u in updates] == [
            ("item_1", "Hello", False),
            ("item_1", "Hello there", False),
            ("item_1", "Hello there.", True),
        ]
        assert await t.stop() == "Hello there."

    asyncio.run(scenario())


def test_malformed_and_unknown_messages_are_ignored():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        drain(t.events)
        sock = connector.socket
        sock.feed_raw("{not json")
        sock.feed_raw("[1, 2]")
        sock.feed({"type": "session.updated"})
        sock.feed({"type": EVENT_DELTA, "delta": "no id"})
        sock.feed({"type": EVENT_DELTA, "item_id": "a", "delta": "ok"})
        await wait_until(lambda: t.events.qsize() == 1)
        assert t.state is ConnectionState.CONNECTED
        (update,) = drain(t.events)
        assert update.text == "ok"
        await t.disconnect()

    asyncio.run(scenario())


def test_server_error_is_reported_without_closing():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        drain(t.events)
        connector.socket.feed({"type": "error", "error": {"message": "rate limited"}})
        await wait_until(lambda: not t.events.empty())
        (failure,) = drain(t.events)
        assert isinstance(failure, TranscriberFailure)
        assert failure.code == REMOTE_ERROR and failure.message == "rate limited"
        assert t.state is ConnectionState.CONNECTED
        assert connector.socket.closed is False
        await t.disconnect()

    asyncio.run(scenario())


def test_transport_close_moves_to_disconnected():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        drain(t.events)
        connector.socket.server_close()
        await wait_until(lambda: t.state is ConnectionState.DISCONNECTED)
        assert _statuses(drain(t.events)) == [TranscriberStatus.DISCONNECTED]
        await t.disconnect()

    asyncio.run(scenario())


def test_transport_error_moves_to_errored():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        drain(t.events)
        connector.socket.fail(OSError("reset by peer"))
        await wait_until(lambda: t.state is ConnectionState.ERRORED)
        events = drain(t.events)
        assert isinstance(events[0], TranscriberFailure) and events[0].code == TRANSPORT_ERROR
        assert _statuses(events) == [TranscriberStatus.ERROR]
        await t.disconnect()
        assert t.state is ConnectionState.DISCONNECTED

    asyncio.run(scenario())


def test_connect_failure_reports_error():
    async def scenario():
        t = _transcriber(FakeConnector(error=OSError("connection refused")))
        await t.start()
        await wait_until(lambda: t.state is ConnectionState.ERRORED)
        assert _statuses(drain(t.events)) == [TranscriberStatus.CONNECTING, TranscriberStatus.ERROR]
        await t.disconnect()

    asyncio.run(scenario())


def test_disconnect_while_connecting_never_reaches_connected():
    async def scenario():
        connector = FakeConnector(block=True)
        t = _transcriber(connector)
        await t.start()
        assert t.state is ConnectionState.CONNECTING
        await t.disconnect()
        assert t.state is ConnectionState.DISCONNECTED
        statuses = _statuses(drain(t.events))
        assert TranscriberStatus.CONNECTED not in statuses
        assert statuses[-1] is TranscriberStatus.DISCONNECTED
        await asyncio.sleep(0.05)
        assert t.events.empty()

    asyncio.run(scenario())


def test_no_events_after_disconnect_returns():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        await t.disconnect()
        drain(t.events)
        connector.socket.feed({"type": EVENT_COMPLETED, "item_id": "late", "transcript": "late"})
        await asyncio.sleep(0.05)
        assert t.events.empty()
        assert connector.socket.closed is True

    asyncio.run(scenario())


def test_disconnect_is_idempotent_from_idle():
    async def scenario():
        t = _transcriber(FakeConnector())
        await t.disconnect()
        await t.disconnect()
        assert t.state is ConnectionState.DISCONNECTED
        assert _statuses(drain(t.events)) == [TranscriberStatus.DISCONNECTED]

    asyncio.run(scenario())


def test_start_is_ignored_unless_idle():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        await t.start()
        assert len(connector.calls) == 1
        await t.disconnect()

    asyncio.run(scenario())


def test_start_without_credential_is_rejected():
    async def scenario():
        t = StreamingTranscriber(api_key="", connector=FakeConnector())
        with pytest.raises(TranscriptionError) as info:
            await t.start()
        assert info.value.code == MISSING_API_KEY
        assert t.state is ConnectionState.IDLE

    asyncio.run(scenario())


def test_stale_connection_is_closed():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector, stale_timeout=0.1)
        await wait_until(lambda: t.state is ConnectionState.DISCONNECTED, timeout=2.0)
        assert connector.socket.closed is True
        await t.disconnect()

    asyncio.run(scenario())


def test_receive_error_closes_socket():
    async def scenario():
        connector = FakeConnector()
        t = await _connected(connector)
        connector.socket.fail(RuntimeError("bad frame"))
        await wait_until(lambda: t.state is ConnectionState.ERRORED)
        assert connector.socket.closed is True
        await t.disconnect()
        assert connector.socket.closed is True
        assert t.state is ConnectionState.DISCONNECTED

    asyncio.run(scenario())


def test_session_config_send_error_closes_socket():
    async def scenario():
        connector = FakeConnector()
        connector.socket.send_error = RuntimeError("encoder exploded")
        t = _transcriber(connector)
        await t.start()
        await wait_until(lambda: t.state is ConnectionState.ERRORED)
        assert connector.socket.closed is True
        events = drain(t.events)
        assert [e.code for e in events if isinstance(e, TranscriberFailure)] == [TRANSPORT_ERROR]
        assert TranscriberStatus.CONNECTED not in _statuses(events)
        await t.disconnect()

    asyncio.run(scenario())
