"""Tests for the supervisor ↔ worker frame protocol."""

from __future__ import annotations

import asyncio
import io
import json

import pytest

from clawbridge.ipc import (
    IPC_MARKER,
    ErrorMessage,
    ReadyMessage,
    RestartMessage,
    StateMessage,
    UnknownMessage,
    WorkerChannel,
    decode_frame,
    encode_frame,
    pump_frames,
)
from clawbridge.state import RestartState


class TestEncodeFrame:
    def test_ready_frame_is_one_marked_line(self):
        frame = encode_frame(ReadyMessage())
        assert frame == f'{IPC_MARKER}{{"type": "ready"}}\n'
        assert frame.count("\n") == 1

    def test_state_frame_carries_state_record(self):
        state = RestartState(chat_ids=["C1"], message_ids=["M1"], status="success", timestamp=9)
        frame = encode_frame(StateMessage(state=state))
        body = json.loads(frame[len(IPC_MARKER) :])
        assert body == {"type": "state", "state": state.to_dict()}


class TestDecodeFrame:
    def test_round_trip_preserves_message(self):
        state = RestartState(status="rollback", error="boom", stash_created=True, timestamp=1)
        for msg in (ReadyMessage(), RestartMessage(), ErrorMessage("bad"), StateMessage(state)):
            assert decode_frame(encode_frame(msg)) == msg

    def test_unmarked_line_is_not_a_frame(self):
        assert decode_frame("plain log output\n") is None
        assert decode_frame('{"type": "ready"}') is None

    def test_malformed_json_is_ignored(self):
        assert decode_frame(f"{IPC_MARKER}{{not json") is None

    def test_non_object_body_is_ignored(self):
        assert decode_frame(f"{IPC_MARKER}[1, 2, 3]") is None

    def test_state_frame_without_state_is_ignored(self):
        assert decode_frame(f'{IPC_MARKER}{{"type": "state"}}') is None

    def test_state_frame_with_bad_status_is_ignored(self):
        line = f'{IPC_MARKER}{{"type": "state", "state": {{"status": "weird"}}}}'
        assert decode_frame(line) is None

    def test_unknown_type_is_surfaced(self):
        msg = decode_frame(f'{IPC_MARKER}{{"type": "ping", "n": 1}}')
        assert isinstance(msg, UnknownMessage)
        assert msg.type_name == "ping"
        assert msg.payload["n"] == 1

    def test_error_frame_without_error_field(self):
        assert decode_frame(f'{IPC_MARKER}{{"type": "error"}}') == ErrorMessage("")


def _reader(*lines: str) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line.encode())
    reader.feed_eof()
    return reader


class TestPumpFrames:
    async def test_dispatches_frames_and_relays_other_lines(self):
        received = []
        passthrough = []

        async def on_message(msg):
            received.append(msg)

        await pump_frames(
            _reader(
                "booting...\n",
                encode_frame(ReadyMessage()),
                "\n",
                f"{IPC_MARKER}garbage\n",
                encode_frame(ErrorMessage("oops")),
            ),
            on_message,
            passthrough.append,
        )

        assert received == [ReadyMessage(), ErrorMessage("oops")]
        assert passthrough == ["booting..."]

    async def test_returns_at_eof(self):
        async def on_message(msg):
            raise AssertionError("no frames expected")

        await asyncio.wait_for(pump_frames(_reader(), on_message), timeout=1)


class TestWorkerChannel:
    def test_send_writes_frame_when_supervised(self):
        out = io.StringIO()
        ipc = WorkerChannel(stdout=out, supervised=True)
        assert ipc.send(RestartMessage()) is True
        assert out.getvalue() == encode_frame(RestartMessage())

    def test_send_is_noop_when_unsupervised(self):
        out = io.StringIO()
        ipc = WorkerChannel(stdout=out, supervised=False)
        assert ipc.send(ReadyMessage()) is False
        assert out.getvalue() == ""

    def test_send_reports_closed_stdout(self):
        out = io.StringIO()
        out.close()
        ipc = WorkerChannel(stdout=out, supervised=True)
        assert ipc.send(ReadyMessage()) is False

    def test_supervised_flag_from_environment(self, monkeypatch):
        monkeypatch.setenv("CLAWBRIDGE_SUPERVISED", "1")
        assert WorkerChannel().supervised is True
        monkeypatch.delenv("CLAWBRIDGE_SUPERVISED")
        assert WorkerChannel().supervised is False

    async def test_listen_returns_immediately_when_unsupervised(self):
        ipc = WorkerChannel(supervised=False)

        async def on_message(msg):
            raise AssertionError("unexpected frame")

        await asyncio.wait_for(ipc.listen(on_message), timeout=1)

    async def test_listen_dispatches_state_frames(self):
        state = RestartState(chat_ids=["C1"], message_ids=["M1"], status="success", timestamp=3)
        ipc = WorkerChannel(supervised=True)
        received = []

        async def on_message(msg):
            received.append(msg)

        await ipc.listen(on_message, reader=_reader(encode_frame(StateMessage(state))))
        assert received == [StateMessage(state)]


@pytest.mark.parametrize("status", ["restarting", "success", "rollback"])
def test_state_status_survives_frame(status):
    state = RestartState(status=status, timestamp=1)
    decoded = decode_frame(encode_frame(StateMessage(state)))
    assert isinstance(decoded, StateMessage)
    assert decoded.state.status == status
