"""Unit tests for the request/reply discipline (Session)."""

import pytest

from comfortzone.frames import (
    ArgumentOutOfRange,
    Bus,
    BusSettings,
    EndOfStream,
    Function,
    InvalidFunction,
    InvalidIndex,
    decode_frame,
    encode_frame,
)
from comfortzone.transactions import ErrorReplyReceived, NoReplyReceived, Session

from conftest import LOCAL_ID, FakeStream, reply


def make_session(responses, **kwargs):
    """responses is a list with one entry per expected write: a list of
    byte strings to put on the bus after that write.
    """
    pending = list(responses)

    def on_write(stream, data):
        if pending:
            stream.chunks.extend(pending.pop(0))

    stream = FakeStream(on_write=on_write)
    sleeps = []
    session = Session(Bus(stream), sleep=sleeps.append, **kwargs)
    return (session, stream, sleeps)


def chatter(n):
    """n frames of cross-talk between other devices."""
    return [encode_frame(1, 2, Function.REPLY, [0, 1, 1, n]) for i in range(n)]


class TestSendWithReply:
    """Tests for send_with_reply."""

    def test_writes_request(self):
        (session, stream, sleeps) = make_session([[reply(1, [0, 1, 12, 7])]])

        session.send_with_reply(1, "read", 0, 1, 12)

        request = decode_frame(stream.written[0])
        assert request.destination == 1
        assert request.source == LOCAL_ID
        assert request.function == Function.READ
        assert request.data == bytes([0, 1, 12])

    def test_returns_matching_reply(self):
        (session, stream, sleeps) = make_session([[reply(1, [0, 1, 12, 7])]])

        frame = session.send_with_reply(1, Function.READ, 0, 1, 12)

        assert frame.data == bytes([0, 1, 12, 7])
        assert len(stream.written) == 1
        assert sleeps == []

    def test_skips_frames_for_other_devices(self):
        other = reply(1, [0, 1, 12, 8], destination=50)
        (session, stream, sleeps) = make_session([[other, reply(1, [0, 1, 12, 7])]])

        assert session.send_with_reply(1, "read", 0, 1, 12).data[3] == 7

    def test_skips_requests(self):
        """Our own echo or other READs addressed to us are not replies."""
        echo = encode_frame(LOCAL_ID, 1, Function.READ, [0, 1, 12])
        (session, stream, sleeps) = make_session([[echo, reply(1, [0, 1, 12, 7])]])

        assert session.send_with_reply(1, "read", 0, 1, 12).function == Function.REPLY

    def test_skips_reply_to_another_read(self):
        stale = reply(1, [0, 1, 16, 70])
        (session, stream, sleeps) = make_session([[stale, reply(1, [0, 1, 12, 7])]])

        assert session.send_with_reply(1, "read", 0, 1, 12).data[:3] == bytes([0, 1, 12])

    def test_write_reply_needs_no_echo(self):
        (session, stream, sleeps) = make_session([[reply(1, [0])]])

        frame = session.send_with_reply(1, "write", 0, 1, 12, 5)

        assert frame.data == b"\x00"

    def test_error_reply(self):
        nak = encode_frame(LOCAL_ID, 1, Function.ERROR, [0x0A])
        (session, stream, sleeps) = make_session([[nak]])

        with pytest.raises(ErrorReplyReceived) as e:
            session.send_with_reply(1, "read", 0, 1, 12)

        assert e.value.frame.data == b"\x0a"
        assert len(stream.written) == 1  # not retried

    def test_retry_after_collision(self):
        """Our first request is lost; the second is answered."""
        (session, stream, sleeps) = make_session([chatter(5), [reply(1, [0, 1, 12, 7])]])

        frame = session.send_with_reply(1, "read", 0, 1, 12)

        assert frame.data[3] == 7
        assert len(stream.written) == 2
        assert stream.written[0] == stream.written[1]
        assert sleeps == [3.0]

    def test_only_frames_per_attempt_frames_are_inspected(self):
        """The sixth frame after a send is too late for that attempt."""
        late = chatter(5) + [reply(1, [0, 1, 12, 7])]
        (session, stream, sleeps) = make_session([late, [reply(1, [0, 1, 12, 8])]])

        # the late reply is dropped before the resend; the resend's reply wins
        assert session.send_with_reply(1, "read", 0, 1, 12).data[3] == 8
        assert len(stream.written) == 2

    def test_stale_traffic_is_discarded_before_sending(self):
        """Bus traffic queued while nobody was reading does not hide the reply."""
        (session, stream, sleeps) = make_session([[reply(1, [0, 1, 12, 7])]] * 5)
        stream.chunks.extend(chatter(30))
        session.bus.feed(chatter(1)[0][:6])

        frame = session.send_with_reply(1, "read", 0, 1, 12)

        assert frame.data[3] == 7
        assert len(stream.written) == 1
        assert sleeps == []
        assert session.bus.buf == b""
        assert stream.discarded == 30 * len(chatter(1)[0])

    def test_each_resend_discards_late_traffic(self):
        (session, stream, sleeps) = make_session([chatter(8), [reply(1, [0, 1, 12, 7])]])

        assert session.send_with_reply(1, "read", 0, 1, 12).data[3] == 7
        assert len(stream.written) == 2
        assert stream.discarded == 3 * len(chatter(1)[0])

    def test_no_reply(self):
        (session, stream, sleeps) = make_session([chatter(5)] * 5)

        with pytest.raises(NoReplyReceived):
            session.send_with_reply(1, "read", 0, 1, 12)

        assert len(stream.written) == 5
        assert sleeps == [3.0] * 5

    def test_settings(self):
        settings = BusSettings(send_attempts=2, frames_per_attempt=1, retry_backoff=0.25)
        (session, stream, sleeps) = make_session([chatter(1)] * 2, settings=settings)

        with pytest.raises(NoReplyReceived):
            session.send_with_reply(1, "read", 0, 1, 12)

        assert len(stream.written) == 2
        assert sleeps == [0.25, 0.25]

    def test_end_of_stream_is_not_retried(self):
        (session, stream, sleeps) = make_session([])

        with pytest.raises(EndOfStream):
            session.send_with_reply(1, "read", 0, 1, 12)

        assert len(stream.written) == 1

    def test_invalid_function(self):
        (session, stream, sleeps) = make_session([])
        with pytest.raises(InvalidFunction):
            session.send_with_reply(1, "status", 0, 1, 12)
        assert stream.written == []

    def test_data_out_of_range(self):
        (session, stream, sleeps) = make_session([])
        with pytest.raises(ArgumentOutOfRange):
            session.send_with_reply(1, "write", 0, 1, 12, 256)


class TestRows:
    """Tests for read_row and write_row."""

    def test_read_row(self):
        (session, stream, sleeps) = make_session([[reply(9, [0, 9, 5, 0x21])]])

        assert session.read_row(9, 5) == bytes([0, 9, 5, 0x21])
        request = decode_frame(stream.written[0])
        assert request.destination == 9
        assert request.data == bytes([0, 9, 5])

    def test_write_row(self):
        (session, stream, sleeps) = make_session([[reply(1, [0])]])

        session.write_row(1, 16, [72, 73])

        request = decode_frame(stream.written[0])
        assert request.function == Function.WRITE
        assert request.data == bytes([0, 1, 16, 72, 73])


class TestSession:
    """Tests for Session construction and status."""

    @pytest.mark.parametrize("zones", [0, 9])
    def test_zone_count(self, zones):
        with pytest.raises(InvalidIndex):
            Session(None, zones=zones)

    def test_local_id(self):
        with pytest.raises(ArgumentOutOfRange):
            Session(None, local_id=300)

    def test_custom_local_id(self):
        answer = reply(1, [0, 1, 12, 7], destination=42)
        (session, stream, sleeps) = make_session([[answer]], local_id=42)

        assert session.send_with_reply(1, "read", 0, 1, 12).destination == 42
        assert decode_frame(stream.written[0]).source == 42

    def test_live_and_replayed_status_match(self, rows):
        responses = [[reply(table, rows[(table, row)])] for (table, row) in
                     [(9, 3), (9, 4), (9, 5), (1, 9), (1, 12), (1, 16), (1, 17), (1, 18), (1, 24)]]
        (session, stream, sleeps) = make_session(responses, zones=3)

        live = session.get_status_data()
        replayed = Session(None, zones=3).get_status_data(live.raw)
        replayed.time = live.time

        assert len(stream.written) == 9
        assert replayed == live
        assert live.zones[0].cool_setpoint == 74
