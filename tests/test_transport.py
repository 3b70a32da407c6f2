"""Tests for the KCP and TCP transport adapters."""

import pytest

from inventory_tap.sniffer.capture import RawFrame
from inventory_tap.sniffer.transport import (
    KCP_CMD_ACK, Control, KcpAdapter, TcpAdapter, TransportEvent,
    build_control, build_kcp_segment, create_adapter, parse_control, parse_kcp_segments,
)


def _make_frame(direction: str, payload: bytes, protocol: str = "udp",
                seq: int = 0, flags: str = "") -> RawFrame:
    return RawFrame(
        timestamp=1000.0,
        direction=direction,
        protocol=protocol,
        src_ip="192.168.1.100" if direction == "C2S" else "47.100.10.20",
        dst_ip="47.100.10.20" if direction == "C2S" else "192.168.1.100",
        src_port=54321 if direction == "C2S" else 22102,
        dst_port=22102 if direction == "C2S" else 54321,
        payload=payload,
        seq=seq,
        flags=flags,
    )


class TestKcpWire:

    def test_control_round_trip(self):
        raw = build_control(Control.CONNECT, conv=0, token=0, data=1234567890)
        assert len(raw) == 20
        assert raw[:4] == b"\x00\x00\x00\xff"
        assert raw[-4:] == b"\xff\xff\xff\xff"
        assert parse_control(raw) == (Control.CONNECT, 0)

    def test_established_carries_conv(self):
        raw = build_control(Control.ESTABLISHED, conv=0x1234, token=0x5678)
        assert parse_control(raw) == (Control.ESTABLISHED, 0x1234)

    def test_not_a_control_datagram(self):
        assert parse_control(b"\x00" * 20) is None
        assert parse_control(build_kcp_segment(0, b"abc")) is None

    def test_multiple_segments_in_one_datagram(self):
        payload = build_kcp_segment(5, b"hello") + build_kcp_segment(6, b"world", cmd=KCP_CMD_ACK)
        segs = parse_kcp_segments(payload)
        assert [(s.sn, s.cmd, s.data) for s in segs] == [
            (5, 81, b"hello"),
            (6, KCP_CMD_ACK, b"world"),
        ]

    def test_truncated_segment_ends_parsing(self):
        payload = build_kcp_segment(1, b"full") + build_kcp_segment(2, b"cut off")[:-3]
        segs = parse_kcp_segments(payload)
        assert [s.sn for s in segs] == [1]


class TestKcpAdapter:

    def test_classify(self):
        adapter = KcpAdapter()
        assert adapter.classify(_make_frame("C2S", build_control(Control.CONNECT))) is TransportEvent.OPEN
        assert adapter.classify(_make_frame("S2C", build_control(Control.DISCONNECT))) is TransportEvent.CLOSE
        assert adapter.classify(_make_frame("S2C", build_control(Control.ESTABLISHED))) is None
        assert adapter.classify(_make_frame("S2C", build_kcp_segment(0, b"x"))) is None

    def test_only_push_segments_with_data(self):
        adapter = KcpAdapter()
        payload = (
            build_kcp_segment(0, b"data")
            + build_kcp_segment(0, b"", cmd=KCP_CMD_ACK)
            + build_kcp_segment(1, b"")
            + build_kcp_segment(2, b"more")
        )
        segs = adapter.segments(_make_frame("S2C", payload))
        assert [(s.seq, s.data) for s in segs] == [(0, b"data"), (2, b"more")]
        assert all(s.direction == "S2C" and not s.byte_sequenced for s in segs)

    def test_control_datagram_has_no_segments(self):
        adapter = KcpAdapter()
        assert adapter.segments(_make_frame("C2S", build_control(Control.CONNECT))) == []


class TestTcpAdapter:

    def test_classify(self):
        adapter = TcpAdapter()
        assert adapter.classify(_make_frame("C2S", b"", "tcp", flags="S")) is TransportEvent.OPEN
        assert adapter.classify(_make_frame("S2C", b"", "tcp", flags="SA")) is None
        assert adapter.classify(_make_frame("S2C", b"", "tcp", flags="R")) is TransportEvent.CLOSE
        assert adapter.classify(_make_frame("S2C", b"x", "tcp", flags="PA")) is None

    def test_close_needs_fin_from_both_sides(self):
        adapter = TcpAdapter()
        assert adapter.classify(_make_frame("C2S", b"", "tcp", flags="FA")) is None
        # Server keeps sending after the client half-closed
        assert adapter.classify(_make_frame("S2C", b"late", "tcp", flags="PA")) is None
        assert adapter.classify(_make_frame("C2S", b"", "tcp", flags="FA")) is None
        assert adapter.classify(_make_frame("S2C", b"", "tcp", flags="FA")) is TransportEvent.CLOSE

    def test_rst_after_half_close(self):
        adapter = TcpAdapter()
        adapter.classify(_make_frame("S2C", b"", "tcp", flags="FA"))
        assert adapter.classify(_make_frame("C2S", b"", "tcp", flags="R")) is TransportEvent.CLOSE

    def test_offsets_relative_to_syn(self):
        adapter = TcpAdapter()
        assert adapter.segments(_make_frame("S2C", b"", "tcp", seq=5000, flags="SA")) == []
        seg = adapter.segments(_make_frame("S2C", b"abc", "tcp", seq=5001, flags="PA"))[0]
        assert seg.seq == 0
        assert seg.byte_sequenced
        seg = adapter.segments(_make_frame("S2C", b"def", "tcp", seq=5004, flags="PA"))[0]
        assert seg.seq == 3

    def test_base_from_first_segment_without_syn(self):
        adapter = TcpAdapter()
        seg = adapter.segments(_make_frame("C2S", b"abc", "tcp", seq=777, flags="PA"))[0]
        assert seg.seq == 0

    def test_directions_have_separate_bases(self):
        adapter = TcpAdapter()
        adapter.segments(_make_frame("C2S", b"ab", "tcp", seq=100, flags="PA"))
        seg = adapter.segments(_make_frame("S2C", b"cd", "tcp", seq=9000, flags="PA"))[0]
        assert seg.seq == 0

    def test_sequence_wraparound(self):
        adapter = TcpAdapter()
        adapter.segments(_make_frame("S2C", b"", "tcp", seq=0xFFFFFFFE, flags="SA"))
        first = adapter.segments(_make_frame("S2C", b"ab", "tcp", seq=0xFFFFFFFF, flags="PA"))[0]
        second = adapter.segments(_make_frame("S2C", b"cd", "tcp", seq=1, flags="PA"))[0]
        assert first.seq == 0
        assert second.seq == 2

    def test_retransmission_before_base_is_negative(self):
        adapter = TcpAdapter()
        adapter.segments(_make_frame("S2C", b"abc", "tcp", seq=1000, flags="PA"))
        seg = adapter.segments(_make_frame("S2C", b"xyz", "tcp", seq=990, flags="PA"))[0]
        assert seg.seq == -10

    def test_create_adapter(self):
        assert isinstance(create_adapter("tcp"), TcpAdapter)
        assert isinstance(create_adapter("udp"), KcpAdapter)
        with pytest.raises(ValueError):
            create_adapter("kcp")
