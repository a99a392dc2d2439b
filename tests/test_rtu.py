from collections import deque

import pytest

from modbuslink.crc import add_crc, valid_crc
from modbuslink.errors import Error, ModbusError
from modbuslink.rtu import (
    RTULink,
    encode_ascii_frame,
    encode_rtu_frame,
    rts_auto,
)


class FakeSerial:
    def __init__(self, incoming=b""):
        self.incoming = deque(incoming)
        self.written = bytearray()
        self.flushes = 0

    def feed(self, data):
        self.incoming.extend(data)

    def read(self, size=1):
        out = bytearray()
        while self.incoming and len(out) < size:
            out.append(self.incoming.popleft())
        return bytes(out)

    def write(self, data):
        self.written += data
        return len(data)

    def flush(self):
        self.flushes += 1


PAYLOAD = bytes([0x01, 0x03, 0x02, 0x1E, 0x1F])


def make_link(incoming=b"", ascii_mode=False, rts=rts_auto):
    port = FakeSerial(incoming)
    return port, RTULink(port, 100, rts, ascii_mode)


def test_rts_auto_returns_none():
    assert rts_auto(True) is None and rts_auto(False) is None


def test_encode_rtu_frame_round_trip():
    frame = encode_rtu_frame(PAYLOAD)
    assert frame[:-2] == PAYLOAD
    assert valid_crc(frame)
    assert frame == add_crc(PAYLOAD)


def test_encode_ascii_frame_wire_form():
    assert encode_ascii_frame(b"\x01\x03") == b":0103FC\r\n"


def test_encode_ascii_frame_lrc_sums_to_zero():
    frame = encode_ascii_frame(PAYLOAD)
    body = bytes.fromhex(frame[1:-2].decode("ascii"))
    assert body[:-1] == PAYLOAD
    assert sum(body) % 256 == 0
    assert frame.startswith(b":") and frame.endswith(b"\r\n")


def test_send_rtu_writes_frame_and_toggles_rts():
    levels = []
    port, link = make_link(incoming=b"\x55\x66", rts=levels.append)
    link.send(PAYLOAD)
    assert bytes(port.written) == encode_rtu_frame(PAYLOAD)
    assert levels == [True, False]
    assert not port.incoming
    assert port.flushes == 1


def test_send_ascii_writes_ascii_frame():
    levels = []
    port, link = make_link(ascii_mode=True, rts=levels.append)
    link.send(PAYLOAD)
    assert bytes(port.written) == encode_ascii_frame(PAYLOAD)
    assert levels == [True, False]


def test_receive_rtu_valid_frame():
    _, link = make_link(encode_rtu_frame(PAYLOAD))
    assert link.receive(100) == PAYLOAD


def test_receive_rtu_crc_error():
    frame = bytearray(encode_rtu_frame(PAYLOAD))
    frame[-1] ^= 0xFF
    _, link = make_link(bytes(frame))
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.CRC_ERROR


def test_receive_rtu_short_packet():
    _, link = make_link(b"\x01\x03\x00")
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.PACKET_LENGTH_ERROR


def test_receive_rtu_timeout():
    _, link = make_link()
    with pytest.raises(ModbusError) as exc:
        link.receive(20)
    assert exc.value.code == Error.TIMEOUT


def test_receive_rtu_skips_leading_zero_bytes():
    _, link = make_link(b"\x00\x00" + encode_rtu_frame(PAYLOAD))
    assert link.receive(100, skip_leading_zero_bytes=True) == PAYLOAD


def test_receive_rtu_keeps_leading_zero_without_skipping():
    _, link = make_link(b"\x00" + encode_rtu_frame(PAYLOAD))
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.CRC_ERROR


def test_receive_rtu_oversize_packet():
    _, link = make_link(bytes(range(1, 256)) * 3)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.PACKET_LENGTH_ERROR


def test_rtu_loopback():
    sender_port, sender = make_link()
    sender.send(PAYLOAD)
    _, receiver = make_link(bytes(sender_port.written))
    assert receiver.receive(100) == PAYLOAD


def test_ascii_loopback():
    sender_port, sender = make_link(ascii_mode=True)
    sender.send(PAYLOAD)
    _, receiver = make_link(bytes(sender_port.written), ascii_mode=True)
    assert receiver.receive(100) == PAYLOAD


def test_receive_ascii_accepts_lowercase_and_leading_noise():
    frame = b"12\r\n" + encode_ascii_frame(PAYLOAD).lower()
    _, link = make_link(frame, ascii_mode=True)
    assert link.receive(100) == PAYLOAD


def test_receive_ascii_lrc_error():
    frame = bytearray(encode_ascii_frame(PAYLOAD))
    frame[-3] = ord("0") if frame[-3] != ord("0") else ord("1")
    _, link = make_link(bytes(frame), ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.ASCII_CRC_ERR


def test_receive_ascii_odd_nibble_count():
    _, link = make_link(b":01030\r\n", ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.PACKET_LENGTH_ERROR


def test_receive_ascii_invalid_character():
    _, link = make_link(b":01G3\r\n", ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.ASCII_INVALID_CHAR


def test_receive_ascii_second_lead_in_is_invalid():
    _, link = make_link(b":01:03\r\n", ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.ASCII_INVALID_CHAR


def test_receive_ascii_missing_line_feed():
    frame = encode_ascii_frame(PAYLOAD)[:-1] + b"0"
    _, link = make_link(frame, ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.ASCII_FRAME_ERR


def test_receive_ascii_too_short():
    _, link = make_link(encode_ascii_frame(b"\x01"), ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(100)
    assert exc.value.code == Error.PACKET_LENGTH_ERROR


def test_receive_ascii_timeout():
    _, link = make_link(b":0103", ascii_mode=True)
    with pytest.raises(ModbusError) as exc:
        link.receive(20)
    assert exc.value.code == Error.TIMEOUT


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        RTULink(FakeSerial(), -1)