"""Sending and receiving Modbus RTU and Modbus ASCII frames over a serial stream."""

from __future__ import annotations

import time
from enum import Enum, auto
from typing import Callable, Iterable, Protocol

from .crc import add_crc, calc_crc, valid_crc
from .errors import Error, ModbusError

RTSCallback = Callable[[bool], None]

BUFFER_SIZE = 512

_LEAD_IN = 0xF0
_CR = 0xF1
_LF = 0xF2
_INVALID = 0xFF


def _build_ascii_table() -> dict[int, int]:
    table = {ord(c): i for i, c in enumerate("0123456789")}
    for offset, letter in enumerate("ABCDEF"):
        table[ord(letter)] = 10 + offset
        table[ord(letter.lower())] = 10 + offset
    table[ord(":")] = _LEAD_IN
    table[ord("\r")] = _CR
    table[ord("\n")] = _LF
    return table


_ASCII_READ = _build_ascii_table()


class SerialPort(Protocol):
    """The part of a serial stream the link needs.

    ``read`` must not block: it returns an empty ``bytes`` when nothing is waiting.
    """

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> int | None: ...

    def flush(self) -> None: ...


def rts_auto(level: bool) -> None:
    """RTS callback for boards that switch half duplex direction on their own."""
    return None


def encode_rtu_frame(data: Iterable[int]) -> bytes:
    """Return the RTU wire form of ``data``: the bytes followed by their CRC16."""
    return add_crc(data)


def encode_ascii_frame(data: Iterable[int]) -> bytes:
    """Return the ASCII wire form of ``data``: ':' hex digits, LRC, CR LF."""
    raw = bytes(data)
    lrc = (-sum(raw)) & 0xFF
    return b":" + raw.hex().upper().encode("ascii") + f"{lrc:02X}".encode("ascii") + b"\r\n"


def _now_us() -> int:
    return time.monotonic_ns() // 1000


def _now_ms() -> int:
    return time.monotonic_ns() // 1_000_000


class _AsciiState(Enum):
    WAIT_DATA = auto()
    DATA = auto()
    WAIT_LEAD_OUT = auto()


class RTULink:
    """One end of a serial Modbus line, in RTU or ASCII framing.

    ``interval`` is the silent gap between frames in microseconds, as given by
    :func:`modbuslink.crc.calculate_interval`.
    """

    def __init__(
        self,
        serial: SerialPort,
        interval: int,
        rts: RTSCallback = rts_auto,
        ascii_mode: bool = False,
    ) -> None:
        if interval < 0:
            raise ValueError(f"interval must not be negative: {interval}")
        self.serial = serial
        self.interval = interval
        self.rts = rts
        self.ascii_mode = ascii_mode
        self.last_activity_us = _now_us()

    def _drain(self) -> None:
        while self.serial.read(1):
            pass

    def send(self, data: Iterable[int]) -> None:
        """Send ``data`` as one frame, adding the CRC or LRC and framing."""
        raw = bytes(data)
        self._drain()
        if self.ascii_mode:
            frame = encode_ascii_frame(raw)
        else:
            frame = encode_rtu_frame(raw)
            elapsed = _now_us() - self.last_activity_us
            if elapsed < self.interval:
                time.sleep((self.interval - elapsed) / 1_000_000)
        self.rts(True)
        self.serial.write(frame)
        self.serial.flush()
        self.rts(False)
        self.last_activity_us = _now_us()

    def receive(self, timeout: int, skip_leading_zero_bytes: bool = False) -> bytes:
        """Receive one frame and return its payload without CRC or LRC.

        ``timeout`` is in milliseconds. Failures raise :class:`ModbusError`.
        """
        if self.ascii_mode:
            return self._receive_ascii(timeout)
        return self._receive_rtu(timeout, skip_leading_zero_bytes)

    def _receive_rtu(self, timeout: int, skip_leading_zero_bytes: bool) -> bytes:
        start = _now_ms()
        self.last_activity_us = _now_us()
        buffer = bytearray()

        # Await the first byte of the frame.
        while True:
            chunk = self.serial.read(1)
            if chunk:
                self.last_activity_us = _now_us()
                if chunk[0] > 0 or not skip_leading_zero_bytes:
                    buffer += chunk
                    break
            else:
                if _now_ms() - start >= timeout:
                    raise ModbusError(Error.TIMEOUT)
                time.sleep(0.001)

        # Collect bytes until a silent gap of at least one interval.
        while True:
            chunk = self.serial.read(1)
            while chunk:
                buffer += chunk
                self.last_activity_us = _now_us()
                if len(buffer) >= BUFFER_SIZE:
                    raise ModbusError(Error.PACKET_LENGTH_ERROR)
                chunk = self.serial.read(1)
            if _now_us() - self.last_activity_us >= self.interval:
                break
            time.sleep(0)

        if len(buffer) < 4:
            raise ModbusError(Error.PACKET_LENGTH_ERROR)
        if not valid_crc(buffer):
            raise ModbusError(Error.CRC_ERROR)
        return bytes(buffer[:-2])

    def _receive_ascii(self, timeout: int) -> bytes:
        state = _AsciiState.WAIT_DATA
        buffer = bytearray()
        current = 0
        byte_complete = True
        lrc = 0
        last = _now_ms()

        while True:
            if _now_ms() - last >= timeout:
                raise ModbusError(Error.TIMEOUT)
            chunk = self.serial.read(1)
            if not chunk:
                time.sleep(0.001)
                continue
            last = _now_ms()
            value = _ASCII_READ.get(chunk[0], _INVALID)
            if value == _INVALID:
                raise ModbusError(Error.ASCII_INVALID_CHAR)

            if state is _AsciiState.WAIT_DATA:
                if value == _LEAD_IN:
                    state = _AsciiState.DATA
            elif state is _AsciiState.DATA:
                if value == _CR:
                    if not byte_complete:
                        raise ModbusError(Error.PACKET_LENGTH_ERROR)
                    state = _AsciiState.WAIT_LEAD_OUT
                elif value < _LEAD_IN:
                    current = ((current << 4) + value) & 0xFF
                    byte_complete = not byte_complete
                    if byte_complete:
                        lrc = (lrc + current) & 0xFF
                        buffer.append(current)
                        current = 0
                        if len(buffer) >= BUFFER_SIZE:
                            raise ModbusError(Error.PACKET_LENGTH_ERROR)
                else:
                    raise ModbusError(Error.ASCII_INVALID_CHAR)
            else:
                if value != _LF:
                    raise ModbusError(Error.ASCII_FRAME_ERR)
                if len(buffer) < 3:
                    raise ModbusError(Error.PACKET_LENGTH_ERROR)
                if lrc != 0:
                    raise ModbusError(Error.ASCII_CRC_ERR)
                return bytes(buffer[:-1])


__all__ = [
    "BUFFER_SIZE",
    "RTULink",
    "RTSCallback",
    "SerialPort",
    "calc_crc",
    "encode_ascii_frame",
    "encode_rtu_frame",
    "rts_auto",
]