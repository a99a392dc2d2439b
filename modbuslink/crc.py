"""Modbus RTU CRC16 helpers and inter-frame timing."""

from __future__ import annotations

from typing import Iterable, Optional

_MIN_INTERVAL_US = 1750


def _build_table() -> list[int]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
        table.append(crc)
    return table


_TABLE = _build_table()


def calc_crc(data: Iterable[int]) -> int:
    """Return the Modbus CRC16 of ``data``; its low byte goes on the wire first."""
    crc = 0xFFFF
    for byte in bytes(data):
        crc = (crc >> 8) ^ _TABLE[(crc ^ byte) & 0xFF]
    return crc


def valid_crc(data: Iterable[int], crc: Optional[int] = None) -> bool:
    """Check a CRC.

    With ``crc`` given, compare it with the CRC of all of ``data``. Without it,
    treat the last two bytes of ``data`` as the CRC in wire order (LSB first).
    """
    raw = bytes(data)
    if crc is None:
        if len(raw) < 2:
            raise ValueError("data too short to hold a CRC")
        crc = raw[-2] | (raw[-1] << 8)
        raw = raw[:-2]
    return calc_crc(raw) == crc


def add_crc(data: Iterable[int]) -> bytes:
    """Return ``data`` with its CRC appended in wire order."""
    raw = bytes(data)
    return raw + calc_crc(raw).to_bytes(2, "little")


def calculate_interval(baud_rate: int) -> int:
    """Return the minimal silent gap between frames in microseconds.

    This is 3.5 character times of 10 bits, but never below 1750 µs.
    """
    if baud_rate <= 0:
        raise ValueError(f"baud rate must be positive: {baud_rate}")
    return max(35_000_000 // baud_rate, _MIN_INTERVAL_US)