"""Modbus error codes, CRC16, RTU/ASCII serial framing and a threaded Modbus TCP server."""

__version__ = "0.1.0"
__all__ = ["errors", "crc", "rtu", "tcp_server"]