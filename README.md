# modbuslink

Building blocks for talking Modbus from Python. There are no runtime dependencies.

- `modbuslink.errors`: the `Error` enum of Modbus exception and communication
  error codes. It also has `error_text()`, which gives the readable text of a
  code, and `ModbusError`, an exception that carries a code.
- `modbuslink.crc`: the Modbus CRC16 (`calc_crc`, `valid_crc`, `add_crc`) and
  `calculate_interval()`, which returns the silent gap between RTU frames.
- `modbuslink.rtu`: frame encoders (`encode_rtu_frame`, `encode_ascii_frame`)
  and `RTULink`, which sends and receives frames in RTU or ASCII mode.
- `modbuslink.tcp_server`: `ModbusTCPServer`, a threaded Modbus TCP server that
  passes each request to a worker callback.

## Installation

```
pip install .
```

## Error codes

```python
from modbuslink.errors import Error, ModbusError, error_text

print(error_text(Error.TIMEOUT))   # "Timeout"
print(str(ModbusError(0x02)))      # "Illegal data address"
```

`error_text()` returns "Unspecified error" for a code that has no text of its
own. A code outside 0..255 raises `ValueError`. `ModbusError` compares equal to
another `ModbusError` with the same code, and to the plain integer of that code.

## CRC and timing

```python
from modbuslink.crc import add_crc, calc_crc, calculate_interval, valid_crc

frame = add_crc(bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01]))  # CRC appended, low byte first
assert valid_crc(frame)                   # checks the last two bytes
assert valid_crc(b"\x01\x03", calc_crc(b"\x01\x03"))
print(calculate_interval(9600))           # 3645 microseconds
```

`calculate_interval()` gives 3.5 character times of 10 bits, and never less
than 1750 µs.

## Serial framing

```python
from modbuslink.crc import calculate_interval
from modbuslink.rtu import RTULink, encode_ascii_frame

print(encode_ascii_frame(bytes([0x01, 0x03])))   # b':0103FC\r\n'

link = RTULink(port, calculate_interval(19200))   # port: any serial-like object
link.send(bytes([0x01, 0x03, 0x00, 0x10, 0x00, 0x01]))
reply = link.receive(2000)                          # timeout in milliseconds
```

`port` needs three methods. `read(size)` must not block and returns `b""`
when no data is waiting. The other two are `write(data)` and `flush()`.

In RTU mode, `send()` waits until the silent interval has passed since the
last activity. It then writes the data with its CRC. In ASCII mode
(`ascii_mode=True`) it writes `:`, the hex digits, the LRC, and CR LF. If you
pass an `rts` callback, it is called with `True` before writing and with
`False` after the flush, which suits half-duplex RS485 adapters. The default
is `rts_auto`, which does nothing.

`receive()` returns the payload without its CRC or LRC. Any failure raises
`ModbusError`:

- `TIMEOUT`
- `PACKET_LENGTH_ERROR`: frame too short, longer than 512 bytes, or ending on
  half a byte
- `CRC_ERROR`
- `ASCII_INVALID_CHAR`
- `ASCII_FRAME_ERR`
- `ASCII_CRC_ERR`

In RTU mode, `skip_leading_zero_bytes=True` drops zero bytes that arrive
before a frame starts.

## A TCP server

```python
from modbuslink.tcp_server import ModbusTCPServer

def get_worker(server_id, function_code):
    if function_code == 0x03:
        return lambda request: bytes([request[0], 0x03, 0x02, 0x12, 0x34])
    return None

with ModbusTCPServer(get_worker, lambda server_id: server_id == 1) as server:
    server.start(5020, 4, 20000)   # port, max clients, idle timeout in ms
    ...
```

A worker receives the request without the TCP header, beginning with the
server ID and the function code. It returns the response bytes, or one of two
special values:

- `NIL_RESPONSE` (`FF F0`): nothing is sent.
- `ECHO_RESPONSE` (`FF F1`): the request is sent back. For function codes 0x0F
  and 0x10 only its first six bytes are sent.

Some requests get an error response without reaching a worker:

- A server ID for which `is_server_for` returns false gets `INVALID_SERVER`.
- A function code with no worker gets `ILLEGAL_FUNCTION`.
- A protocol ID other than 0 gets `TCP_HEAD_MISMATCH`.

`error_response()` builds such replies.

If an idle timeout is set, a connection that stays idle that long is closed.
A timeout of 0 keeps connections open. Port 0 picks a free port, which is then
stored in `server.port`. The server also offers these methods:

- `active_clients()`
- `message_count()`
- `error_count()`
- `stop()`: drops every connection and ends the server thread.

`handle_frame()` and `read_frame()` process a single frame without a running
server.

## What is not included

There is no Modbus client, no serial server loop and no bridge between TCP
and serial. Requests are not built or checked against per-function-code
rules. The TCP server keeps no registers or other data. All of that is up to
your worker callbacks.

## Running the tests

```
pip install .[test]
pytest
```