"""A threaded Modbus TCP server that dispatches requests to worker callbacks."""

from __future__ import annotations

import select
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import Error

Worker = Callable[[bytes], bytes]
WorkerLookup = Callable[[int, int], Optional[Worker]]
ServerCheck = Callable[[int], bool]

NIL_RESPONSE = b"\xff\xf0"
ECHO_RESPONSE = b"\xff\xf1"

BUFFER_SIZE = 300
HEADER_SIZE = 6
DEFAULT_PORT = 502
DEFAULT_TIMEOUT = 20000
RECEIVE_WAIT = 100

_WRITE_MULT_COILS = 0x0F
_WRITE_MULT_REGISTERS = 0x10
_POLL = 0.01


def error_response(server_id: int, function_code: int, error: int) -> bytes:
    """Return the error reply: server ID, function code with bit 7 set, error code."""
    return bytes([server_id & 0xFF, (function_code | 0x80) & 0xFF, int(error) & 0xFF])


def _response_error(response: bytes) -> int:
    if len(response) >= 3 and response[1] & 0x80:
        return response[2]
    return Error.SUCCESS


@dataclass
class _Client:
    conn: socket.socket
    timeout: int
    thread: Optional[threading.Thread] = None
    closing: threading.Event = field(default_factory=threading.Event)

    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def close(self) -> None:
        self.closing.set()
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.conn.close()


class ModbusTCPServer:
    """Accept Modbus TCP connections and answer requests through worker callbacks.

    ``get_worker(server_id, function_code)`` returns the callback for a request,
    or ``None``; ``is_server_for(server_id)`` tells whether the ID is served.
    A worker returns the response bytes, :data:`NIL_RESPONSE` for no answer or
    :data:`ECHO_RESPONSE` to echo the request.
    """

    def __init__(self, get_worker: WorkerLookup, is_server_for: ServerCheck) -> None:
        self._get_worker = get_worker
        self._is_server_for = is_server_for
        self._count_lock = threading.Lock()
        self._client_lock = threading.Lock()
        self._messages = 0
        self._errors = 0
        self._clients: list[Optional[_Client]] = []
        self._listener: Optional[socket.socket] = None
        self._server_thread: Optional[threading.Thread] = None
        self._going_down = threading.Event()
        self.port = DEFAULT_PORT
        self.timeout = DEFAULT_TIMEOUT

    def __enter__(self) -> "ModbusTCPServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def message_count(self) -> int:
        """Return the number of requests received."""
        with self._count_lock:
            return self._messages

    def error_count(self) -> int:
        """Return the number of error responses sent."""
        with self._count_lock:
            return self._errors

    def _process(self, request: bytes) -> bytes:
        server_id, function_code = request[0], request[1]
        if not self._is_server_for(server_id):
            return error_response(server_id, function_code, Error.INVALID_SERVER)
        worker = self._get_worker(server_id, function_code)
        if worker is None:
            return error_response(server_id, function_code, Error.ILLEGAL_FUNCTION)
        data = bytes(worker(request))
        if data == NIL_RESPONSE:
            return b""
        if data == ECHO_RESPONSE:
            if function_code in (_WRITE_MULT_REGISTERS, _WRITE_MULT_COILS):
                return request[:6]
            return request
        return data

    def handle_frame(self, frame: bytes) -> Optional[bytes]:
        """Answer one received TCP frame; return the reply frame or ``None``."""
        frame = bytes(frame)
        if len(frame) < HEADER_SIZE + 2:
            return None
        with self._count_lock:
            self._messages += 1
        request = frame[HEADER_SIZE:]
        if frame[2] == 0 and frame[3] == 0:
            response = self._process(request)
        else:
            response = error_response(request[0], request[1], Error.TCP_HEAD_MISMATCH)
        if len(response) < 3:
            return None
        if _response_error(response) != Error.SUCCESS:
            with self._count_lock:
                self._errors += 1
        return frame[:4] + len(response).to_bytes(2, "big") + response

    def read_frame(self, stream: socket.socket, time_wait: int = RECEIVE_WAIT) -> bytes:
        """Read one TCP frame from a socket.

        Reading stops when the header and the announced length are complete,
        after ``time_wait`` ms without data, on disconnect, or at the buffer
        limit; in the last case the header length is set to the bytes read.
        """
        buffer = bytearray()
        length = 0
        previous = stream.gettimeout()
        stream.settimeout(time_wait / 1000)
        try:
            while len(buffer) < BUFFER_SIZE:
                target = HEADER_SIZE if len(buffer) < HEADER_SIZE else length
                if len(buffer) >= target:
                    break
                wanted = min(target, BUFFER_SIZE) - len(buffer)
                try:
                    chunk = stream.recv(wanted)
                except OSError:
                    break
                if not chunk:
                    break
                buffer += chunk
                if len(buffer) >= HEADER_SIZE and length == 0:
                    length = int.from_bytes(buffer[4:6], "big") + HEADER_SIZE
        finally:
            try:
                stream.settimeout(previous)
            except OSError:
                pass
        if len(buffer) >= BUFFER_SIZE:
            buffer[4:6] = len(buffer).to_bytes(2, "big")
        return bytes(buffer)

    def active_clients(self) -> int:
        """Return the number of connections currently served."""
        with self._client_lock:
            for index, client in enumerate(self._clients):
                if client is not None and not client.alive():
                    self._clients[index] = None
            return sum(client is not None for client in self._clients)

    def _client_available(self) -> bool:
        return len(self._clients) - self.active_clients() > 0

    def start(
        self,
        port: int = DEFAULT_PORT,
        max_clients: int = 1,
        timeout: int = DEFAULT_TIMEOUT,
        host: str = "0.0.0.0",
    ) -> bool:
        """Listen on ``host``/``port`` and serve up to ``max_clients`` connections.

        ``timeout`` is the idle time in ms after which a connection is dropped;
        0 keeps connections open. Port 0 picks a free port, stored in ``port``.
        """
        if max_clients < 0:
            raise ValueError(f"max_clients must not be negative: {max_clients}")
        if self._server_thread is not None:
            self.stop()
        with self._client_lock:
            self._clients = [None] * max_clients
        self.timeout = timeout
        self._going_down.clear()
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind((host, port))
            listener.listen()
        except OSError:
            listener.close()
            raise
        self._listener = listener
        self.port = listener.getsockname()[1]
        self._server_thread = threading.Thread(
            target=self._serve, name=f"MBserve{self.port:04X}", daemon=True
        )
        self._server_thread.start()
        return True

    def stop(self) -> bool:
        """Drop all connections and end the server thread."""
        self._going_down.set()
        if self._listener is not None:
            self._listener.close()
        if self._server_thread is not None:
            self._server_thread.join()
        with self._client_lock:
            clients = [client for client in self._clients if client is not None]
            self._clients = [None] * len(self._clients)
        for client in clients:
            client.close()
            if client.thread is not None:
                client.thread.join()
        self._listener = None
        self._server_thread = None
        self._going_down.clear()
        return True

    def _serve(self) -> None:
        listener = self._listener
        assert listener is not None
        while not self._going_down.is_set():
            if not self._client_available():
                self._going_down.wait(_POLL)
                continue
            try:
                ready, _, _ = select.select([listener], [], [], _POLL)
            except (OSError, ValueError):
                break
            if not ready:
                continue
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            if not self._accept(conn):
                conn.close()

    def _accept(self, conn: socket.socket) -> bool:
        with self._client_lock:
            for index, slot in enumerate(self._clients):
                if slot is None or not slot.alive():
                    client = _Client(conn, self.timeout)
                    client.thread = threading.Thread(
                        target=self._work, args=(client,), name=f"MBsrv{index:02X}clnt", daemon=True
                    )
                    self._clients[index] = client
                    client.thread.start()
                    return True
        return False

    def _work(self, client: _Client) -> None:
        conn = client.conn
        last_message = time.monotonic()
        try:
            while not self._going_down.is_set() and not client.closing.is_set():
                if client.timeout and (time.monotonic() - last_message) * 1000 >= client.timeout:
                    break
                try:
                    ready, _, _ = select.select([conn], [], [], _POLL)
                except (OSError, ValueError):
                    break
                if not ready:
                    continue
                frame = self.read_frame(conn, RECEIVE_WAIT)
                if not frame:
                    break
                response = self.handle_frame(frame)
                if response is not None:
                    conn.sendall(response)
                last_message = time.monotonic()
        except OSError:
            pass
        finally:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()


__all__ = [
    "BUFFER_SIZE",
    "ECHO_RESPONSE",
    "ModbusTCPServer",
    "NIL_RESPONSE",
    "error_response",
]