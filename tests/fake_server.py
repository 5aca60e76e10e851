import socket
import threading

from nonebot_plugin_mcstatus.data_source import decode_varint, encode_string, encode_varint


def status_packet(body: str, packet_id: int = 0x00) -> bytes:
    packet = encode_varint(packet_id) + encode_string(body)
    return encode_varint(len(packet)) + packet


def recv_exact(conn: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        if not (chunk := conn.recv(size - len(data))):
            raise ConnectionAbortedError
        data += chunk
    return bytes(data)


def read_frame(conn: socket.socket) -> bytes:
    """Read one length-prefixed packet sent by the client."""
    header = bytearray()
    while True:
        header += recv_exact(conn, 1)
        if not header[-1] & 0x80:
            break
    length, _ = decode_varint(header)
    return recv_exact(conn, length)


class FakeServer:
    """
    单连接的假 Minecraft 服务器。

    读取握手与状态请求后回复 `reply`；`reply` 为 None 时保持沉默。
    `close` 为 True 时回复后立即断开连接。
    `drip` 不为 None 时每隔 `drip` 秒只发送一个字节。
    """

    def __init__(
        self, reply: bytes | None, close: bool = False, drip: float | None = None
    ):
        self.reply = reply
        self.close = close
        self.drip = drip
        self.received: list[bytes] = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.sock.settimeout(5)
        self.port = self.sock.getsockname()[1]
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self) -> None:
        try:
            conn, _ = self.sock.accept()
        except OSError:
            return
        with conn:
            try:
                self.received.append(read_frame(conn))
                self.received.append(read_frame(conn))
                if self.reply is not None and self.drip is not None:
                    for i in range(len(self.reply)):
                        if self._done.wait(self.drip):
                            return
                        conn.sendall(self.reply[i : i + 1])
                elif self.reply is not None:
                    conn.sendall(self.reply)
            except OSError:
                return
            if not self.close:
                self._done.wait(5)

    def __enter__(self) -> "FakeServer":
        self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._done.set()
        self.sock.close()
        self._thread.join(1)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
