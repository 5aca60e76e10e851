# minestat.py - A Minecraft server status checker
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
#
# 本文件只保留 1.7+ 的 JSON SLP 查询，并改写为单一截止时间的探测函数
#
# 协议文档：
# https://minecraft.wiki/w/Java_Edition_protocol/Server_List_Ping

from dataclasses import dataclass
from enum import Enum
import errno
import ipaddress
import re
import socket
import struct
from time import monotonic, perf_counter

import dns.exception
import dns.resolver
import idna
from nonebot import logger
import ujson

DEFAULT_PORT = 25565
"""SLP 查询的默认 TCP 端口"""
DEFAULT_TIMEOUT = 5.0
"""默认总超时时间（秒）"""
MAX_HOST_BYTES = 255
"""握手包中主机名的最大 UTF-8 字节数"""
STATUS_PROTOCOL_VERSION = -1
"""仅查询状态时使用的协议版本号"""
MAX_VARINT_BYTES = 5
MAX_PACKET_LENGTH = 2097151
"""服务端数据包长度上限（3 字节 varint 所能表示的最大值）"""
UNSUPPORTED_FAMILY_ERRNOS = (errno.EAFNOSUPPORT, errno.EPROTONOSUPPORT)

FORMATTING_CODE = re.compile(r"§.", re.DOTALL)


class ProtocolError(Exception):
    """服务器返回的数据无法按 SLP 协议解析"""


class InvalidAddress(ValueError):
    """服务器地址不合法，在任何网络操作之前抛出"""


class ResolutionError(Exception):
    """主机名解析失败"""


class FailureKind(Enum):
    """
    探测失败的原因
    - `CONNECT_TIMEOUT`：在截止时间内未能建立 TCP 连接
    - `CONNECTION_REFUSED`：连接被拒绝（端口没有监听或网络不可达）
    - `DNS_RESOLUTION_FAILED`：主机名无法解析
    - `PROTOCOL_ERROR`：连接已建立，但服务器的响应不符合 1.7+ SLP 协议
    - `READ_TIMEOUT`：连接已建立，但在截止时间内未收到完整响应
    """

    def __str__(self) -> str:
        return str(self.value)

    CONNECT_TIMEOUT = "ConnectTimeout"
    CONNECTION_REFUSED = "ConnectionRefused"
    DNS_RESOLUTION_FAILED = "DnsResolutionFailed"
    PROTOCOL_ERROR = "ProtocolError"
    READ_TIMEOUT = "ReadTimeout"


@dataclass(frozen=True)
class FailureReason:
    kind: FailureKind
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}" if self.detail else str(self.kind)


@dataclass(frozen=True)
class ServerAddress:
    """
    待查询的服务器地址。

    :param host: 主机名或 IP 地址
    :param port: 端口，默认为 25565
    :param srv_lookup: 是否先查询 `_minecraft._tcp` SRV 记录
    """

    host: str
    port: int = DEFAULT_PORT
    srv_lookup: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host:
            raise InvalidAddress("host must be a non-empty string")
        if len(self.host.encode("utf-8")) > MAX_HOST_BYTES:
            raise InvalidAddress(f"host is longer than {MAX_HOST_BYTES} bytes")
        if (
            isinstance(self.port, bool)
            or not isinstance(self.port, int)
            or not 0 <= self.port <= 65535
        ):
            raise InvalidAddress(f"port {self.port!r} is out of range 0-65535")

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class SamplePlayer:
    name: str
    id: str | None = None
    """玩家 UUID"""


@dataclass(frozen=True)
class StatusPayload:
    protocol_version: int
    version_name: str
    motd: str
    """每日消息，保留格式代码"""
    players_online: int
    players_max: int
    sample: tuple[SamplePlayer, ...] | None = None
    """在线玩家样本，服务器未提供时为 None"""
    favicon: str | None = None
    """base64 编码的 data URI 图标"""
    latency: int | None = None
    """建立连接所用时间（毫秒）"""

    @property
    def stripped_motd(self) -> str:
        """去除所有格式代码的每日消息"""
        return strip_formatting(self.motd)

    @property
    def sample_names(self) -> tuple[str, ...]:
        return tuple(player.name for player in self.sample or ())


@dataclass(frozen=True)
class Online:
    payload: StatusPayload


@dataclass(frozen=True)
class Offline:
    reason: FailureReason


ProbeResult = Online | Offline


def strip_formatting(motd: str) -> str:
    return FORMATTING_CODE.sub("", motd)


def encode_varint(value: int) -> bytes:
    """Pack a signed 32-bit integer as a varint, negative values take 5 bytes."""
    if not -(2**31) <= value < 2**31:
        raise ValueError(f"{value} does not fit in a 32-bit varint")
    value &= 0xFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes | bytearray, offset: int = 0) -> tuple[int, int]:
    """
    从缓冲区中解码一个 varint。

    :param data: 缓冲区
    :param offset: 起始位置
    :returns: (数值, 紧随其后的位置)
    :raises ProtocolError: 数据被截断或长度超过 5 字节
    """
    result = 0
    for i in range(MAX_VARINT_BYTES):
        if offset + i >= len(data):
            raise ProtocolError("truncated varint")
        byte = data[offset + i]
        result |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return _to_signed(result), offset + i + 1
    raise ProtocolError(f"varint is longer than {MAX_VARINT_BYTES} bytes")


def _to_signed(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return encode_varint(len(raw)) + raw


def frame_packet(packet_id: int, body: bytes = b"") -> bytes:
    """Prepend the varint length of packet id + body."""
    packet = encode_varint(packet_id) + body
    return encode_varint(len(packet)) + packet


def build_handshake(
    host: str, port: int, protocol_version: int = STATUS_PROTOCOL_VERSION
) -> bytes:
    body = encode_varint(protocol_version)
    body += encode_string(host)
    body += struct.pack(">H", port)
    # Next state: 1 for status, 2 for login
    body += encode_varint(1)
    return frame_packet(0x00, body)


STATUS_REQUEST = frame_packet(0x00)


def decode_status_response(packet: bytes | bytearray) -> str:
    """
    解析 Status Response 数据包（不含外层长度前缀）。

    :param packet: 数据包 ID 与负载
    :returns: 服务器返回的 JSON 文本
    """
    packet_id, offset = decode_varint(packet)
    if packet_id != 0x00:
        raise ProtocolError(f"unexpected packet id {packet_id:#04x}")

    length, offset = decode_varint(packet, offset)
    if length < 0:
        raise ProtocolError("negative string length")
    if offset + length > len(packet):
        raise ProtocolError(
            f"status string truncated ({len(packet) - offset} of {length} bytes)"
        )

    try:
        return bytes(packet[offset : offset + length]).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"status string is not valid UTF-8: {e}") from e


def flatten_description(description) -> str:
    """
    将 description 转为单个字符串。

    description 可能是纯字符串、聊天组件对象或组件列表，
    只按文档顺序拼接 `text` 字段（展开 `extra`），忽略颜色等样式。
    使用显式栈遍历，嵌套深度不受解释器递归上限影响。
    """
    parts: list[str] = []
    stack = [description]
    while stack:
        node = stack.pop()
        if isinstance(node, str):
            parts.append(node)
        elif isinstance(node, list):
            stack.extend(reversed(node))
        elif isinstance(node, dict):
            extra = node.get("extra")
            if isinstance(extra, list):
                stack.extend(reversed(extra))
            # text comes before extra, so it is pushed last
            stack.append(node.get("text", ""))
        elif isinstance(node, bool):
            parts.append("true" if node else "false")
        elif isinstance(node, (int, float)):
            parts.append(str(node))
    return "".join(parts)


def _require_int(obj: dict, key: str, path: str) -> int:
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"'{path}' must be an integer")
    return value


def _require_count(obj: dict, key: str, path: str) -> int:
    value = _require_int(obj, key, path)
    if value < 0:
        raise ProtocolError(f"'{path}' must not be negative")
    return value


def parse_status(raw: str, latency: int | None = None) -> StatusPayload:
    """
    解析状态 JSON。

    :param raw: 服务器返回的 JSON 文本
    :param latency: 连接延迟（毫秒）
    :raises ProtocolError: JSON 非法或缺少 `version` / `players`
    """
    try:
        obj = ujson.loads(raw)
    except ValueError as e:
        raise ProtocolError(f"invalid status JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ProtocolError("status JSON is not an object")

    version = obj.get("version")
    if not isinstance(version, dict):
        raise ProtocolError("missing 'version' object")
    version_name = version.get("name")
    if not isinstance(version_name, str):
        raise ProtocolError("'version.name' must be a string")
    protocol_version = _require_int(version, "protocol", "version.protocol")

    players = obj.get("players")
    if not isinstance(players, dict):
        raise ProtocolError("missing 'players' object")
    online = _require_count(players, "online", "players.online")
    max_players = _require_count(players, "max", "players.max")

    # The sample list is optional and may be null
    sample = players.get("sample")
    if sample is not None:
        if not isinstance(sample, list):
            raise ProtocolError("'players.sample' must be an array")
        sample = tuple(
            SamplePlayer(
                player["name"],
                player["id"] if isinstance(player.get("id"), str) else None,
            )
            for player in sample
            if isinstance(player, dict) and isinstance(player.get("name"), str)
        )

    favicon = obj.get("favicon")
    return StatusPayload(
        protocol_version=protocol_version,
        version_name=version_name,
        motd=flatten_description(obj.get("description", "")),
        players_online=online,
        players_max=max_players,
        sample=sample,
        favicon=favicon if isinstance(favicon, str) else None,
        latency=latency,
    )


def _remaining(deadline: float) -> float:
    remaining = deadline - monotonic()
    if remaining <= 0:
        raise TimeoutError("deadline exceeded")
    return remaining


def _to_ascii(host: str) -> str:
    try:
        return idna.encode(host, uts46=True).decode("ascii")
    except idna.IDNAError:
        return host


def _parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None


def lookup_srv(host: str, deadline: float) -> tuple[str, int] | None:
    """
    查询 `_minecraft._tcp.<host>` SRV 记录。

    :returns: (目标主机, 端口)，没有记录或查询失败时返回 None
    """
    try:
        answer = dns.resolver.resolve(
            f"_minecraft._tcp.{_to_ascii(host)}", "SRV", lifetime=_remaining(deadline)
        )
    except (dns.exception.DNSException, TimeoutError) as e:
        logger.debug(f"No SRV record for {host}: {e!r}")
        return None
    for rdata in answer:
        return str(rdata.target).rstrip("."), rdata.port  # type: ignore
    return None


def resolve_endpoint(
    host: str, port: int, deadline: float
) -> tuple[socket.AddressFamily, tuple]:
    """
    将主机名解析为可直接 connect 的地址。

    IP 地址直接使用；域名依次查询 A、AAAA 记录，只返回第一个结果。

    :raises ResolutionError: 解析失败或超出截止时间
    """
    ip = _parse_ip(host)
    if ip is not None:
        if ip.version == 6:
            return socket.AF_INET6, (str(ip), port, 0, 0)
        return socket.AF_INET, (str(ip), port)

    if host.lower().rstrip(".") == "localhost":
        return socket.AF_INET, ("127.0.0.1", port)

    qname = _to_ascii(host)
    for rdtype, family in (("A", socket.AF_INET), ("AAAA", socket.AF_INET6)):
        try:
            answer = dns.resolver.resolve(qname, rdtype, lifetime=_remaining(deadline))
        except dns.resolver.NoAnswer:
            continue
        except TimeoutError as e:
            raise ResolutionError(f"resolving {host} exceeded the deadline") from e
        except dns.exception.DNSException as e:
            raise ResolutionError(f"cannot resolve {host}: {e}") from e
        for rdata in answer:
            if family == socket.AF_INET6:
                return family, (rdata.address, port, 0, 0)  # type: ignore
            return family, (rdata.address, port)  # type: ignore
    raise ResolutionError(f"no A or AAAA record for {host}")


def _recv_exact(sock: socket.socket, size: int, deadline: float) -> bytearray:
    """
    接收指定长度的数据，每次 recv 只使用剩余的时间预算。

    :raises ProtocolError: 对方在数据接收完毕前关闭了连接
    """
    data = bytearray()
    while len(data) < size:
        sock.settimeout(_remaining(deadline))
        if chunk := sock.recv(size - len(data)):
            data += chunk
        else:
            raise ProtocolError(
                f"connection closed after {len(data)} of {size} bytes"
            )
    return data


def _read_varint(sock: socket.socket, deadline: float) -> int:
    buffer = bytearray()
    for _ in range(MAX_VARINT_BYTES):
        buffer += _recv_exact(sock, 1, deadline)
        if not buffer[-1] & 0x80:
            return decode_varint(buffer)[0]
    raise ProtocolError(f"varint is longer than {MAX_VARINT_BYTES} bytes")


def _failure(address: ServerAddress, kind: FailureKind, detail: str = "") -> Offline:
    reason = FailureReason(kind, detail)
    logger.debug(f"Probe {address} failed: {reason}")
    return Offline(reason)


def probe(address: ServerAddress, timeout: float = DEFAULT_TIMEOUT) -> ProbeResult:
    """
    使用 1.7+ SLP 协议查询服务器状态。

    整个过程（解析、连接、握手、读取）共用一个从调用开始计算的截止时间。
    网络相关的失败都会以 `Offline` 返回，不会抛出异常；
    只有创建套接字本身失败（资源耗尽）时才会抛出 `OSError`。

    :param address: 服务器地址
    :param timeout: 总超时时间（秒）
    """
    deadline = monotonic() + timeout

    host, port = address.host, address.port
    if address.srv_lookup and _parse_ip(host) is None:
        if srv := lookup_srv(host, deadline):
            host, port = srv
            logger.debug(f"SRV record for {address.host} points to {host}:{port}")

    try:
        family, sockaddr = resolve_endpoint(host, port, deadline)
    except ResolutionError as e:
        return _failure(address, FailureKind.DNS_RESOLUTION_FAILED, str(e))

    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError as e:
        # No IPv6 stack on this host: the server cannot be reached from here.
        # Resource exhaustion (EMFILE, ENOBUFS, ...) still propagates.
        if e.errno in UNSUPPORTED_FAMILY_ERRNOS:
            return _failure(address, FailureKind.CONNECTION_REFUSED, str(e))
        raise
    try:
        return _query(sock, sockaddr, address, deadline)
    finally:
        sock.close()


def _query(
    sock: socket.socket, sockaddr: tuple, address: ServerAddress, deadline: float
) -> ProbeResult:
    start_time = perf_counter()
    try:
        sock.settimeout(_remaining(deadline))
        sock.connect(sockaddr)
    except TimeoutError:
        return _failure(address, FailureKind.CONNECT_TIMEOUT)
    except ConnectionRefusedError as e:
        return _failure(address, FailureKind.CONNECTION_REFUSED, str(e))
    except OSError as e:
        # Unreachable host/network: the port is not going to answer either
        return _failure(address, FailureKind.CONNECTION_REFUSED, str(e))
    latency = round((perf_counter() - start_time) * 1000)

    try:
        sock.settimeout(_remaining(deadline))
        sock.sendall(build_handshake(address.host, address.port) + STATUS_REQUEST)

        packet_len = _read_varint(sock, deadline)
        if not 1 <= packet_len <= MAX_PACKET_LENGTH:
            raise ProtocolError(f"invalid packet length {packet_len}")
        # Anything the server sends after the declared length is left unread
        packet = _recv_exact(sock, packet_len, deadline)

        payload = parse_status(decode_status_response(packet), latency)
    except TimeoutError:
        return _failure(address, FailureKind.READ_TIMEOUT)
    except ProtocolError as e:
        return _failure(address, FailureKind.PROTOCOL_ERROR, str(e))
    except OSError as e:
        # Reset or aborted mid-exchange, typically a pre-1.7 server
        return _failure(address, FailureKind.PROTOCOL_ERROR, str(e))

    return Online(payload)
