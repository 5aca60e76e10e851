import ipaddress
import re

import idna
from nonebot import logger

from .data_source import (
    DEFAULT_PORT,
    InvalidAddress,
    Online,
    ProbeResult,
    ServerAddress,
    StatusPayload,
)
from .models import (
    ServerPlayer,
    ServerPlayers,
    ServerStatus,
    ServerVersion,
    StatusResponse,
)

INVALID_INPUT = "InvalidInput"


def parse_host(host_name: str) -> tuple[str, int | None]:
    """
    解析主机名（可选端口）。

    支持 `host`、`host:port`、`[IPv6]`、`[IPv6]:port`，端口分隔符也可以是全角冒号。

    :params host_name: 主机名，可能包含端口。

    :returns: 一个元组，包含两个元素：
    - 第一个元素是主机的地址
    - 第二个元素是主机的端口号，如果主机名中未指定端口，则为 None。
    """
    host_name = host_name.strip()
    # 未加方括号的 IPv6 地址不能携带端口
    if is_ipv6(host_name):
        return host_name, None

    pattern = r"(?:\[(.+?)\]|(.+?))(?:[:：](\d+))?$"
    if not (match := re.match(pattern, host_name)):
        return host_name, None

    address = match[1] or match[2]
    port = int(match[3]) if match[3] else None
    return address, port


def is_validity_address(address: str) -> bool:
    """
    判断给定的地址是否为有效的域名或IP地址。

    :params address: 需要验证的地址，可以是域名地址或IP地址。

    :returns: 如果地址有效则返回True，否则返回False。
    """
    return is_domain(address) or is_ipv4(address) or is_ipv6(address)


def is_domain(address: str) -> bool:
    """
    判断给定的地址是否为域名（支持国际化域名）。

    :params address: 需要验证的地址。

    :returns: 如果地址为域名则返回True，否则返回False。
    """
    # 允许完全限定域名末尾的点
    if address.endswith(".") and address != ".":
        address = address[:-1]
    try:
        punycode_address = idna.encode(address, uts46=True).decode("utf-8")
    except idna.IDNAError:
        return False

    domain_pattern = re.compile(
        r"^(?!-)(?:[A-Za-z0-9-]{1,63}\.)+(?:[A-Za-z]{2,}|xn--[A-Za-z0-9-]{2,})$|^(localhost)$"
    )
    return bool(domain_pattern.match(punycode_address))


def is_ipv4(address: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(address), ipaddress.IPv4Address)
    except ValueError:
        return False


def is_ipv6(address: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(address), ipaddress.IPv6Address)
    except ValueError:
        return False


def build_address(text: str, srv_lookup: bool = True) -> ServerAddress:
    """
    将请求路径中的 `<server>(:<port>)` 转换为 `ServerAddress`。

    未指定端口时使用 25565，并根据 `srv_lookup` 决定是否查询 SRV 记录。

    :raises InvalidAddress: 地址格式不正确
    """
    host, port = parse_host(text)
    if not is_validity_address(host):
        raise InvalidAddress(f"'{host}' is not a domain or IP address")
    if port is None:
        return ServerAddress(host, DEFAULT_PORT, srv_lookup=srv_lookup)
    return ServerAddress(host, port)


def build_status(payload: StatusPayload) -> ServerStatus:
    return ServerStatus(
        version=ServerVersion(
            name=payload.version_name, protocol=payload.protocol_version
        ),
        players=ServerPlayers(
            max=payload.players_max,
            online=payload.players_online,
            sample=(
                [
                    ServerPlayer(name=player.name, id=player.id)
                    for player in payload.sample
                ]
                if payload.sample is not None
                else None
            ),
        ),
        description=payload.motd,
        stripped_description=payload.stripped_motd,
        favicon=payload.favicon,
        latency=payload.latency,
    )


def build_result(result: ProbeResult) -> StatusResponse:
    """
    根据探测结果构建 JSON 接口的响应体。

    :params result: `probe` 的返回值。
    """
    if isinstance(result, Online):
        return StatusResponse(result=build_status(result.payload))
    return StatusResponse(
        err=str(result.reason.kind), detail=result.reason.detail or None
    )


def handle_invalid_input(text: str, e: InvalidAddress) -> StatusResponse:
    logger.info(f"Rejected address {text!r}: {e}")
    return StatusResponse(err=INVALID_INPUT, detail=str(e))
