import asyncio

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from nonebot import get_app, logger
from nonebot.plugin import PluginMetadata

from .config import Config, config
from .data_source import InvalidAddress, Online, probe
from .models import StatusResponse
from .utils import build_address, build_result, handle_invalid_input

__plugin_meta__ = PluginMetadata(
    name="Minecraft服务器状态接口",
    description="通过 HTTP 查询 Minecraft Java 服务器是否在线/HTTP endpoint reporting Minecraft Java server status",  # noqa: E501
    type="application",
    config=Config,
    usage="""
    需要 FastAPI 驱动器（DRIVER=~fastapi）
    用法：
        GET /<ip>[:端口]        返回 Online 或 Offline
        GET /<ip>[:端口]/json   返回服务器详细状态
    usage:
        GET /<host>[:port]       plain text Online / Offline
        GET /<host>[:port]/json  detailed status as JSON
    """.strip(),
    extra={},
)

router = APIRouter(prefix=config.route_prefix)


async def get_status(address: str, timeout: float):
    """解析地址并在线程中执行探测，地址非法时抛出 InvalidAddress"""
    server = build_address(address, config.srv_lookup)
    result = await asyncio.to_thread(probe, server, timeout)
    outcome = "Online" if isinstance(result, Online) else result.reason
    logger.info(f"Status of {server}: {outcome}")
    return result


@router.get(
    "/{address}/json",
    response_model=StatusResponse,
    response_model_exclude_none=True,
)
async def status_json(address: str) -> StatusResponse:
    try:
        result = await get_status(address, config.json_timeout)
    except InvalidAddress as e:
        return handle_invalid_input(address, e)
    return build_result(result)


@router.get("/{address}", response_class=PlainTextResponse)
async def status(address: str) -> PlainTextResponse:
    try:
        result = await get_status(address, config.timeout)
    except InvalidAddress as e:
        handle_invalid_input(address, e)
        return PlainTextResponse("Offline", status_code=config.offline_status_code)
    if isinstance(result, Online):
        return PlainTextResponse("Online")
    return PlainTextResponse("Offline", status_code=config.offline_status_code)


get_app().include_router(router)
