from pydantic import BaseModel


class ServerVersion(BaseModel):
    name: str
    """服务器版本名，例如 "1.20.1" """
    protocol: int
    """服务器协议版本号"""


class ServerPlayer(BaseModel):
    name: str
    id: str | None = None
    """玩家 UUID"""


class ServerPlayers(BaseModel):
    max: int
    online: int
    sample: list[ServerPlayer] | None = None
    """服务器未提供玩家样本时省略"""


class ServerStatus(BaseModel):
    version: ServerVersion
    players: ServerPlayers
    description: str
    """每日消息，保留格式代码"""
    stripped_description: str
    favicon: str | None = None
    latency: int | None = None
    """连接延迟（毫秒）"""


class StatusResponse(BaseModel):
    err: str | None = None
    """失败类型，如 `ReadTimeout`、`InvalidInput`"""
    detail: str | None = None
    result: ServerStatus | None = None
