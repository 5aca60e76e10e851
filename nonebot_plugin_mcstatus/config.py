from nonebot.plugin import get_plugin_config
from pydantic import BaseModel, Field


class ScopedConfig(BaseModel):
    timeout: float = Field(default=2.0)
    """纯文本状态接口的总超时时间（秒）"""
    json_timeout: float = Field(default=5.0)
    """JSON 状态接口的总超时时间（秒）"""
    route_prefix: str = Field(default="")
    """接口路由前缀，例如 `/mcstatus`"""
    offline_status_code: int = Field(default=200)
    """纯文本接口返回 `Offline` 时使用的 HTTP 状态码"""
    srv_lookup: bool = Field(default=True)
    """地址未指定端口时是否查询 SRV 记录"""


class Config(BaseModel):
    mcstatus: ScopedConfig = Field(default_factory=ScopedConfig)
    """MCStatus Config"""


config: ScopedConfig = get_plugin_config(Config).mcstatus
