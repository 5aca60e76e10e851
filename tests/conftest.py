import nonebot

# 插件在导入时读取配置并挂载路由，必须先初始化 NoneBot
nonebot.init(
    driver="~fastapi",
    mcstatus={"timeout": 1.0, "json_timeout": 1.0, "srv_lookup": False},
)
nonebot.load_plugin("nonebot_plugin_mcstatus")
