"""
mongosync运行配置
可以通过环境变量（前缀 MONGOSYNC_）或 .env 文件覆盖
"""
from typing import Optional
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


BATCH_BUFFER_SIZE = 16 * 1024 * 1024


class SyncSettings(BaseModel):
    """同步配置"""
    # 批量写入
    batch_buffer_size: int = BATCH_BUFFER_SIZE  # 单个批次的字节上限
    writer_threads: int = 4                     # 后台写线程数
    write_queue_size: int = 8                   # 每个写线程的队列容量
    write_max_retries: int = 3                  # 批次写入失败后的重试次数
    write_retry_interval: float = 1.0           # 重试间隔（秒），随次数线性增长

    # oplog追踪
    tail_await_ms: int = 1000                   # tailable游标的等待时间
    tail_reopen_interval: float = 1.0           # 游标失效后重新打开前的等待（秒）
    tail_flush_interval: float = 1.0            # 未满批次的最长停留时间（秒）

    # 连接
    connect_timeout_ms: int = 10000


class MonitoringSettings(BaseModel):
    """监控配置"""
    collect_process_metrics: bool = True
    metrics_collection_interval: float = 5.0  # 秒

    # 状态接口
    status_host: str = "127.0.0.1"
    status_port: Optional[int] = None  # 为空时不启动


class LoggingSettings(BaseModel):
    """日志配置"""
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    """主配置类"""
    app_name: str = "mongosync"
    app_version: str = "1.0.0"
    debug: bool = False

    # 组件配置
    sync: SyncSettings = SyncSettings()
    monitoring: MonitoringSettings = MonitoringSettings()
    logging: LoggingSettings = LoggingSettings()

    model_config = SettingsConfigDict(
        env_prefix="MONGOSYNC_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )


# 全局配置实例
settings = Settings()
