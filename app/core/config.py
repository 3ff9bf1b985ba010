"""
@description 配置管理模块
@responsibility 加载和验证 config.yaml，支持环境变量覆盖
"""

import os
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    """数据库配置"""

    url: str = Field(
        default="sqlite+aiosqlite:///./db/data.db", description="SQLAlchemy 异步连接串"
    )


class LogConfig(BaseModel):
    """日志配置"""

    level: str = Field(default="INFO", description="日志级别")
    file: Optional[str] = Field(default=None, description="日志文件路径，为空则只输出到控制台")


class HttpConfig(BaseModel):
    """HTTP 客户端配置"""

    timeout: float = Field(default=30.0, description="单次请求超时（秒）")
    user_agent: str = Field(
        default="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        description="请求使用的 User-Agent",
    )


class AnidbConfig(BaseModel):
    """AniDB 账户与限流配置"""

    username: Optional[str] = Field(default=None, description="AniDB 用户名")
    password: Optional[str] = Field(default=None, description="AniDB 密码")
    min_interval: float = Field(default=1.0, description="两次请求之间的最小间隔（秒）")


class IndexerConfig(BaseModel):
    """索引站（nyaa）配置"""

    base_url: str = Field(default="https://nyaa.si", description="索引站地址")
    concurrency: int = Field(default=2, description="并行搜索数")
    max_retries: int = Field(default=3, description="429 最大重试次数")
    retry_delay: float = Field(default=2.0, description="429 重试间隔（秒）")
    cooldown: float = Field(default=0.5, description="成功请求后的冷却时间（秒）")
    shallow_scan_pages: int = Field(
        default=1, description="非首次扫描时最多翻页数，0 表示始终完整扫描"
    )


class DownloadConfig(BaseModel):
    """下载管理配置"""

    max_active_transfers: int = Field(default=3, description="同时活跃的下载数上限")


class Config(BaseModel):
    """全局配置"""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    anidb: AnidbConfig = Field(default_factory=AnidbConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)


def get_config_path() -> Path:
    """获取配置文件路径"""
    # 优先使用 CONFIG_PATH 环境变量，否则使用项目根目录的 config.yaml
    if config_path_str := os.environ.get("CONFIG_PATH"):
        return Path(config_path_str)
    return Path(__file__).parent.parent.parent / "config.yaml"


def load_config() -> Config:
    """加载配置文件并应用环境变量覆盖"""
    config_path = get_config_path()

    # 配置文件不存在时生成模板并退出
    if not config_path.exists():
        _generate_config_template(config_path)
        print(f"错误: 配置文件不存在: {config_path}")
        print(f"已生成配置模板: {config_path.parent / 'config.example.yaml'}")
        sys.exit(1)

    with open(config_path) as f:
        config_data = yaml.safe_load(f) or {}

    config = Config(**config_data)

    if username := os.environ.get("ANIDB_USER"):
        config.anidb.username = username
    if password := os.environ.get("ANIDB_PASSWORD"):
        config.anidb.password = password
    if database_url := os.environ.get("DATABASE_URL"):
        config.database.url = database_url

    return config


def _generate_config_template(config_path: Path) -> None:
    """生成配置模板文件"""
    template_path = config_path.parent / "config.example.yaml"

    if template_path.exists():
        return

    template_content = """# 数据库配置
database:
  url: "sqlite+aiosqlite:///./db/data.db"

# 日志配置
log:
  level: "INFO"
  # 为空时只输出到控制台
  file: "./logs/app.log"

# HTTP 请求配置
http:
  timeout: 30

# AniDB 账户（也可以通过 ANIDB_USER / ANIDB_PASSWORD 环境变量提供）
anidb:
  username: ""
  password: ""
  # 两次请求之间的最小间隔（秒）
  min_interval: 1.0

# 索引站配置
indexer:
  base_url: "https://nyaa.si"
  concurrency: 2
  max_retries: 3
  retry_delay: 2.0
  cooldown: 0.5
  # 非首次扫描时最多翻几页，0 表示每次都完整扫描
  shallow_scan_pages: 1

# 下载配置
download:
  # 同时下载的种子数上限，超出的种子会以暂停状态排队
  max_active_transfers: 3
"""

    with open(template_path, "w") as f:
        f.write(template_content)
