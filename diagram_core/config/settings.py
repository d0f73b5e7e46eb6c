"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("DIAGRAM_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="本地存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 远端同步 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    sync_base_url: str = Field(
        default="http://localhost:3000/api/trpc",
        description="远端会话存储的基础 URL",
    )
    sync_api_token: Optional[str] = Field(default=None, description="远端存储访问令牌")
    push_debounce_seconds: float = Field(default=1.0, ge=0.0, description="推送防抖延迟（秒）")
    post_push_pull_delay_seconds: float = Field(
        default=1.5,
        ge=0.0,
        description="推送成功后触发拉取的延迟（秒）",
    )
    pull_interval_seconds: float = Field(default=20.0, gt=0.0, description="周期拉取间隔（秒）")
    pull_limit: int = Field(default=200, ge=1, description="单次拉取的最大记录数（HTTP 适配器按服务端上限截断到 100）")
    push_batch_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="批量推送时每批的会话数（远端硬上限 50）",
    )

    # ---- 图表版本历史 ----
    max_versions: int = Field(default=50, ge=1, description="撤销栈最大版本数，超出后 FIFO 淘汰")
    max_xml_size: int = Field(default=5_000_000, ge=1, description="单个版本 XML 的最大字节数")

    # ---- 会话 ----
    anonymous_conversation_quota: int = Field(default=3, ge=1, description="匿名用户最多会话数")
    title_max_length: int = Field(default=24, ge=1, description="自动生成标题的最大长度")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("sync_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
