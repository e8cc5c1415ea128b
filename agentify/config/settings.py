"""配置管理模块。

支持从初始化参数、环境变量（前缀 AGENTIFY_）、.env 以及 config.yaml 加载配置。
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from agentify.domain.exceptions import ConfigurationError
from agentify.utils.validators import validate_config


def _find_config_file() -> Optional[Path]:
    """按优先级查找 YAML 配置文件（若存在）。"""
    candidates = []
    explicit = os.getenv("AGENTIFY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])
    for path in candidates:
        if path.is_file():
            return path
    return None


class AgentSettings(BaseSettings):
    """全局配置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    provider: Optional[str] = Field(
        default=None,
        description="Provider 名称：openai / anthropic / gemini / deepseek / custom，留空则按 api_url 自动识别",
    )
    api_url: Optional[str] = Field(default=None, description="模型 API 地址")
    api_key: Optional[str] = Field(default=None, description="API 密钥")
    model: Optional[str] = Field(default=None, description="模型名")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    max_tokens: Optional[int] = Field(default=None, gt=0, description="最大生成 token 数")
    stream: bool = Field(default=True, description="是否使用流式响应")
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    custom_headers: Dict[str, str] = Field(default_factory=dict, description="附加请求头")
    custom_params: Dict[str, Any] = Field(default_factory=dict, description="custom provider 的附加请求字段")

    # ---- 存储 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    storage_quota_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1024,
        description="持久化后端总字节配额",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 对话历史与工具循环 ----
    use_history: bool = Field(default=True, description="是否持久化会话历史")
    include_history: bool = Field(default=True, description="是否把持久化历史作为上下文发送")
    max_history_messages: int = Field(default=50, ge=1, le=100, description="上下文窗口最大消息数")
    max_tool_rounds: int = Field(default=10, ge=1, le=50, description="单次 turn 内工具调用最大轮数")
    instruction: str = Field(default="", description="默认系统指令")

    model_config = SettingsConfigDict(
        env_prefix="AGENTIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=_find_config_file()),
            file_secret_settings,
        )


settings = AgentSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = AgentSettings


@dataclass
class OrchestratorConfig:
    """一个编排器实例使用的配置快照。

    与全局 settings 解耦，方便测试或同一进程内创建多个指向不同 Provider 的编排器。
    """

    api_url: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    stream: bool = True
    http_timeout: float = 60.0
    custom_headers: Dict[str, str] = field(default_factory=dict)
    custom_params: Dict[str, Any] = field(default_factory=dict)
    use_history: bool = True
    include_history: bool = True
    max_history_messages: int = 50
    max_tool_rounds: int = 10
    instruction: str = ""

    @classmethod
    def from_settings(cls, source: Optional[AgentSettings] = None, **overrides: Any) -> "OrchestratorConfig":
        source = source or settings
        values = {f.name: getattr(source, f.name) for f in fields(cls) if hasattr(source, f.name)}
        values.update(overrides)
        return cls(**values)

    def missing_required(self) -> List[str]:
        return [name for name in ("api_url", "api_key", "model") if not getattr(self, name)]

    def validate_required(self) -> None:
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                code="SYS_CONFIG_MISSING",
                message=f"Missing required configuration: {', '.join(missing)}",
                missing=missing,
            )

    def update(self, **changes: Any) -> None:
        validate_config(changes)
        for name, value in changes.items():
            if name not in self.__dataclass_fields__:
                raise ConfigurationError(code="SYS_CONFIG_INVALID", message=f"Unknown config field: {name}")
            setattr(self, name, value)

    def to_dict(self, mask_secrets: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if mask_secrets and data.get("api_key"):
            data["api_key"] = "***"
        return data
