from __future__ import annotations

import json
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from mailflow.errors import ConfigError

DEFAULT_CONFIG_FILE = "mailflow.toml"
LOG_LEVEL_ENV = "MAILFLOW_LOG_LEVEL"


@dataclass(slots=True)
class LLMConfig:
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    api_key_env: str = "OPENAI_API_KEY"


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 2
    backoff_base_ms: int = 500
    max_backoff_ms: int = 30_000
    stage_timeout_seconds: float = 120.0


@dataclass(slots=True)
class QualityConfig:
    threshold: float = 70.0
    max_quality_iterations: int = 3
    hard_floor: float = 0.0


@dataclass(slots=True)
class PricingConfig:
    base_url: str = "https://lpc.kupibilet.ru/api/v2/one_way"
    currency: str = "RUB"
    default_origin: str = "MOW"
    timeout_seconds: float = 30.0
    cache_ttl_seconds: float = 300.0


@dataclass(slots=True)
class AssetsConfig:
    directory: str = "figma-assets"
    limit: int = 5


@dataclass(slots=True)
class RenderConfig:
    mjml_binary: str = "mjml"
    max_width: str = "600px"
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class OutputConfig:
    directory: str = "mails"
    runs_directory: str = ".mailflow/runs"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = ""


SECTIONS: dict[str, type] = {
    "llm": LLMConfig,
    "retry": RetryConfig,
    "quality": QualityConfig,
    "pricing": PricingConfig,
    "assets": AssetsConfig,
    "render": RenderConfig,
    "output": OutputConfig,
    "logging": LoggingConfig,
}


@dataclass(slots=True)
class MailflowConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> MailflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MailflowConfig:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        sections: dict[str, Any] = {}
        for name, section_type in SECTIONS.items():
            values = data.get(name, {})
            if not isinstance(values, dict):
                raise ConfigError(f"Config section [{name}] must be a table.")
            allowed = {item.name for item in fields(section_type)}
            extra = sorted(set(values) - allowed)
            if extra:
                raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(extra)}")
            sections[name] = section_type(**values)
        config = cls(**sections)
        config.validate()
        return config

    def validate(self) -> None:
        if self.retry.max_retries < 0:
            raise ConfigError("retry.max_retries must be >= 0.")
        if self.retry.backoff_base_ms < 0 or self.retry.max_backoff_ms < 0:
            raise ConfigError("retry backoff values must be >= 0.")
        if self.retry.stage_timeout_seconds <= 0:
            raise ConfigError("retry.stage_timeout_seconds must be positive.")
        if not 0 <= self.quality.threshold <= 100:
            raise ConfigError("quality.threshold must be within 0-100.")
        if not 0 <= self.quality.hard_floor <= 100:
            raise ConfigError("quality.hard_floor must be within 0-100.")
        if self.quality.max_quality_iterations < 1:
            raise ConfigError("quality.max_quality_iterations must be >= 1.")

    def to_dict(self) -> dict:
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    def effective_log_level(self) -> str:
        return (os.environ.get(LOG_LEVEL_ENV) or self.logging.level).upper()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MailflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MailflowConfig:
    if not path.exists():
        return MailflowConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    try:
        return MailflowConfig.from_dict(data)
    except TypeError as exc:
        raise ConfigError(f"Invalid config in {path}: {exc}") from exc


def save_config(path: Path, config: MailflowConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
