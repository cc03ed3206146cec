from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_CONFIG_FILENAME = "conductor.toml"
DEFAULT_AGENT_COMMAND = ("claude", "--output-format", "json", "-p")


class ConfigError(ValueError):
    """Raised when a configuration file is malformed or out of range."""


@dataclass(slots=True)
class AgentsConfig:
    author_command: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    reviewer_command: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    author_model: str = ""
    reviewer_model: str = ""
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class QualityConfig:
    commands: list[str] = field(default_factory=list)
    timeout_seconds: float = 300.0
    grace_seconds: float = 2.0
    max_output_bytes: int = 4096


@dataclass(slots=True)
class LimitsConfig:
    max_review_iterations: int = 5
    max_quality_retries: int = 3
    max_auto_retries: int = 3
    max_auto_iterations: int = 10
    # Reviewer change requests during phase execution draw on max_auto_retries.
    share_review_budget: bool = True


@dataclass(slots=True)
class PathsConfig:
    plans: str = "docs/development"
    reviews: str = "docs/development/reviews"
    state_dir: str = ".conductor"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "INFO"
    json: bool = False


@dataclass(slots=True)
class ConductorConfig:
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        try:
            config = cls(
                agents=AgentsConfig(**data.get("agents", {})),
                quality=QualityConfig(**data.get("quality", {})),
                limits=LimitsConfig(**data.get("limits", {})),
                paths=PathsConfig(**data.get("paths", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        limits = self.limits
        for name in ("max_review_iterations", "max_auto_iterations"):
            if int(getattr(limits, name)) < 1:
                raise ConfigError(f"limits.{name} must be at least 1.")
        for name in ("max_quality_retries", "max_auto_retries"):
            if int(getattr(limits, name)) < 0:
                raise ConfigError(f"limits.{name} must not be negative.")
        if self.quality.timeout_seconds <= 0:
            raise ConfigError("quality.timeout_seconds must be positive.")
        if self.quality.grace_seconds < 0:
            raise ConfigError("quality.grace_seconds must not be negative.")
        if self.quality.max_output_bytes < 1:
            raise ConfigError("quality.max_output_bytes must be positive.")
        if self.agents.timeout_seconds <= 0:
            raise ConfigError("agents.timeout_seconds must be positive.")
        if not self.agents.author_command or not self.agents.reviewer_command:
            raise ConfigError("agents.author_command and agents.reviewer_command are required.")
        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ConfigError(f"Unsupported logging.level: {self.logging.level}")

    def to_dict(self) -> dict:
        return {
            "agents": {
                "author_command": list(self.agents.author_command),
                "reviewer_command": list(self.agents.reviewer_command),
                "author_model": self.agents.author_model,
                "reviewer_model": self.agents.reviewer_model,
                "timeout_seconds": self.agents.timeout_seconds,
            },
            "quality": {
                "commands": list(self.quality.commands),
                "timeout_seconds": self.quality.timeout_seconds,
                "grace_seconds": self.quality.grace_seconds,
                "max_output_bytes": self.quality.max_output_bytes,
            },
            "limits": {
                "max_review_iterations": self.limits.max_review_iterations,
                "max_quality_retries": self.limits.max_quality_retries,
                "max_auto_retries": self.limits.max_auto_retries,
                "max_auto_iterations": self.limits.max_auto_iterations,
                "share_review_budget": self.limits.share_review_budget,
            },
            "paths": {
                "plans": self.paths.plans,
                "reviews": self.paths.reviews,
                "state_dir": self.paths.state_dir,
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
        }

    def plans_dir(self, project_root: Path) -> Path:
        return (project_root / self.paths.plans).resolve()

    def reviews_dir(self, project_root: Path) -> Path:
        return (project_root / self.paths.reviews).resolve()

    def state_dir(self, project_root: Path) -> Path:
        return (project_root / self.paths.state_dir).resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agents", "quality", "limits", "paths", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return ConductorConfig.from_dict(data)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
