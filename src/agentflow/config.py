from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal

PresetName = Literal["human", "batch", "debug"]


@dataclass(frozen=True, slots=True)
class EnforcementConfig:
    one_todo_per_response: bool = True
    max_simultaneous_todos: int = 1
    log_enforcement_actions: bool = True


@dataclass(frozen=True, slots=True)
class AutoAdvanceConfig:
    default_enabled: bool = False
    delay_between_todos_ms: int = 1000
    max_consecutive_runs: int = 5


@dataclass(frozen=True, slots=True)
class ValidationConfig:
    check_dependencies: bool = True
    warn_out_of_order_completion: bool = True
    max_pending_todos: int = 10


@dataclass(frozen=True, slots=True)
class DebugConfig:
    verbose_logging: bool = False
    log_dropped_updates: bool = True
    include_reasoning_logs: bool = False


@dataclass(frozen=True, slots=True)
class StateConfig:
    directory: str = ".agentflow/state"


@dataclass(frozen=True, slots=True)
class BackendConfig:
    binary: str = "claude"


@dataclass(frozen=True, slots=True)
class AgentFlowConfig:
    enforcement: EnforcementConfig = field(default_factory=EnforcementConfig)
    auto_advance: AutoAdvanceConfig = field(default_factory=AutoAdvanceConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)
    state: StateConfig = field(default_factory=StateConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)

    @classmethod
    def default(cls) -> AgentFlowConfig:
        return cls()

    @classmethod
    def preset(cls, name: str) -> AgentFlowConfig:
        base = cls.default()
        if name == "human":
            return base
        if name == "batch":
            return replace(
                base,
                enforcement=replace(
                    base.enforcement,
                    one_todo_per_response=False,
                    max_simultaneous_todos=3,
                ),
                auto_advance=replace(
                    base.auto_advance,
                    default_enabled=True,
                    max_consecutive_runs=10,
                ),
            )
        if name == "debug":
            return replace(
                base,
                debug=DebugConfig(
                    verbose_logging=True,
                    log_dropped_updates=True,
                    include_reasoning_logs=True,
                ),
            )
        raise ValueError(f"Unknown configuration preset: {name}")

    @classmethod
    def from_dict(cls, data: dict) -> AgentFlowConfig:
        return cls(
            enforcement=EnforcementConfig(**data.get("enforcement", {})),
            auto_advance=AutoAdvanceConfig(**data.get("auto_advance", {})),
            validation=ValidationConfig(**data.get("validation", {})),
            debug=DebugConfig(**data.get("debug", {})),
            state=StateConfig(**data.get("state", {})),
            backend=BackendConfig(**data.get("backend", {})),
        )

    def to_dict(self) -> dict:
        return {
            "enforcement": {
                "one_todo_per_response": self.enforcement.one_todo_per_response,
                "max_simultaneous_todos": self.enforcement.max_simultaneous_todos,
                "log_enforcement_actions": self.enforcement.log_enforcement_actions,
            },
            "auto_advance": {
                "default_enabled": self.auto_advance.default_enabled,
                "delay_between_todos_ms": self.auto_advance.delay_between_todos_ms,
                "max_consecutive_runs": self.auto_advance.max_consecutive_runs,
            },
            "validation": {
                "check_dependencies": self.validation.check_dependencies,
                "warn_out_of_order_completion": self.validation.warn_out_of_order_completion,
                "max_pending_todos": self.validation.max_pending_todos,
            },
            "debug": {
                "verbose_logging": self.debug.verbose_logging,
                "log_dropped_updates": self.debug.log_dropped_updates,
                "include_reasoning_logs": self.debug.include_reasoning_logs,
            },
            "state": {
                "directory": self.state.directory,
            },
            "backend": {
                "binary": self.backend.binary,
            },
        }


def validate_config(config: AgentFlowConfig) -> list[str]:
    errors: list[str] = []
    if config.enforcement.max_simultaneous_todos < 1:
        errors.append("enforcement.max_simultaneous_todos must be at least 1")
    if config.auto_advance.delay_between_todos_ms < 0:
        errors.append("auto_advance.delay_between_todos_ms cannot be negative")
    if config.auto_advance.max_consecutive_runs < 1:
        errors.append("auto_advance.max_consecutive_runs must be at least 1")
    if config.validation.max_pending_todos < 1:
        errors.append("validation.max_pending_todos must be at least 1")
    if (
        config.enforcement.one_todo_per_response
        and config.enforcement.max_simultaneous_todos > 1
    ):
        errors.append(
            "enforcement.one_todo_per_response conflicts with max_simultaneous_todos > 1"
        )
    return errors


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgentFlowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["enforcement", "auto_advance", "validation", "debug", "state", "backend"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AgentFlowConfig:
    if not path.exists():
        return AgentFlowConfig.default()
    return AgentFlowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AgentFlowConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
