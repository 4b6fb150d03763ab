#!/usr/bin/env python3
"""Pipeline configuration: CLI values plus the tool templates from YAML."""

from __future__ import annotations

import argparse
import sys
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

DEFAULTS_PATH = Path(__file__).resolve().parents[1] / "configs" / "defaults.yaml"
ALLOWED_SETTINGS_KEYS = {"replay_tool", "loadgen", "database", "capture", "timing"}

DEFAULT_REPO = "https://github.com/mongodb/mongo-tools.git"
DEFAULT_REVISION = "master"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 27017
DEFAULT_CONNECTIONS = "10,20,50"
DEFAULT_INTERFACE = "lo"


def deep_merge(base: Dict, extra: Dict) -> Dict:
    result = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _warn_unknown_keys(label: str, mapping: Dict) -> None:
    unknown = sorted(set(mapping.keys()) - ALLOWED_SETTINGS_KEYS)
    if unknown:
        print(
            f"[config] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def load_settings(path_override: Optional[str] = None) -> Dict[str, Any]:
    """Load the bundled defaults, then merge an optional user YAML on top."""
    settings = yaml.safe_load(DEFAULTS_PATH.read_text(encoding="utf-8")) or {}
    if path_override:
        path = Path(path_override)
        if not path.exists():
            raise FileNotFoundError(f"pipeline config not found: {path}")
        extra = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(extra, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        _warn_unknown_keys(str(path), extra)
        settings = deep_merge(settings, {k: v for k, v in extra.items() if k in ALLOWED_SETTINGS_KEYS})
    return settings


def parse_connections(text: str) -> Tuple[int, ...]:
    """Parse ``"10,20,50"`` into ``(10, 20, 50)``.

    Every entry must be a positive integer; empty entries are rejected.
    """
    values = []
    for raw in str(text).split(","):
        entry = raw.strip()
        if not entry:
            raise ValueError(f"empty entry in connection list {text!r}")
        try:
            value = int(entry)
        except ValueError:
            raise ValueError(f"connection count {entry!r} is not an integer") from None
        if value <= 0:
            raise ValueError(f"connection count must be positive, got {value}")
        values.append(value)
    return tuple(values)


def connections_arg(text: str) -> Tuple[int, ...]:
    try:
        return parse_connections(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


@dataclass(frozen=True)
class PipelineConfig:
    repo: str
    revision: str
    host: str
    port: int
    connections: Tuple[int, ...]
    interface: str
    profile: bool = False
    force: bool = False
    work_dir: Path = Path(".")
    settings: Dict[str, Any] = field(default_factory=load_settings, compare=False)

    def __post_init__(self):
        if not self.connections:
            raise ValueError("connection list must not be empty")
        for value in self.connections:
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"connection count must be a positive integer, got {value!r}")
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"port out of range: {self.port}")
        object.__setattr__(self, "work_dir", Path(self.work_dir))
        object.__setattr__(self, "settings", deepcopy(self.settings))

    def section(self, name: str) -> Dict[str, Any]:
        return self.settings.get(name) or {}

    def timing(self, key: str, fallback: float) -> float:
        try:
            return float(self.section("timing").get(key, fallback))
        except (TypeError, ValueError):
            return fallback

    @property
    def database_name(self) -> str:
        return str(self.section("database").get("name", "test"))

    def database_uri(self) -> str:
        template = self.section("database").get("uri", "mongodb://{host}:{port}/{database}")
        return template.format(host=self.host, port=self.port, database=self.database_name)

    def host_uri(self) -> str:
        return f"mongodb://{self.host}:{self.port}"

    def as_plan(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "revision": self.revision,
            "host": self.host,
            "port": self.port,
            "connections": list(self.connections),
            "interface": self.interface,
            "profile": self.profile,
            "force": self.force,
            "work_dir": str(self.work_dir),
            "settings": self.settings,
        }
