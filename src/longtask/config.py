from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path
    worker_logs: Path


@dataclass(slots=True)
class LaunchConfig:
    command_template: str = "{python} -m longtask.cli --config {config}"
    lang: str | None = None


@dataclass(slots=True)
class LimitsConfig:
    stale_after_hours: float = 24
    spawn_grace_seconds: float = 60
    listen_timeout_seconds: float = 30
    listen_interval_seconds: float = 0.3
    event_retention_seconds: float = 3600
    busy_timeout_seconds: float = 30


@dataclass(slots=True)
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class ServiceConfig:
    service_id: str
    description: str
    args: list[str]
    autostart: bool = False


@dataclass(slots=True)
class AppConfig:
    source: Path
    paths: PathsConfig
    launch: LaunchConfig = field(default_factory=LaunchConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"
    services: list[ServiceConfig] = field(default_factory=list)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _positive(section: str, key: str, value: object, default: float) -> float:
    output = float(value if value is not None else default)
    if output <= 0:
        raise ValueError(f"`{section}.{key}` must be > 0")
    return output


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    launch_raw = _mapping(raw, "launch")
    limits_raw = _mapping(raw, "limits")
    api_raw = _mapping(raw, "api")
    logging_raw = _mapping(raw, "logging")
    services_raw = raw.get("services") or []
    if not isinstance(services_raw, list):
        raise ValueError("`services` must be a list")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    db_path = to_path(_require(paths_raw, "db", "paths"))
    paths = PathsConfig(
        db=db_path,
        log=to_path(_require(paths_raw, "log", "paths")),
        worker_logs=(
            to_path(paths_raw["worker_logs"]) if paths_raw.get("worker_logs") else db_path.parent / "worker-logs"
        ),
    )

    lang = launch_raw.get("lang")
    launch = LaunchConfig(
        command_template=str(launch_raw.get("command_template", LaunchConfig().command_template)),
        lang=str(lang) if lang else None,
    )

    defaults = LimitsConfig()
    limits = LimitsConfig(
        **{
            name: _positive("limits", name, limits_raw.get(name), getattr(defaults, name))
            for name in LimitsConfig.__slots__
        }
    )

    api_defaults = ApiConfig()
    api = ApiConfig(
        host=str(api_raw.get("host", api_defaults.host)),
        port=int(api_raw.get("port", api_defaults.port)),
    )
    if not 0 < api.port < 65536:
        raise ValueError("`api.port` must be between 1 and 65535")

    log_level = str(logging_raw.get("level", "INFO")).upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"`logging.level` must be one of {', '.join(sorted(LOG_LEVELS))}")

    services: list[ServiceConfig] = []
    seen_ids: set[str] = set()
    for idx, item in enumerate(services_raw):
        if not isinstance(item, dict):
            raise ValueError(f"`services[{idx}]` must be a mapping")
        args = _require(item, "args", f"services[{idx}]")
        if not isinstance(args, list) or not args:
            raise ValueError(f"`services[{idx}].args` must be a non-empty list")
        service = ServiceConfig(
            service_id=str(_require(item, "id", f"services[{idx}]")),
            description=str(_require(item, "description", f"services[{idx}]")),
            args=[str(arg) for arg in args],
            autostart=bool(item.get("autostart", False)),
        )
        if service.service_id in seen_ids:
            raise ValueError(f"Duplicate service id: {service.service_id}")
        seen_ids.add(service.service_id)
        services.append(service)

    return AppConfig(
        source=config_path,
        paths=paths,
        launch=launch,
        limits=limits,
        api=api,
        log_level=log_level,
        services=services,
    )


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
    config.paths.worker_logs.mkdir(parents=True, exist_ok=True)
