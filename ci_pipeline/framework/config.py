from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Mapping

from cikit.errors import InvalidResourceRequest


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts:
      - True/False
      - 0/1 (ints)
      - strings: true/false/1/0/yes/no (case-insensitive, surrounding whitespace ignored)

    Raises:
      ValueError for anything else, with the provided config key path.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)([hms])")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0}


def parse_duration(value: Any, path: str) -> float:
    """
    Parse a wall-clock duration into seconds.

    Accepts numbers (seconds) and strings like "90", "45s", "30m", "2h", "1h30m".
    The result must be > 0.
    """

    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid duration for {path}: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        raw = value.strip().lower().replace(" ", "")
        if not raw:
            raise ValueError(f"Invalid duration for {path}: {value!r}")
        try:
            seconds = float(raw)
        except ValueError:
            parts = _DURATION_PART_RE.findall(raw)
            if not parts or "".join(num + unit for num, unit in parts) != raw:
                raise ValueError(f"Invalid duration for {path}: {value!r}") from None
            seconds = sum(float(num) * _DURATION_UNITS[unit] for num, unit in parts)
    else:
        raise ValueError(f"Invalid duration for {path}: {value!r}")

    if seconds <= 0:
        raise ValueError(f"Invalid duration for {path}: must be > 0 (got {value!r})")
    return seconds


_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([a-z]*)$")
_MEMORY_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ki": 1024,
    "kib": 1024,
    "mi": 1024**2,
    "mib": 1024**2,
    "gi": 1024**3,
    "gib": 1024**3,
    "ti": 1024**4,
    "tib": 1024**4,
}


def parse_memory(value: Any, path: str) -> int:
    """
    Parse a memory size into bytes.

    Accepts ints (bytes) and strings with decimal (K, M, G, T) or binary
    (Ki, Mi, Gi, Ti) suffixes, e.g. "512Mi", "4G", "2048".

    Raises:
      InvalidResourceRequest for sizes <= 0, ValueError for malformed values.
    """

    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid memory size for {path}: {value!r}")
    if isinstance(value, int):
        size = value
    elif isinstance(value, float):
        size = int(value)
    elif isinstance(value, str):
        match = _MEMORY_RE.match(value.strip().lower())
        if match is None or match.group(2) not in _MEMORY_UNITS:
            raise ValueError(f"Invalid memory size for {path}: {value!r}")
        size = int(float(match.group(1)) * _MEMORY_UNITS[match.group(2)])
    else:
        raise ValueError(f"Invalid memory size for {path}: {value!r}")

    if size <= 0:
        raise InvalidResourceRequest(f"Invalid memory size for {path}: must be > 0 (got {value!r})")
    return size


def _resolve_path(value: Any, path: str, *, base_dir: str | None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid config value for {path}: must be a non-empty string")
    expanded = os.path.expandvars(os.path.expanduser(value.strip()))
    if not os.path.isabs(expanded) and base_dir:
        expanded = os.path.join(base_dir, expanded)
    return os.path.abspath(expanded)


@dataclass(frozen=True)
class RunConfig:
    definition_path: str | None

    work_dir: str
    archive_dir: str
    log_dir: str
    run_index_path: str | None

    pool_cpu: int | None
    pool_memory: int | None

    provisioning_timeout: float | None
    grace_period: float
    stage_default_timeout: float | None

    keep_workspaces: bool

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any], *, base_dir: str | None = None
    ) -> tuple["RunConfig", list[str]]:
        """
        Parse and validate configuration, returning (RunConfig, warnings).

        Relative paths are resolved against `base_dir` (defaults to the cwd).

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []

        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        schema: Mapping[str, Any] = {
            "strict": None,
            "pipeline": {"definition_path": None},
            "paths": {
                "work_dir": None,
                "archive_dir": None,
                "log_dir": None,
                "run_index_path": None,
            },
            "pool": {"cpu": None, "memory": None},
            "timeouts": {"provisioning": None, "grace_period": None, "stage_default": None},
            "workspace": {"keep": None},
        }

        def collect_unknown_keys(mapping: Any, subschema: Mapping[str, Any], *, prefix: str) -> list[str]:
            if not isinstance(mapping, Mapping):
                return []
            unknown: list[str] = []
            for key, value in mapping.items():
                key_path = f"{prefix}.{key}" if prefix else str(key)
                if key not in subschema:
                    unknown.append(key_path)
                    continue
                nested = subschema.get(key)
                if isinstance(nested, Mapping):
                    unknown.extend(collect_unknown_keys(value, nested, prefix=key_path))
            return unknown

        unknown_keys = collect_unknown_keys(cfg, schema, prefix="")
        if unknown_keys:
            message = f"Unknown config keys: {', '.join(sorted(unknown_keys))}"
            if strict_unknown_keys:
                raise ValueError(message)
            warnings.append(message)

        def section(name: str) -> Mapping[str, Any]:
            value = cfg.get(name)
            if value is None:
                return {}
            if not isinstance(value, Mapping):
                raise ValueError(f"Invalid config type for {name}: expected mapping")
            return value

        base = os.path.abspath(base_dir) if base_dir else os.getcwd()

        pipeline_cfg = section("pipeline")
        definition_path = None
        if pipeline_cfg.get("definition_path") is not None:
            definition_path = _resolve_path(
                pipeline_cfg.get("definition_path"), "pipeline.definition_path", base_dir=base
            )

        paths_cfg = section("paths")
        work_dir = _resolve_path(paths_cfg.get("work_dir", "var/work"), "paths.work_dir", base_dir=base)
        archive_dir = _resolve_path(
            paths_cfg.get("archive_dir", "var/archive"), "paths.archive_dir", base_dir=base
        )
        log_dir = _resolve_path(paths_cfg.get("log_dir", "var/logs"), "paths.log_dir", base_dir=base)
        run_index_path = None
        if paths_cfg.get("run_index_path") is not None:
            run_index_path = _resolve_path(
                paths_cfg.get("run_index_path"), "paths.run_index_path", base_dir=base
            )

        pool_cfg = section("pool")
        pool_cpu = None
        if pool_cfg.get("cpu") is not None:
            pool_cpu = parse_int(pool_cfg.get("cpu"), "pool.cpu")
            if pool_cpu <= 0:
                raise InvalidResourceRequest(f"Invalid config value for pool.cpu: must be > 0 (got {pool_cpu})")
        pool_memory = None
        if pool_cfg.get("memory") is not None:
            pool_memory = parse_memory(pool_cfg.get("memory"), "pool.memory")

        timeouts_cfg = section("timeouts")
        provisioning_timeout = None
        if timeouts_cfg.get("provisioning") is not None:
            provisioning_timeout = parse_duration(timeouts_cfg.get("provisioning"), "timeouts.provisioning")
        grace_period = 10.0
        if timeouts_cfg.get("grace_period") is not None:
            raw_grace = timeouts_cfg.get("grace_period")
            if isinstance(raw_grace, (int, float)) and not isinstance(raw_grace, bool) and raw_grace == 0:
                grace_period = 0.0
            else:
                grace_period = parse_duration(raw_grace, "timeouts.grace_period")
        stage_default_timeout = None
        if timeouts_cfg.get("stage_default") is not None:
            stage_default_timeout = parse_duration(
                timeouts_cfg.get("stage_default"), "timeouts.stage_default"
            )

        workspace_cfg = section("workspace")
        keep_workspaces = False
        if workspace_cfg.get("keep") is not None:
            keep_workspaces = parse_bool(workspace_cfg.get("keep"), "workspace.keep")

        return (
            RunConfig(
                definition_path=definition_path,
                work_dir=work_dir,
                archive_dir=archive_dir,
                log_dir=log_dir,
                run_index_path=run_index_path,
                pool_cpu=pool_cpu,
                pool_memory=pool_memory,
                provisioning_timeout=provisioning_timeout,
                grace_period=grace_period,
                stage_default_timeout=stage_default_timeout,
                keep_workspaces=keep_workspaces,
            ),
            warnings,
        )
