from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "CI_PIPELINE_CONFIG"
LOCAL_OVERLAY_NAME = "config.local.yaml"

REPO_MARKERS = (".git", ".hg", "pyproject.toml")


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    """Return the nearest directory at or above `start` holding one of REPO_MARKERS."""

    origin = Path(start or os.getcwd()).resolve()
    if not origin.is_dir():
        origin = origin.parent

    for candidate in (origin, *origin.parents):
        if any((candidate / marker).exists() for marker in REPO_MARKERS):
            return str(candidate)

    raise FileNotFoundError(
        f"No repository root at or above {origin} (looked for {', '.join(REPO_MARKERS)}); "
        "pass --config or set the config environment variable"
    )


def read_yaml_document(path: str, *, what: str = "config") -> dict[str, Any]:
    """Read a YAML mapping; an empty document is an empty mapping."""

    with open(path, "r", encoding="utf-8") as handle:
        try:
            document = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {what} file {path}: {exc}") from exc

    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ValueError(
            f"The {what} file {path} must contain a mapping at the top level "
            f"(got {type(document).__name__})"
        )
    return dict(document)


def _shape(value: Any) -> str:
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "list"
    return "scalar"


def merge_overlay(base: Any, overlay: Any, *, path: str = "") -> Any:
    """
    Apply a local overlay onto the base config.

    Mappings merge key by key. Lists and scalars in the overlay replace the base
    value, and an explicit `null` clears it. The overlay may not change the shape
    of a setting (mapping, list or scalar); that raises ValueError naming the key.
    """

    if overlay is None or base is None:
        return overlay

    base_shape, overlay_shape = _shape(base), _shape(overlay)
    if base_shape != overlay_shape:
        raise ValueError(
            f"Invalid config overlay merge at {path or '<root>'}: "
            f"{base_shape} in the base config but {overlay_shape} in {LOCAL_OVERLAY_NAME}"
        )
    if overlay_shape == "list":
        return list(overlay)
    if overlay_shape == "scalar":
        return overlay

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        child = f"{path}.{key}" if path else str(key)
        merged[key] = merge_overlay(base[key], value, path=child) if key in base else value
    return merged


def load_config(
    *,
    config_path: str | None = None,
    env_var: str | None = CONFIG_ENV_VAR,
    config_dir: str = "config",
    config_name: str = "config.yaml",
    start_dir: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the orchestrator config, returning (cfg, meta).

    Resolution order:
      1. `config_path` (explicit, single file)
      2. the `env_var` environment variable (single file)
      3. `<repo_root>/<config_dir>/<config_name>` plus an optional
         `config.local.yaml` overlay in the same directory
    """

    explicit_path = None
    if config_path is not None:
        explicit_path = str(config_path).strip() or None
    elif env_var:
        explicit_path = os.environ.get(env_var, "").strip() or None

    if explicit_path:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit_path)))
        cfg = read_yaml_document(expanded)
        meta = {
            "mode": "explicit" if config_path is not None else "env",
            "paths": [expanded],
            "env_var": env_var,
            "repo_root": None,
        }
        return cfg, meta

    if os.path.isabs(config_dir):
        directory = config_dir
        repo_root = None
    else:
        repo_root = find_repo_root(start_dir)
        directory = os.path.join(repo_root, config_dir)
    base_path = os.path.join(directory, config_name)
    overlay_path = os.path.join(directory, LOCAL_OVERLAY_NAME)

    if not os.path.exists(base_path):
        raise FileNotFoundError(f"Missing base config file: {base_path}")

    cfg = read_yaml_document(base_path)
    loaded_paths = [os.path.abspath(base_path)]
    mode = "base"

    if os.path.exists(overlay_path):
        cfg = merge_overlay(cfg, read_yaml_document(overlay_path, what="local overlay"), path="")
        loaded_paths.append(os.path.abspath(overlay_path))
        mode = "base+local"

    meta = {"mode": mode, "paths": loaded_paths, "env_var": env_var, "repo_root": repo_root}
    return cfg, meta
