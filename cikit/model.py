"""Typed pipeline graph: commands, stages and stage groups.

Everything here is immutable and validated on construction; the runner interprets
these objects but never mutates them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, TypeAlias

from cikit.errors import InvalidResourceRequest

GroupMode: TypeAlias = Literal["parallel", "sequential"]
ALLOWED_GROUP_MODES: tuple[str, ...] = ("parallel", "sequential")


def _clean_name(value: Any, *, label: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{label} must be a string (type={type(value).__name__})")
    name = value.strip()
    if not name:
        raise ValueError(f"{label} cannot be empty")
    return name


def _clean_patterns(value: Any, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = (value,)
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"{label} must be a string or list of strings")
    patterns: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{label} entries must be non-empty strings (got {item!r})")
        patterns.append(item.strip())
    return tuple(patterns)


def _clean_env(value: Any, *, label: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{label} must be a mapping (type={type(value).__name__})")
    env: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError(f"{label} keys must be non-empty strings")
        if item is None or isinstance(item, (dict, list, tuple)):
            raise ValueError(f"{label}.{key} must be a scalar value")
        env[key.strip()] = str(item)
    return env


@dataclass(frozen=True)
class ResourceRequest:
    cpu: int
    memory: int

    def __post_init__(self) -> None:
        for label in ("cpu", "memory"):
            value = getattr(self, label)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidResourceRequest(
                    f"Resource {label} must be an integer (type={type(value).__name__})"
                )
            if value <= 0:
                raise InvalidResourceRequest(f"Resource {label} must be > 0 (got {value})")

    def describe(self) -> str:
        return f"cpu={self.cpu}, memory={self.memory}"


@dataclass(frozen=True)
class Command:
    run: str
    name: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.run, str) or not self.run.strip():
            raise ValueError("Command run must be a non-empty string")
        if self.name is not None:
            object.__setattr__(self, "name", _clean_name(self.name, label="Command name"))
        object.__setattr__(self, "env", _clean_env(self.env, label="Command env"))

    @property
    def label(self) -> str:
        return self.name or self.run.strip().splitlines()[0]


@dataclass(frozen=True)
class StashSpec:
    name: str
    include: tuple[str, ...] = ("**",)
    exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _clean_name(self.name, label="Stash name"))
        include = _clean_patterns(self.include, label="Stash include")
        if not include:
            raise ValueError(f"Stash {self.name} requires at least one include pattern")
        object.__setattr__(self, "include", include)
        object.__setattr__(self, "exclude", _clean_patterns(self.exclude, label="Stash exclude"))


@dataclass(frozen=True)
class UnstashSpec:
    name: str
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _clean_name(self.name, label="Unstash name"))
        object.__setattr__(self, "include", _clean_patterns(self.include, label="Unstash include"))
        object.__setattr__(self, "exclude", _clean_patterns(self.exclude, label="Unstash exclude"))


@dataclass(frozen=True)
class ArchiveSpec:
    include: tuple[str, ...]
    exclude: tuple[str, ...] = ()
    always: bool = True

    def __post_init__(self) -> None:
        include = _clean_patterns(self.include, label="Archive include")
        if not include:
            raise ValueError("Archive requires at least one include pattern")
        object.__setattr__(self, "include", include)
        object.__setattr__(self, "exclude", _clean_patterns(self.exclude, label="Archive exclude"))
        if not isinstance(self.always, bool):
            raise TypeError("Archive always must be a bool")


@dataclass(frozen=True)
class Stage:
    name: str
    commands: tuple[Command, ...]
    resources: ResourceRequest | None = None
    environment: str | None = None
    image: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    stash: tuple[StashSpec, ...] = ()
    unstash: tuple[UnstashSpec, ...] = ()
    archive: tuple[ArchiveSpec, ...] = ()
    archive_log: bool = True
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _clean_name(self.name, label="Stage name"))
        commands = tuple(self.commands)
        if not commands:
            raise ValueError(f"Stage {self.name} has no commands")
        for command in commands:
            if not isinstance(command, Command):
                raise TypeError(
                    f"Stage {self.name} commands must be Command (type={type(command).__name__})"
                )
        object.__setattr__(self, "commands", commands)

        if self.resources is not None and not isinstance(self.resources, ResourceRequest):
            raise TypeError(f"Stage {self.name} resources must be a ResourceRequest or None")
        object.__setattr__(self, "env", _clean_env(self.env, label=f"Stage {self.name} env"))

        if self.timeout is not None:
            if isinstance(self.timeout, bool) or not isinstance(self.timeout, (int, float)):
                raise TypeError(f"Stage {self.name} timeout must be a number of seconds")
            if self.timeout <= 0:
                raise ValueError(f"Stage {self.name} timeout must be > 0 (got {self.timeout})")
            object.__setattr__(self, "timeout", float(self.timeout))

        object.__setattr__(self, "stash", tuple(self.stash))
        object.__setattr__(self, "unstash", tuple(self.unstash))
        object.__setattr__(self, "archive", tuple(self.archive))

        stash_names = [spec.name for spec in self.stash]
        duplicates = sorted({name for name in stash_names if stash_names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Stage {self.name} stashes duplicate name(s): {', '.join(duplicates)}")
        if not isinstance(self.meta, dict):
            raise TypeError(f"Stage meta must be a dict (type={type(self.meta).__name__})")


@dataclass(frozen=True)
class StageGroup:
    name: str
    stages: tuple[Stage, ...]
    mode: GroupMode = "sequential"

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _clean_name(self.name, label="Group name"))
        if self.mode not in ALLOWED_GROUP_MODES:
            raise ValueError(f"Invalid group mode for {self.name}: {self.mode!r}")
        stages = tuple(self.stages)
        if not stages:
            raise ValueError(f"Group {self.name} has no stages")
        seen: set[str] = set()
        duplicates: set[str] = set()
        for stage in stages:
            if not isinstance(stage, Stage):
                raise TypeError(f"Group {self.name} members must be Stage")
            if stage.name in seen:
                duplicates.add(stage.name)
            seen.add(stage.name)
        if duplicates:
            raise ValueError(
                f"Duplicate stage name(s) in group {self.name}: {', '.join(sorted(duplicates))}"
            )
        object.__setattr__(self, "stages", stages)
