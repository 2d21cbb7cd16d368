"""Compile a declarative pipeline definition into validated `cikit` objects.

The definition is a YAML mapping:

    name: rpm-ostree
    triggers:
      push: {branches: [main]}
      pull_request: {branches: [main]}
    environments:
      buildroot: {image: quay.io/coreos/fcos-buildroot, cpu: 4, memory: 8Gi}
    groups:
      - name: build
        mode: parallel
        stages:
          - name: rpms
            environment: buildroot
            commands: ["./ci/build.sh"]
            stash: [{name: build, include: ["*.rpm"]}]

Compilation happens once; the runner only ever sees the resulting StageGroups.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from cikit.errors import DefinitionError, InvalidResourceRequest
from cikit.model import (
    ArchiveSpec,
    Command,
    ResourceRequest,
    Stage,
    StageGroup,
    StashSpec,
    UnstashSpec,
)
from ci_pipeline.foundation.config_io import read_yaml_document
from ci_pipeline.framework.config import parse_bool, parse_duration, parse_int, parse_memory
from ci_pipeline.framework.trigger import TriggerRules

T = TypeVar("T")

_TOP_LEVEL_KEYS = {"name", "triggers", "environments", "groups"}
_PROFILE_KEYS = {"image", "cpu", "memory", "env"}
_GROUP_KEYS = {"name", "mode", "stages"}
_STAGE_KEYS = {
    "name",
    "environment",
    "image",
    "resources",
    "timeout",
    "env",
    "commands",
    "stash",
    "unstash",
    "archive",
    "archive_log",
}


@dataclass(frozen=True)
class EnvironmentProfile:
    name: str
    image: str | None = None
    cpu: int | None = None
    memory: int | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    triggers: TriggerRules
    environments: Mapping[str, EnvironmentProfile]
    groups: tuple[StageGroup, ...]
    source_path: str | None = None

    def stages(self) -> Iterator[tuple[StageGroup, Stage]]:
        for group in self.groups:
            for stage in group.stages:
                yield group, stage

    def describe(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for group, stage in self.stages():
            rows.append(
                {
                    "group": group.name,
                    "mode": group.mode,
                    "stage": stage.name,
                    "environment": stage.environment,
                    "image": stage.image,
                    "resources": stage.resources.describe() if stage.resources else None,
                    "timeout": stage.timeout,
                    "commands": len(stage.commands),
                    "stash": [spec.name for spec in stage.stash],
                    "unstash": [spec.name for spec in stage.unstash],
                }
            )
        return rows


def _guard(path: str, build: Callable[[], T]) -> T:
    try:
        return build()
    except DefinitionError:
        raise
    except InvalidResourceRequest as exc:
        raise InvalidResourceRequest(f"{path}: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise DefinitionError(f"{path}: {exc}") from exc


def _mapping(value: Any, path: str, *, allowed: set[Any]) -> Mapping[Any, Any]:
    if not isinstance(value, Mapping):
        raise DefinitionError(f"{path}: expected mapping (got {type(value).__name__})")
    unknown = sorted(str(key) for key in value if key not in allowed)
    if unknown:
        raise DefinitionError(f"{path}: unknown key(s): {', '.join(unknown)}")
    return value


def _list(value: Any, path: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (str, Mapping)):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise DefinitionError(f"{path}: expected list (got {type(value).__name__})")
    return list(value)


def _optional_str(value: Any, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise DefinitionError(f"{path}: expected non-empty string")
    return value.strip()


def _compile_profiles(raw: Any) -> dict[str, EnvironmentProfile]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise DefinitionError("environments: expected mapping of profile name to settings")
    profiles: dict[str, EnvironmentProfile] = {}
    for name, spec in raw.items():
        path = f"environments.{name}"
        spec = _mapping(spec or {}, path, allowed=_PROFILE_KEYS)
        cpu = None
        if spec.get("cpu") is not None:
            cpu = _guard(f"{path}.cpu", lambda: parse_int(spec["cpu"], f"{path}.cpu"))
            if cpu <= 0:
                raise InvalidResourceRequest(f"{path}.cpu: must be > 0 (got {cpu})")
        memory = None
        if spec.get("memory") is not None:
            memory = _guard(f"{path}.memory", lambda: parse_memory(spec["memory"], f"{path}.memory"))
        env = spec.get("env") or {}
        if not isinstance(env, Mapping):
            raise DefinitionError(f"{path}.env: expected mapping")
        profiles[str(name)] = EnvironmentProfile(
            name=str(name),
            image=_optional_str(spec.get("image"), f"{path}.image"),
            cpu=cpu,
            memory=memory,
            env=dict(env),
        )
    return profiles


def _compile_command(raw: Any, path: str) -> Command:
    if isinstance(raw, str):
        return _guard(path, lambda: Command(run=raw))
    spec = _mapping(raw, path, allowed={"name", "run", "env"})
    if "run" not in spec:
        raise DefinitionError(f"{path}: command mapping requires 'run'")
    return _guard(path, lambda: Command(run=spec["run"], name=spec.get("name"), env=spec.get("env") or {}))


def _compile_stash(raw: Any, path: str) -> StashSpec:
    if isinstance(raw, str):
        return _guard(path, lambda: StashSpec(name=raw))
    spec = _mapping(raw, path, allowed={"name", "include", "exclude"})
    return _guard(
        path,
        lambda: StashSpec(
            name=spec.get("name"),
            include=spec.get("include") or ("**",),
            exclude=spec.get("exclude") or (),
        ),
    )


def _compile_unstash(raw: Any, path: str) -> UnstashSpec:
    if isinstance(raw, str):
        return _guard(path, lambda: UnstashSpec(name=raw))
    spec = _mapping(raw, path, allowed={"name", "include", "exclude"})
    return _guard(
        path,
        lambda: UnstashSpec(
            name=spec.get("name"),
            include=spec.get("include") or (),
            exclude=spec.get("exclude") or (),
        ),
    )


def _compile_archive(raw: Any, path: str) -> ArchiveSpec:
    if isinstance(raw, str):
        return _guard(path, lambda: ArchiveSpec(include=(raw,)))
    spec = _mapping(raw, path, allowed={"include", "exclude", "always"})
    always = True
    if spec.get("always") is not None:
        always = _guard(f"{path}.always", lambda: parse_bool(spec["always"], f"{path}.always"))
    return _guard(
        path,
        lambda: ArchiveSpec(
            include=spec.get("include") or (),
            exclude=spec.get("exclude") or (),
            always=always,
        ),
    )


def _compile_resources(
    raw: Any, profile: EnvironmentProfile | None, path: str
) -> ResourceRequest | None:
    cpu = profile.cpu if profile else None
    memory = profile.memory if profile else None
    if raw is not None:
        spec = _mapping(raw, path, allowed={"cpu", "memory"})
        if spec.get("cpu") is not None:
            cpu = _guard(f"{path}.cpu", lambda: parse_int(spec["cpu"], f"{path}.cpu"))
        if spec.get("memory") is not None:
            memory = _guard(f"{path}.memory", lambda: parse_memory(spec["memory"], f"{path}.memory"))
    if cpu is None and memory is None:
        return None
    if cpu is None or memory is None:
        raise InvalidResourceRequest(f"{path}: both cpu and memory are required (cpu={cpu}, memory={memory})")
    return _guard(path, lambda: ResourceRequest(cpu=cpu, memory=memory))


def _compile_stage(
    raw: Any, path: str, profiles: Mapping[str, EnvironmentProfile]
) -> Stage:
    spec = _mapping(raw, path, allowed=_STAGE_KEYS)

    profile: EnvironmentProfile | None = None
    profile_name = _optional_str(spec.get("environment"), f"{path}.environment")
    if profile_name is not None:
        profile = profiles.get(profile_name)
        if profile is None:
            available = ", ".join(sorted(profiles)) or "<none>"
            raise DefinitionError(
                f"{path}.environment: unknown environment profile {profile_name!r} (available: {available})"
            )

    commands = _list(spec.get("commands"), f"{path}.commands")
    if not commands:
        raise DefinitionError(f"{path}.commands: at least one command is required")

    env: dict[str, Any] = dict(profile.env) if profile else {}
    if spec.get("env") is not None:
        if not isinstance(spec["env"], Mapping):
            raise DefinitionError(f"{path}.env: expected mapping")
        env.update(spec["env"])

    timeout = None
    if spec.get("timeout") is not None:
        timeout = _guard(f"{path}.timeout", lambda: parse_duration(spec["timeout"], f"{path}.timeout"))

    archive_log = True
    if spec.get("archive_log") is not None:
        archive_log = _guard(
            f"{path}.archive_log", lambda: parse_bool(spec["archive_log"], f"{path}.archive_log")
        )

    resources = _compile_resources(spec.get("resources"), profile, f"{path}.resources")
    image = _optional_str(spec.get("image"), f"{path}.image") or (profile.image if profile else None)

    return _guard(
        path,
        lambda: Stage(
            name=spec.get("name"),
            commands=tuple(
                _compile_command(item, f"{path}.commands[{i}]") for i, item in enumerate(commands)
            ),
            resources=resources,
            environment=profile_name,
            image=image,
            env=env,
            timeout=timeout,
            stash=tuple(
                _compile_stash(item, f"{path}.stash[{i}]")
                for i, item in enumerate(_list(spec.get("stash"), f"{path}.stash"))
            ),
            unstash=tuple(
                _compile_unstash(item, f"{path}.unstash[{i}]")
                for i, item in enumerate(_list(spec.get("unstash"), f"{path}.unstash"))
            ),
            archive=tuple(
                _compile_archive(item, f"{path}.archive[{i}]")
                for i, item in enumerate(_list(spec.get("archive"), f"{path}.archive"))
            ),
            archive_log=archive_log,
        ),
    )


def _validate_stash_flow(groups: tuple[StageGroup, ...]) -> None:
    producers: dict[str, str] = {}
    available: set[str] = set()
    for group in groups:
        provided_here: set[str] = set()
        for stage in group.stages:
            for spec in stage.unstash:
                visible = available | (provided_here if group.mode == "sequential" else set())
                if spec.name not in visible:
                    hint = ""
                    if spec.name in provided_here or any(
                        spec.name == s.name for other in group.stages for s in other.stash
                    ):
                        hint = " (stashed by a parallel sibling, which has no ordering guarantee)"
                    raise DefinitionError(
                        f"Stage {stage.name} unstashes {spec.name!r} but no earlier stage stashes it{hint}"
                    )
            for spec in stage.stash:
                if spec.name in producers:
                    raise DefinitionError(
                        f"Stash name {spec.name!r} is produced by both {producers[spec.name]} and {stage.name}"
                    )
                producers[spec.name] = stage.name
                provided_here.add(spec.name)
        available |= provided_here


def compile_definition(raw: Mapping[str, Any], *, source_path: str | None = None) -> PipelineDefinition:
    # YAML 1.1 reads a bare `on:` key as boolean True.
    allowed_top: set[Any] = set(_TOP_LEVEL_KEYS) | {"on", True}
    spec = _mapping(raw, "definition", allowed=allowed_top)

    name = _optional_str(spec.get("name"), "name") or "pipeline"
    trigger_raw = spec.get("triggers", spec.get("on", spec.get(True)))
    triggers = TriggerRules.from_definition(trigger_raw, path="triggers")
    profiles = _compile_profiles(spec.get("environments"))

    raw_groups = _list(spec.get("groups"), "groups")
    if not raw_groups:
        raise DefinitionError("groups: at least one group is required")

    groups: list[StageGroup] = []
    seen_stages: dict[str, str] = {}
    for gi, raw_group in enumerate(raw_groups):
        gpath = f"groups[{gi}]"
        gspec = _mapping(raw_group, gpath, allowed=_GROUP_KEYS)
        raw_stages = _list(gspec.get("stages"), f"{gpath}.stages")
        stages = [
            _compile_stage(item, f"{gpath}.stages[{si}]", profiles) for si, item in enumerate(raw_stages)
        ]
        group = _guard(
            gpath,
            lambda: StageGroup(
                name=gspec.get("name") or f"group_{gi + 1:02d}",
                mode=gspec.get("mode", "sequential"),
                stages=tuple(stages),
            ),
        )
        for stage in group.stages:
            if stage.name in seen_stages:
                raise DefinitionError(
                    f"Duplicate stage name {stage.name!r} in groups {seen_stages[stage.name]} and {group.name}"
                )
            seen_stages[stage.name] = group.name
        groups.append(group)

    group_names = [group.name for group in groups]
    duplicate_groups = sorted({n for n in group_names if group_names.count(n) > 1})
    if duplicate_groups:
        raise DefinitionError(f"Duplicate group name(s): {', '.join(duplicate_groups)}")

    compiled = tuple(groups)
    _validate_stash_flow(compiled)
    return PipelineDefinition(
        name=name,
        triggers=triggers,
        environments=profiles,
        groups=compiled,
        source_path=source_path,
    )


def load_definition(path: str) -> PipelineDefinition:
    try:
        raw = read_yaml_document(path, what="pipeline definition")
    except ValueError as exc:
        raise DefinitionError(str(exc)) from exc
    return compile_definition(raw, source_path=path)
