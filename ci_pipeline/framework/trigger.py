from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from cikit.errors import DefinitionError

TriggerKind = Literal["push", "pull_request", "manual"]
ALLOWED_TRIGGER_KINDS: tuple[str, ...] = ("push", "pull_request", "manual")


@dataclass(frozen=True)
class TriggerEvent:
    """External event that starts a run. `revision` is opaque to the orchestrator."""

    kind: TriggerKind
    revision: str
    ref: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in ALLOWED_TRIGGER_KINDS:
            raise ValueError(f"Invalid trigger kind: {self.kind!r}")
        if not isinstance(self.revision, str) or not self.revision.strip():
            raise ValueError("Trigger revision must be a non-empty string")
        object.__setattr__(self, "revision", self.revision.strip())
        if self.ref is not None:
            ref = str(self.ref).strip()
            object.__setattr__(self, "ref", ref or None)

    @property
    def branch(self) -> str | None:
        if self.ref is None:
            return None
        for prefix in ("refs/heads/", "refs/pull/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix) :]
        return self.ref

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "revision": self.revision, "ref": self.ref}


@dataclass(frozen=True)
class TriggerRules:
    """
    Branch filters per event kind.

    No rules at all means every event matches. An event kind listed with an empty
    branch tuple matches any branch; `manual` events always match.
    """

    rules: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_definition(cls, raw: Any, *, path: str = "on") -> "TriggerRules":
        if raw is None:
            return cls()
        if isinstance(raw, str):
            raw = [raw]
        if isinstance(raw, (list, tuple)):
            raw = {str(kind): None for kind in raw}
        if not isinstance(raw, Mapping):
            raise DefinitionError(f"{path}: expected mapping or list of event kinds")

        rules: dict[str, tuple[str, ...]] = {}
        for kind, spec in raw.items():
            if kind not in ("push", "pull_request"):
                raise DefinitionError(f"{path}: unsupported event kind {kind!r}")
            branches: tuple[str, ...] = ()
            if spec is not None:
                if not isinstance(spec, Mapping):
                    raise DefinitionError(f"{path}.{kind}: expected mapping")
                unknown = sorted(set(spec) - {"branches"})
                if unknown:
                    raise DefinitionError(f"{path}.{kind}: unknown key(s): {', '.join(unknown)}")
                raw_branches = spec.get("branches") or ()
                if isinstance(raw_branches, str):
                    raw_branches = (raw_branches,)
                if not isinstance(raw_branches, (list, tuple)):
                    raise DefinitionError(f"{path}.{kind}.branches: expected list of strings")
                branches = tuple(str(branch).strip() for branch in raw_branches if str(branch).strip())
            rules[kind] = branches
        return cls(rules=rules)

    def matches(self, event: TriggerEvent) -> bool:
        if event.kind == "manual" or not self.rules:
            return True
        if event.kind not in self.rules:
            return False
        branches = self.rules[event.kind]
        if not branches:
            return True
        branch = event.branch
        if branch is None:
            return False
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in branches)

    def describe(self) -> dict[str, list[str]]:
        return {kind: list(branches) for kind, branches in self.rules.items()}
