from pathlib import Path

import pytest

from cikit.errors import DefinitionError, InvalidResourceRequest
from ci_pipeline.framework.definition import compile_definition, load_definition

REPO_ROOT = Path(__file__).resolve().parents[1]


def _definition(**overrides) -> dict:
    raw = {
        "name": "demo",
        "environments": {
            "fcos": {"image": "quay.io/fcos-buildroot", "cpu": 2, "memory": "4Gi", "env": {"JOBS": 2}},
        },
        "groups": [
            {
                "name": "build",
                "mode": "parallel",
                "stages": [
                    {
                        "name": "rpms",
                        "environment": "fcos",
                        "commands": ["make rpm"],
                        "stash": [{"name": "rpms", "include": ["*.rpm"]}],
                    },
                    {"name": "codestyle", "commands": [{"name": "style", "run": "ci/codestyle.sh"}]},
                ],
            },
            {
                "stages": [
                    {
                        "name": "unit",
                        "environment": "fcos",
                        "resources": {"cpu": 1},
                        "timeout": "30m",
                        "env": {"JOBS": 1},
                        "unstash": ["rpms"],
                        "commands": ["make check"],
                        "archive": ["tests/**/*.log"],
                    }
                ]
            },
        ],
    }
    raw.update(overrides)
    return raw


def test_compiles_groups_profiles_and_defaults():
    definition = compile_definition(_definition())

    assert definition.name == "demo"
    assert [g.name for g in definition.groups] == ["build", "group_02"]
    assert [g.mode for g in definition.groups] == ["parallel", "sequential"]

    rpms = definition.groups[0].stages[0]
    assert rpms.image == "quay.io/fcos-buildroot"
    assert rpms.resources is not None
    assert (rpms.resources.cpu, rpms.resources.memory) == (2, 4 * 1024**3)
    assert rpms.env == {"JOBS": "2"}
    assert rpms.stash[0].include == ("*.rpm",)

    codestyle = definition.groups[0].stages[1]
    assert codestyle.resources is None
    assert codestyle.commands[0].label == "style"

    unit = definition.groups[1].stages[0]
    assert (unit.resources.cpu, unit.resources.memory) == (1, 4 * 1024**3)
    assert unit.timeout == 1800.0
    assert unit.env == {"JOBS": "1"}
    assert unit.unstash[0].name == "rpms"
    assert unit.archive[0].include == ("tests/**/*.log",)
    assert unit.archive[0].always is True

    assert [row["stage"] for row in definition.describe()] == ["rpms", "codestyle", "unit"]


def test_yaml_on_key_is_accepted_as_triggers():
    raw = _definition()
    # PyYAML loads a bare `on:` key as True.
    raw[True] = {"push": {"branches": ["main"]}}
    definition = compile_definition(raw)
    assert definition.triggers.describe() == {"push": ["main"]}


def test_unknown_keys_are_rejected_with_path():
    raw = _definition()
    raw["groups"][0]["stages"][0]["retries"] = 3
    with pytest.raises(DefinitionError, match=r"groups\[0\]\.stages\[0\]: unknown key\(s\).*retries"):
        compile_definition(raw)


def test_unknown_environment_profile_is_rejected():
    raw = _definition()
    raw["groups"][0]["stages"][1]["environment"] = "rhel"
    with pytest.raises(DefinitionError, match=r"unknown environment profile 'rhel'"):
        compile_definition(raw)


def test_stage_requires_commands():
    raw = _definition()
    raw["groups"][0]["stages"][1]["commands"] = []
    with pytest.raises(DefinitionError, match=r"at least one command"):
        compile_definition(raw)


def test_partial_resources_without_profile_are_invalid():
    raw = _definition()
    raw["groups"][0]["stages"][1]["resources"] = {"cpu": 2}
    with pytest.raises(InvalidResourceRequest, match=r"both cpu and memory"):
        compile_definition(raw)


def test_non_positive_resources_are_invalid():
    raw = _definition()
    raw["environments"]["fcos"]["cpu"] = 0
    with pytest.raises(InvalidResourceRequest):
        compile_definition(raw)


def test_invalid_group_mode_is_a_definition_error():
    raw = _definition()
    raw["groups"][0]["mode"] = "matrix"
    with pytest.raises(DefinitionError, match=r"groups\[0\]: Invalid group mode"):
        compile_definition(raw)


def test_duplicate_stage_names_across_groups_are_rejected():
    raw = _definition()
    raw["groups"][1]["stages"][0]["name"] = "codestyle"
    with pytest.raises(DefinitionError, match=r"Duplicate stage name 'codestyle'"):
        compile_definition(raw)


def test_unstash_from_parallel_sibling_is_rejected():
    raw = _definition()
    raw["groups"][0]["stages"][1]["unstash"] = ["rpms"]
    with pytest.raises(DefinitionError, match=r"parallel sibling"):
        compile_definition(raw)


def test_unstash_from_earlier_sequential_stage_is_allowed():
    raw = _definition()
    raw["groups"][1]["stages"].insert(
        0, {"name": "compose", "commands": ["cosa build"], "stash": ["ostree"]}
    )
    raw["groups"][1]["stages"][1]["unstash"] = ["rpms", "ostree"]
    definition = compile_definition(raw)
    assert [s.name for s in definition.groups[1].stages[1].unstash] == ["rpms", "ostree"]


def test_unstash_of_unknown_name_is_rejected():
    raw = _definition()
    raw["groups"][1]["stages"][0]["unstash"] = ["images"]
    with pytest.raises(DefinitionError, match=r"unstashes 'images' but no earlier stage"):
        compile_definition(raw)


def test_stash_names_are_unique_across_pipeline():
    raw = _definition()
    raw["groups"][1]["stages"][0]["stash"] = ["rpms"]
    with pytest.raises(DefinitionError, match=r"produced by both rpms and unit"):
        compile_definition(raw)


def test_missing_groups_is_an_error():
    with pytest.raises(DefinitionError, match=r"at least one group"):
        compile_definition({"name": "empty"})


def test_load_definition_reports_invalid_yaml(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text("groups: [\n", encoding="utf-8")
    with pytest.raises(DefinitionError, match=r"Invalid YAML"):
        load_definition(str(path))


def test_shipped_pipeline_definition_compiles():
    definition = load_definition(str(REPO_ROOT / "config" / "pipeline.yaml"))

    assert definition.name == "rpm-ostree"
    assert [g.name for g in definition.groups] == ["build", "test", "integration"]
    assert definition.triggers.describe()["push"] == ["main", "rhcos-*"]
    stage_names = [stage.name for _group, stage in definition.stages()]
    assert stage_names == ["codestyle", "rpms", "build-clang", "c9s", "unit", "compose", "kola"]
