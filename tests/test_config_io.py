import os
from pathlib import Path

import pytest

from ci_pipeline.foundation.config_io import find_repo_root, load_config, merge_overlay

ENV_VAR = "TEST_CI_PIPELINE_CONFIG"


def _repo(tmp_path: Path) -> Path:
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n", encoding="utf-8")
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "config.yaml").write_text(
        "pool:\n  cpu: 4\n  memory: 8Gi\npaths:\n  log_dir: var/logs\n", encoding="utf-8"
    )
    return tmp_path


def test_load_config_base_only(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    repo = _repo(tmp_path)

    cfg, meta = load_config(env_var=ENV_VAR, start_dir=str(repo))

    assert cfg == {"pool": {"cpu": 4, "memory": "8Gi"}, "paths": {"log_dir": "var/logs"}}
    assert meta["mode"] == "base"
    assert Path(str(meta["repo_root"])).resolve() == repo.resolve()


def test_load_config_base_plus_local_overlay(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    repo = _repo(tmp_path)
    (repo / "config" / "config.local.yaml").write_text("pool:\n  cpu: 16\n", encoding="utf-8")

    cfg, meta = load_config(env_var=ENV_VAR, start_dir=str(repo))

    assert cfg["pool"] == {"cpu": 16, "memory": "8Gi"}
    assert meta["mode"] == "base+local"
    assert len(meta["paths"]) == 2


def test_load_config_finds_repo_root_from_subdir(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    repo = _repo(tmp_path)
    nested = repo / "ci" / "scripts"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    _cfg, meta = load_config(env_var=ENV_VAR)

    assert Path(meta["paths"][0]).resolve() == (repo / "config" / "config.yaml").resolve()
    assert Path(find_repo_root()).resolve() == repo.resolve()


def test_env_var_selects_single_file(tmp_path, monkeypatch):
    other = tmp_path / "other.yaml"
    other.write_text("strict: true\n", encoding="utf-8")
    monkeypatch.setenv(ENV_VAR, str(other))

    cfg, meta = load_config(env_var=ENV_VAR)

    assert cfg == {"strict": True}
    assert meta["mode"] == "env"
    assert meta["repo_root"] is None


def test_explicit_path_wins_over_env(tmp_path, monkeypatch):
    explicit = tmp_path / "explicit.yaml"
    explicit.write_text("a: 1\n", encoding="utf-8")
    monkeypatch.setenv(ENV_VAR, str(tmp_path / "does-not-exist.yaml"))

    cfg, meta = load_config(config_path=str(explicit), env_var=ENV_VAR)

    assert cfg == {"a": 1}
    assert meta["mode"] == "explicit"
    assert meta["paths"] == [os.path.abspath(str(explicit))]


def test_missing_base_config_raises(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    with pytest.raises(FileNotFoundError, match=r"Missing base config file"):
        load_config(env_var=ENV_VAR, start_dir=str(tmp_path))


def test_invalid_overlay_yaml_names_the_file(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    repo = _repo(tmp_path)
    (repo / "config" / "config.local.yaml").write_text("pool: [1, 2\n", encoding="utf-8")

    with pytest.raises(ValueError) as excinfo:
        load_config(env_var=ENV_VAR, start_dir=str(repo))

    assert "config.local.yaml" in str(excinfo.value)


def test_merge_overlay_type_mismatch_raises():
    with pytest.raises(ValueError, match=r"Invalid config overlay merge at pool"):
        merge_overlay({"pool": {"cpu": 1}}, {"pool": [1, 2]})


def test_merge_overlay_replaces_lists_and_keeps_untouched_keys():
    merged = merge_overlay({"a": [1, 2], "b": {"c": 1, "d": 2}}, {"a": [3], "b": {"d": 5}})
    assert merged == {"a": [3], "b": {"c": 1, "d": 5}}


def test_merge_overlay_null_clears_and_scalar_cannot_become_mapping():
    assert merge_overlay({"paths": {"run_index_path": "x.jsonl"}}, {"paths": {"run_index_path": None}}) == {
        "paths": {"run_index_path": None}
    }
    with pytest.raises(ValueError, match=r"at pool\.cpu: scalar in the base config but mapping"):
        merge_overlay({"pool": {"cpu": 4}}, {"pool": {"cpu": {"max": 8}}})


def test_find_repo_root_accepts_a_bare_git_checkout(tmp_path):
    (tmp_path / ".git").mkdir()
    nested = tmp_path / "src" / "lib"
    nested.mkdir(parents=True)
    (nested / "main.c").write_text("int main(void) { return 0; }\n", encoding="utf-8")

    assert Path(find_repo_root(nested / "main.c")).resolve() == tmp_path.resolve()


def test_non_mapping_config_names_the_file(tmp_path):
    listed = tmp_path / "list.yaml"
    listed.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError, match=r"must contain a mapping at the top level \(got list\)"):
        load_config(config_path=str(listed))
