"""Tests for template substitution and the assembled State defaults."""

from pathlib import Path

from forkcascade.model.record import SyncState


def test_config_reference_templates_substituted(state, tmp_path):
    """{config.log_root} in the packaged defaults resolves to the run's log root."""
    assert state.config.check.output_dir == tmp_path / "state" / "checks"


def test_runtime_parameter_templates_preserved(state):
    """Command placeholders like {remote} and {base} survive substitution."""
    git = state.config.commands["git"]

    assert git["fetch"] == "git fetch {remote} --prune"
    assert "{base}" in git["count"] and "{head}" in git["count"]
    assert "{repo}" in state.config.commands["gh"]["issue_create"]


def test_platformdirs_template(state):
    value = state._substitute_string("{platformdirs.user_log_dir}/x")

    assert not value.startswith("{")
    assert value.endswith("/x")
    assert "forkcascade" in value


def test_unknown_templates_left_alone(state):
    assert state._substitute_string("{config.nope}") == "{config.nope}"
    assert state._substitute_string("{something}") == "{something}"
    assert state._substitute_string("{Upper}") == "{Upper}"


def test_sla_defaults_cover_every_live_state(state):
    hours = state.config.sla.hours

    assert set(hours) == {s for s in SyncState if not s.is_terminal}
    assert state.config.sla.limit_seconds(SyncState.RESOLVING) == 48 * 3600
    assert state.config.sla.limit_seconds(SyncState.PROMOTED) is None


def test_state_labels(state):
    labels = state.config.labels

    assert labels.state_label(SyncState.RESOLVING) == "cascade-state:resolving"
    assert labels.state_label(SyncState.PROMOTED) == "cascade-state:promoted"


def test_init_overrides_merge_with_defaults(monkeypatch, tmp_path):
    from forkcascade.core.config import State

    monkeypatch.setattr("sys.argv", ["forkcascade"])
    state = State(config={
        "log_root": str(tmp_path),
        "policy": {"max_diff_lines": 10},
    })

    assert state.config.policy.max_diff_lines == 10
    assert state.config.policy.max_validation_attempts == 3
    assert state.config.log_root == Path(tmp_path)
    assert "git" in state.config.commands
