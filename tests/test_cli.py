"""Tests for the command-line interface."""

import json

import pytest
from click.testing import CliRunner

from visual_gate import cli as cli_module
from visual_gate.baselines.updater import BaselineUpdateResult
from visual_gate.cli import cli
from visual_gate.models.run_result import RunSummary, ScreenResult


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _summary(status: str, thresholds) -> RunSummary:
    return RunSummary.from_results("run-9", "2024-01-15T12:00:00Z", [
        ScreenResult(screen_id="home", status=status, thresholds=thresholds, originality_percent=99.5),
    ])


class FakeRunner:
    summary: RunSummary = None

    def __init__(self, config):
        self.config = config
        self.run_dir = None

    def run(self):
        return self.summary


class TestRunCommand:
    """Tests for `visual-gate run`."""

    def test_requires_base_url_or_config(self, runner):
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 2
        assert "--baseURL is required" in result.output

    def test_missing_manifest_exits_1(self, runner, tmp_path):
        config = tmp_path / "gate.json"
        config.write_text(json.dumps({
            "base_url": "http://localhost:3000",
            "baselines_dir": str(tmp_path / "nothing"),
            "policy_root": str(tmp_path),
        }))
        result = runner.invoke(cli, ["run", "--config", str(config)])
        assert result.exit_code == 1
        assert "No manifest found" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["run", "--config", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_flags_build_config(self, runner, monkeypatch, standard_thresholds):
        seen = {}

        class Capturing(FakeRunner):
            def __init__(self, config):
                super().__init__(config)
                seen["config"] = config

        Capturing.summary = _summary("PASS", standard_thresholds)
        monkeypatch.setattr(cli_module, "GateRunner", Capturing)

        result = runner.invoke(cli, [
            "run", "--baseURL", "http://localhost:4000", "--screens", "home, about",
            "--outDir", "out", "--parallel", "3", "--evidence",
        ])
        assert result.exit_code == 0
        config = seen["config"]
        assert config.base_url == "http://localhost:4000"
        assert config.screens == ["home", "about"]
        assert config.out_dir == "out"
        assert config.max_parallel_screens == 3
        assert config.create_evidence_pack is True

    def test_ci_mode_fails_on_fail(self, runner, monkeypatch, standard_thresholds):
        FakeRunner.summary = _summary("FAIL", standard_thresholds)
        monkeypatch.setattr(cli_module, "GateRunner", FakeRunner)

        result = runner.invoke(cli, ["run", "--baseURL", "http://localhost", "--ci"])
        assert result.exit_code == 1
        assert "CI mode" in result.output

    def test_non_ci_mode_reports_fail_with_exit_0(self, runner, monkeypatch, standard_thresholds):
        FakeRunner.summary = _summary("FAIL", standard_thresholds)
        monkeypatch.setattr(cli_module, "GateRunner", FakeRunner)

        result = runner.invoke(cli, ["run", "--baseURL", "http://localhost"])
        assert result.exit_code == 0
        assert "home" in result.output

    def test_ci_mode_passes_on_warn(self, runner, monkeypatch, standard_thresholds):
        FakeRunner.summary = _summary("WARN", standard_thresholds)
        monkeypatch.setattr(cli_module, "GateRunner", FakeRunner)

        result = runner.invoke(cli, ["run", "--baseURL", "http://localhost", "--ci"])
        assert result.exit_code == 0


class TestPackCommand:
    def test_missing_summary(self, runner, tmp_path):
        result = runner.invoke(cli, ["pack", str(tmp_path)])
        assert result.exit_code == 1
        assert "Summary file not found" in result.output


class TestPolicyCommands:
    """Tests for `visual-gate policy ...`."""

    def test_validate_without_policy(self, runner, tmp_path):
        result = runner.invoke(cli, ["policy", "validate", "--root", str(tmp_path)])
        assert result.exit_code == 0
        assert "No policy file found" in result.output
        assert "Policy is valid" in result.output

    def test_validate_bad_policy(self, runner, tmp_path, write_policy):
        write_policy({"schemaVersion": 3})
        result = runner.invoke(cli, ["policy", "validate", "--root", str(tmp_path)])
        assert result.exit_code == 1
        assert "Unsupported" in result.output

    def test_thresholds(self, runner):
        result = runner.invoke(cli, ["policy", "thresholds", "--width", "1280", "--height", "720"])
        assert result.exit_code == 0
        assert "249 px" in result.output
        assert "599 px" in result.output


class TestMasksCommand:
    def test_no_screens(self, runner, tmp_path):
        result = runner.invoke(cli, [
            "masks", "suggest", "--baseURL", "http://localhost",
            "--baselines", str(tmp_path / "none"),
        ])
        assert result.exit_code == 1
        assert "No screens found" in result.output


class TestManifestCommand:
    def test_valid_manifest(self, runner, baselines_dir):
        result = runner.invoke(cli, ["manifest", "validate", "--baselines", str(baselines_dir)])
        assert result.exit_code == 0
        assert "Manifest is valid" in result.output

    def test_missing_baseline_file(self, runner, baselines_dir):
        (baselines_dir / "about" / "baseline.png").unlink()
        result = runner.invoke(cli, ["manifest", "validate", "--baselines", str(baselines_dir)])
        assert result.exit_code == 1
        assert "Missing baseline file: about/baseline.png" in result.output


class TestBaselineCommand:
    """Tests for `visual-gate baseline update`."""

    def test_missing_manifest(self, runner, tmp_path):
        result = runner.invoke(cli, [
            "baseline", "update", "--baseURL", "http://localhost",
            "--baselines", str(tmp_path / "none"),
        ])
        assert result.exit_code == 1
        assert "No manifest found" in result.output

    def test_failed_update_exits_1(self, runner, monkeypatch, baselines_dir):
        seen = {}

        class FakeUpdater:
            def __init__(self, store, base_url, policy_root="."):
                seen["base_url"] = base_url

            def select(self, screen_ids, changed_only=False, runs_dir="runs"):
                seen["select"] = (screen_ids, changed_only)
                return ["home", "about"]

            def update(self, entries):
                return [
                    BaselineUpdateResult("home", True, "", new_hash="ab" * 32),
                    BaselineUpdateResult("about", False, "", error="Navigation failed"),
                ]

        monkeypatch.setattr(cli_module, "BaselineUpdater", FakeUpdater)
        result = runner.invoke(cli, [
            "baseline", "update", "--baseURL", "http://localhost:4000",
            "--screens", "home, about", "--changedOnly", "--baselines", str(baselines_dir),
        ])
        assert result.exit_code == 1
        assert seen == {"base_url": "http://localhost:4000", "select": (["home", "about"], True)}
        assert "Updated 1 baseline(s)" in result.output
        assert "1 baseline(s) failed to update" in result.output
