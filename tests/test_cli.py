"""
Tests for the phaseflow command line.

Runs main() in-process against a DuckDB file and the fake capability
script, so every command goes through the real service wiring.
"""

import json
import shlex

import pytest

from phaseflow.cli import build_parser, main

from conftest import manifest, phase, write_package


@pytest.fixture
def cli_env(monkeypatch, tmp_path, capability_dirs, fake_capability):
    monkeypatch.setenv("PHASEFLOW_AGENTS_DIR", str(capability_dirs["agents"]))
    monkeypatch.setenv("PHASEFLOW_SKILLS_DIR", str(capability_dirs["skills"]))
    monkeypatch.setenv("PHASEFLOW_CLI_COMMAND", shlex.join(fake_capability))
    monkeypatch.delenv("PHASEFLOW_DB_PATH", raising=False)
    monkeypatch.delenv("PHASEFLOW_EXTERNAL_TOOLS", raising=False)
    return ["--db", str(tmp_path / "cli.duckdb")]


@pytest.fixture
def package(tmp_path):
    data = manifest(
        "cli-flow",
        [
            phase(0, "planning", skill="outline"),
            phase(1, "user", name="Review", requiresApproval=True),
            phase(2, "writing", skill="draft"),
        ],
        dependencies={"skills": ["outline", "draft"]},
        tags=["demo"],
    )
    return write_package(
        tmp_path / "cli-flow", data, skills={"outline": "# Outline\n", "draft": "# Draft\n"}
    )


class TestCommands:
    """Tests for the individual subcommands."""

    def test_import_and_list(self, cli_env, package, capsys):
        assert main(cli_env + ["import", str(package)]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert result["installedCounts"]["skills"] == 2

        assert main(cli_env + ["list", "--tag", "demo"]) == 0
        assert "cli-flow@1.0.0  Cli Flow  [demo]" in capsys.readouterr().out

    def test_failed_import_exit_code(self, cli_env, tmp_path, capsys):
        (tmp_path / "empty").mkdir()
        assert main(cli_env + ["import", str(tmp_path / "empty")]) == 1
        assert json.loads(capsys.readouterr().out)["errorKind"] == "ManifestNotFound"

    def test_deps_and_export(self, cli_env, package, capsys):
        main(cli_env + ["import", str(package)])
        capsys.readouterr()

        assert main(cli_env + ["deps", "cli-flow"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["skills"]["missing"] == []

        assert main(cli_env + ["export", "cli-flow", "--format", "json"]) == 0
        assert json.loads(capsys.readouterr().out)["id"] == "cli-flow"

    def test_capabilities(self, cli_env, package, capsys):
        main(cli_env + ["import", str(package)])
        capsys.readouterr()

        assert main(cli_env + ["capabilities", "--package", str(package)]) == 0
        listing = json.loads(capsys.readouterr().out)
        assert listing["installed"]["skills"] == ["draft", "outline"]
        assert listing["bundled"]["skills"] == ["draft", "outline"]

    def test_default_database_persists_between_commands(
        self, cli_env, package, monkeypatch, tmp_path, capsys
    ):
        home = tmp_path / "home"
        home.mkdir()
        monkeypatch.setenv("HOME", str(home))

        assert main(["import", str(package)]) == 0
        capsys.readouterr()

        assert (home / ".phaseflow" / "phaseflow.duckdb").is_file()
        assert main(["list"]) == 0
        assert "cli-flow@1.0.0" in capsys.readouterr().out

    def test_unknown_definition(self, cli_env):
        assert main(cli_env + ["deps", "ghost"]) == 1


class TestRun:
    """End-to-end run through the real invoker."""

    def test_auto_approve_run(self, cli_env, package, capsys):
        main(cli_env + ["import", str(package)])
        capsys.readouterr()

        code = main(
            cli_env
            + ["run", "cli-flow", "--auto-approve", "--var", "genre=noir", "--project-id", "p1"]
        )
        out = capsys.readouterr().out
        assert code == 0, out
        assert "approval-required phase 1 Review" in out
        assert out.rstrip().endswith(": COMPLETED")

    def test_prompted_approval(self, cli_env, package, monkeypatch, capsys):
        main(cli_env + ["import", str(package)])
        prompts = []

        def answer(text):
            prompts.append(text)
            return "y"

        monkeypatch.setattr("builtins.input", answer)
        assert main(cli_env + ["run", "cli-flow"]) == 0
        assert prompts == ["Approve phase 1 (Review)? [y/N] "]
        assert capsys.readouterr().out.rstrip().endswith(": COMPLETED")

    def test_closed_stdin_rejects(self, cli_env, package, monkeypatch, capsys):
        main(cli_env + ["import", str(package)])

        def closed(text):
            raise EOFError

        monkeypatch.setattr("builtins.input", closed)
        assert main(cli_env + ["run", "cli-flow"]) == 1
        out = capsys.readouterr().out
        assert "FAILED (Approval rejected for phase 'Review': Rejected at prompt)" in out

    def test_bad_var_is_usage_error(self, cli_env, package):
        main(cli_env + ["import", str(package)])
        with pytest.raises(SystemExit) as exc:
            main(cli_env + ["run", "cli-flow", "--var", "novalue"])
        assert exc.value.code == 2

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestServe:
    """The serve command hands the app to uvicorn."""

    def test_serve(self, cli_env, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        assert main(cli_env + ["serve", "--port", "6000"]) == 0
        app, kwargs = calls[0]
        assert kwargs == {"host": "127.0.0.1", "port": 6000}
        assert app.title == "phaseflow API"
