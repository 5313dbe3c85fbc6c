import json
from unittest.mock import patch

from typer.testing import CliRunner

from wiprov import orchestrator
from wiprov.cli import app

runner = CliRunner()


def test_cli_help():
    res = runner.invoke(app, ["--help"])
    assert res.exit_code == 0
    assert "workload-identity" in res.stdout


def test_cli_version():
    res = runner.invoke(app, ["--version"])
    assert res.exit_code == 0
    assert "wiprov version" in res.stdout


def test_command_help():
    for cmd in ["setup", "postprovision", "preprovision", "teardown", "steps", "status", "init", "doctor"]:
        res = runner.invoke(app, [cmd, "--help"])
        assert res.exit_code == 0, cmd


def test_init_writes_config(tmp_path):
    res = runner.invoke(app, ["init", "--workdir", str(tmp_path)])
    assert res.exit_code == 0
    assert (tmp_path / ".wiprov" / "provision.yaml").exists()

    res = runner.invoke(app, ["init", "--workdir", str(tmp_path)])
    assert "already present" in res.stdout


def test_steps_lists_plan(tmp_path):
    res = runner.invoke(app, ["steps", "teardown", "--workdir", str(tmp_path)])
    assert res.exit_code == 0
    assert "delete-resource-group" in res.stdout


def test_steps_unknown_plan(tmp_path):
    res = runner.invoke(app, ["steps", "bogus", "--workdir", str(tmp_path)])
    assert res.exit_code != 0


def test_setup_missing_tools_runs_nothing(tmp_path):
    with patch("wiprov.doctor.which", return_value=None), patch("wiprov.orchestrator.StepRunner") as mock_runner:
        res = runner.invoke(app, ["setup", "--workdir", str(tmp_path), "--run-id", "r1"])
    assert res.exit_code == 1
    assert "Preconditions not met" in res.stdout
    mock_runner.assert_not_called()
    assert not (tmp_path / ".wiprov" / "runs" / "r1").exists()


def test_setup_success(tmp_path, fake_cli, monkeypatch):
    fake_cli.on("account", "id", stdout="sub-1\n").on("aks", "show", stdout="https://issuer/\n")
    fake_cli.on("show", stdout="value\n")
    monkeypatch.setattr("wiprov.cli.run_setup", lambda cfg: orchestrator.run_setup(cfg, executor=fake_cli))

    res = runner.invoke(app, ["setup", "eastus", "--workdir", str(tmp_path), "--run-id", "r1", "--skip-preflight"])

    assert res.exit_code == 0, res.stdout
    assert "Created resources" in res.stdout
    status = json.loads((tmp_path / ".wiprov" / "runs" / "r1" / "RUN_STATUS.json").read_text())
    assert status["state"] == "SUCCEEDED"
    assert fake_cli.argvs[0][fake_cli.argvs[0].index("--location") + 1] == "eastus"


def test_setup_failure_exits_one(tmp_path, fake_cli, monkeypatch):
    fake_cli.on("aks", "create", rc=1, stderr="QuotaExceeded")
    fake_cli.on("show", stdout="value\n")
    monkeypatch.setattr("wiprov.cli.run_setup", lambda cfg: orchestrator.run_setup(cfg, executor=fake_cli))

    res = runner.invoke(app, ["setup", "--workdir", str(tmp_path), "--run-id", "r2", "--skip-preflight"])

    assert res.exit_code == 1
    assert "FAILED" in res.stdout
    assert "create-aks-cluster" in res.stdout
    assert fake_cli.called_with("group", "delete", "--no-wait")


def test_postprovision_missing_inputs(tmp_path):
    res = runner.invoke(
        app,
        ["postprovision", "rg", "--workdir", str(tmp_path), "--skip-preflight"],
        env={"AZURE_AKS_CLUSTER_NAME": "", "AZURE_KEYVAULT_NAME": "", "AZURE_ENV_NAME": ""},
    )
    assert res.exit_code == 1
    assert "Missing required inputs" in res.stdout


def test_teardown_needs_resource_group(tmp_path):
    res = runner.invoke(app, ["teardown", "--workdir", str(tmp_path), "--yes"])
    assert res.exit_code != 0


def test_teardown_from_run(tmp_path, fake_cli, monkeypatch):
    run_dir = tmp_path / ".wiprov" / "runs" / "r1"
    run_dir.mkdir(parents=True)
    (run_dir / "RUN.json").write_text(
        json.dumps({"run_id": "r1", "plan": "setup", "parameters": {"resourceGroupName": "myRg1"}})
    )
    monkeypatch.setattr(
        "wiprov.cli.run_teardown", lambda cfg, rg, wait: orchestrator.run_teardown(cfg, rg, wait=wait, executor=fake_cli)
    )

    res = runner.invoke(app, ["teardown", "--from-run", "r1", "--workdir", str(tmp_path), "--yes", "--skip-preflight"])

    assert res.exit_code == 0, res.stdout
    assert fake_cli.argvs == [["az", "group", "delete", "--name", "myRg1", "--yes", "--no-wait"]]


def test_status(tmp_path):
    run_dir = tmp_path / ".wiprov" / "runs" / "r1"
    run_dir.mkdir(parents=True)
    (run_dir / "RUN_STATUS.json").write_text(json.dumps({"run_id": "r1", "plan": "setup", "state": "FAILED"}))

    res = runner.invoke(app, ["status", "--run", "r1", "--workdir", str(tmp_path)])
    assert res.exit_code == 0
    assert "FAILED" in res.stdout

    res = runner.invoke(app, ["status", "--run", "missing", "--workdir", str(tmp_path)])
    assert res.exit_code != 0


def test_setup_malformed_config_is_a_usage_error(tmp_path):
    bad = tmp_path / "provision.yaml"
    bad.write_text("location: [unclosed\n")

    res = runner.invoke(app, ["setup", "--workdir", str(tmp_path), "--config", str(bad), "--skip-preflight"])

    assert res.exit_code == 2
    assert isinstance(res.exception, SystemExit)
    assert not (tmp_path / ".wiprov" / "runs").exists()
