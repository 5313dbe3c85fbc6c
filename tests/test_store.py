import pytest

from wiprov.artifacts.schemas import RunStatus, validate_run_status
from wiprov.artifacts.store import ArtifactStore


def test_store_path_ok(tmp_path):
    store = ArtifactStore(tmp_path / "runs")
    p = store.path("logs", "file.txt")
    assert p == tmp_path / "runs" / "logs" / "file.txt"


def test_store_path_traversal(tmp_path):
    store = ArtifactStore(tmp_path / "runs")
    with pytest.raises(ValueError, match="Refusing to access path"):
        store.path("..", "secret.txt")
    with pytest.raises(ValueError, match="Refusing to access path"):
        store.path("logs", "../../secret.txt")


def test_store_ensure(tmp_path):
    store = ArtifactStore(tmp_path / "runs")
    assert not (tmp_path / "runs").exists()
    store.ensure()
    assert (tmp_path / "runs" / "logs").is_dir()
    assert (tmp_path / "runs" / "manifests").is_dir()


def test_step_log_paths(tmp_path):
    out, err = ArtifactStore(tmp_path).step_log_paths(3, "get-oidc-issuer")
    assert out.name == "03_get-oidc-issuer.stdout.log"
    assert err.name == "03_get-oidc-issuer.stderr.log"


def test_status_roundtrip(tmp_path):
    store = ArtifactStore(tmp_path / "runs")
    store.write_status(RunStatus(run_id="r1", plan="setup", state="RUNNING", step_index=2, step="get-tenant"))
    ok, status, err = validate_run_status(store.read_json("RUN_STATUS.json"))
    assert ok, err
    assert status.step == "get-tenant"


def test_validate_run_status_rejects_unknown_state():
    ok, status, err = validate_run_status({"run_id": "r1", "plan": "setup", "state": "PAUSED"})
    assert not ok
    assert status is None
    assert err
