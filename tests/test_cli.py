from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from cerberus_mcp.config import CerberusSettings
from cerberus_mcp.execution.checkpoints import FakeVersionControl
from cerberus_mcp.execution.runner import AgentInvocation, AgentOutcome, FakeAgentRunner
from cerberus_mcp.orchestrator import PipelineService


def run_diag(*args: str) -> subprocess.CompletedProcess[str]:
    repo_root = Path(__file__).resolve().parents[1]
    script = repo_root / "scripts" / "cerberus_diag.py"
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{repo_root / 'src'}" + os.pathsep + env.get("PYTHONPATH", "")
    return subprocess.run(
        [sys.executable, str(script), *args],
        cwd=str(repo_root),
        capture_output=True,
        text=True,
        env=env,
    )


def pre_recon(invocation: AgentInvocation) -> AgentOutcome:
    directory = invocation.deliverables_dir
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "pre_recon_deliverable.md").write_text("# Pre-recon\n", encoding="utf-8")
    return AgentOutcome(cost_usd=0.01)


@pytest.fixture
def seeded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("CERBERUS_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("CERBERUS_RETRY_BASE_DELAY", "0")
    monkeypatch.delenv("CERBERUS_PIPELINE_PATH", raising=False)
    service = PipelineService.from_settings(
        CerberusSettings(),
        invoker=FakeAgentRunner(default=pre_recon),
        version_control=FakeVersionControl(),
    )
    repo = tmp_path / "repo"
    repo.mkdir()
    session = asyncio.run(service.start_session("https://target", repo))
    asyncio.run(service.run_agent(session.id, "pre-recon"))
    return session.id


def test_sessions_lists_projection(seeded: str) -> None:
    process = run_diag("sessions", "--json")

    assert process.returncode == 0, process.stderr
    rows = json.loads(process.stdout)
    assert rows == [
        {
            "id": seeded,
            "web_url": "https://target",
            "status": "active",
            "current_phase": "reconnaissance",
            "store_in_sync": True,
        }
    ]


def test_audit_filters_events(seeded: str) -> None:
    process = run_diag("audit", seeded, "--agent", "pre-recon", "--kind", "agent_completed")

    assert process.returncode == 0, process.stderr
    events = json.loads(process.stdout)
    assert len(events) == 1
    assert events[0]["agent"] == "pre-recon"
    assert events[0]["payload"]["attempt"] == 1

    assert len(json.loads(run_diag("audit", seeded, "--limit", "1").stdout)) == 1


def test_audit_missing_session_exits(seeded: str) -> None:
    process = run_diag("audit", "0000000000000000")

    assert process.returncode == 1
    assert "No audit log" in process.stdout


def test_reconcile_rebuilds_lost_store(seeded: str, tmp_path: Path) -> None:
    store_file = tmp_path / "state" / "sessions" / f"{seeded}.json"
    store_file.unlink()

    process = run_diag("reconcile", "--all")

    assert process.returncode == 0, process.stderr
    results = json.loads(process.stdout)
    assert results == [{"id": seeded, "status": "active", "changed": True}]
    assert store_file.exists()

    assert json.loads(run_diag("reconcile", seeded).stdout)[0]["changed"] is False


def test_status_is_read_only(seeded: str, tmp_path: Path) -> None:
    store_file = tmp_path / "state" / "sessions" / f"{seeded}.json"
    store_file.unlink()

    process = run_diag("status", seeded)

    assert process.returncode == 0, process.stderr
    session = json.loads(process.stdout)
    assert session["id"] == seeded
    assert session["agents"]["pre-recon"]["status"] == "completed"
    assert not store_file.exists()


def test_missing_pipeline_file_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CERBERUS_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("CERBERUS_PIPELINE_PATH", str(tmp_path / "missing.yaml"))
    process = run_diag("sessions")

    assert process.returncode == 1
    assert "Pipeline unavailable" in process.stdout
