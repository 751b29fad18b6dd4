from __future__ import annotations

import asyncio
import json
import textwrap
from pathlib import Path

import pytest

from cerberus_mcp.config import CerberusSettings
from cerberus_mcp.deliverables import DeliverableError
from cerberus_mcp.errors import (
    AgentBusyError,
    CheckpointNotFoundError,
    OutputValidationError,
    SessionNotFoundError,
)
from cerberus_mcp.execution.checkpoints import FakeVersionControl
from cerberus_mcp.execution.runner import AgentInvocation, AgentOutcome, FakeAgentRunner
from cerberus_mcp.orchestrator import PipelineService
from cerberus_mcp.state import AgentStatus, EventKind, SessionStatus, session_id_for

PIPELINE_YAML = """
name: service-test
phases:
  - name: recon
    agents:
      - {name: recon, kind: generic}
  - name: analysis
    prerequisites: [recon]
    agents:
      - {name: x1, kind: generic, parallel: true}
      - {name: x2, kind: generic, parallel: true}
"""


def write_file(invocation: AgentInvocation) -> AgentOutcome:
    target = invocation.workdir / f"{invocation.agent.name}.md"
    target.write_text(f"{invocation.agent.name} output\n", encoding="utf-8")
    return AgentOutcome(artifacts=(target.name,), cost_usd=0.2)


def build_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, runner=None):
    pipeline_path = tmp_path / "pipeline.yaml"
    pipeline_path.write_text(textwrap.dedent(PIPELINE_YAML), encoding="utf-8")
    monkeypatch.setenv("CERBERUS_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("CERBERUS_PIPELINE_PATH", str(pipeline_path))
    monkeypatch.setenv("CERBERUS_RETRY_BASE_DELAY", "0")
    monkeypatch.setenv("CERBERUS_STAGGER_DELAY", "0")
    settings = CerberusSettings()
    vc = FakeVersionControl()
    service = PipelineService.from_settings(
        settings,
        invoker=runner or FakeAgentRunner(default=write_file),
        version_control=vc,
    )
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "app.py").write_text("print('target')\n", encoding="utf-8")
    return service, vc, repo


def test_start_session_is_idempotent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, _, repo = build_service(tmp_path, monkeypatch)

    first = asyncio.run(service.start_session("https://target.example", repo))
    second = asyncio.run(service.start_session(" https://target.example ", str(repo)))

    assert first.id == second.id == session_id_for("https://target.example", str(repo.resolve()))
    assert first.status is SessionStatus.ACTIVE
    assert first.current_phase == "recon"
    assert sorted(first.agents) == ["recon", "x1", "x2"]
    audit_path = tmp_path / "state" / "audit" / f"{first.id}.jsonl"
    assert len(audit_path.read_text(encoding="utf-8").splitlines()) == 1


def test_start_session_validates_inputs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, _, repo = build_service(tmp_path, monkeypatch)

    with pytest.raises(ValueError):
        asyncio.run(service.start_session("", repo))
    with pytest.raises(ValueError):
        asyncio.run(service.start_session("https://t", tmp_path / "missing"))


def test_unknown_names_are_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, _, repo = build_service(tmp_path, monkeypatch)
    session = asyncio.run(service.start_session("https://t", repo))

    with pytest.raises(ValueError, match="Unknown agent"):
        asyncio.run(service.run_agent(session.id, "ghost"))
    with pytest.raises(ValueError, match="Unknown phase"):
        asyncio.run(service.run_phase(session.id, "ghost-phase"))
    with pytest.raises(SessionNotFoundError):
        asyncio.run(service.status("0000000000000000"))


def test_run_all_then_status_after_store_loss(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, _, repo = build_service(tmp_path, monkeypatch)
    session = asyncio.run(service.start_session("https://t", repo))

    finished = asyncio.run(service.run_all(session.id))
    assert finished.status is SessionStatus.COMPLETED
    assert (repo / "x1.md").exists() and (repo / "x2.md").exists()

    (tmp_path / "state" / "sessions" / f"{session.id}.json").unlink()
    rebuilt = asyncio.run(service.status(session.id))

    assert rebuilt == finished
    summary = service.summarize(rebuilt)
    assert summary["agent_counts"]["completed"] == 3
    assert summary["cost_usd"] == pytest.approx(0.6)


def test_rollback_to_checkpoint_resets_later_agents(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    service, vc, repo = build_service(tmp_path, monkeypatch)
    session = asyncio.run(service.start_session("https://t", repo))
    asyncio.run(service.run_all(session.id))
    events = list(service.audit.read_all(session.id))
    x1_checkpoint = next(
        event.payload["checkpoint_id"]
        for event in events
        if event.kind is EventKind.CHECKPOINT_CREATED and event.agent == "x1"
    )

    rolled = asyncio.run(service.rollback_to_checkpoint(session.id, x1_checkpoint[:12]))

    assert vc.restored == [x1_checkpoint]
    assert rolled.record("recon").status is AgentStatus.COMPLETED
    assert rolled.record("x1").status is AgentStatus.PENDING
    assert rolled.record("x1").attempts == 0
    assert rolled.current_phase == "analysis"
    assert (repo / "recon.md").exists()
    assert not (repo / "x1.md").exists()
    last = list(service.audit.read_all(session.id))[-1]
    assert last.kind is EventKind.SESSION_ROLLED_BACK
    assert "x1" in last.payload["reset_agents"]

    with pytest.raises(CheckpointNotFoundError):
        asyncio.run(service.rollback_to_checkpoint(session.id, "feedface"))


def test_rerun_agent_through_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = FakeAgentRunner(default=write_file)
    service, _, repo = build_service(tmp_path, monkeypatch, runner)
    session = asyncio.run(service.start_session("https://t", repo))
    asyncio.run(service.run_agent(session.id, "recon"))

    record = asyncio.run(service.rerun_agent(session.id, "recon"))

    assert record.status is AgentStatus.COMPLETED
    assert len(runner.calls_for("recon")) == 2
    agents = {entry["name"]: entry for entry in service.list_agents(asyncio.run(service.status(session.id)))}
    assert agents["recon"]["attempts"] == 1
    assert agents["x1"]["status"] == "pending"


def test_list_and_delete_sessions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, _, repo = build_service(tmp_path, monkeypatch)
    other = tmp_path / "other"
    other.mkdir()
    first = asyncio.run(service.start_session("https://a", repo))
    second = asyncio.run(service.start_session("https://b", other))

    listed = asyncio.run(service.list_sessions())
    assert sorted(session.id for session in listed) == sorted([first.id, second.id])

    deleted = asyncio.run(service.delete_sessions([first.id]))

    assert deleted == [first.id]
    assert [session.id for session in asyncio.run(service.list_sessions())] == [second.id]
    with pytest.raises(SessionNotFoundError):
        asyncio.run(service.status(first.id))
    with pytest.raises(SessionNotFoundError):
        asyncio.run(service.delete_sessions([first.id]))


def test_deliverables_through_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, _, repo = build_service(tmp_path, monkeypatch)
    session = asyncio.run(service.start_session("https://t", repo, run_id="run-1"))

    path = asyncio.run(
        service.save_deliverable(
            session.id,
            "injection_exploitation_queue.json",
            json.dumps({"vulnerabilities": [{"ID": "INJECTION-VULN-01", "verdict": "vulnerable"}]}),
        )
    )

    assert path == repo.resolve() / "deliverables" / "runs" / "run-1" / "injection_exploitation_queue.json"
    summaries = asyncio.run(service.list_vulnerabilities(session.id))
    assert [(summary.id, summary.verdict) for summary in summaries] == [("INJECTION-VULN-01", "vulnerable")]


def test_save_deliverable_refused_while_agent_runs(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    gates: dict[str, asyncio.Event] = {}

    async def held(invocation: AgentInvocation) -> AgentOutcome:
        await gates["release"].wait()
        return write_file(invocation)

    service, _, repo = build_service(tmp_path, monkeypatch, held)
    session = asyncio.run(service.start_session("https://t", repo))

    async def scenario() -> None:
        gates["release"] = asyncio.Event()
        running = asyncio.create_task(service.run_agent(session.id, "recon"))
        while not service.manager.is_active(session.id, "recon"):
            await asyncio.sleep(0)
        with pytest.raises(AgentBusyError):
            await service.save_deliverable(session.id, "notes.md", "operator notes")
        with pytest.raises(AgentBusyError):
            await service.validate_vulnerability(session.id, "XSS-VULN-01")
        gates["release"].set()
        await running

    asyncio.run(scenario())

    assert not (repo / "deliverables" / "notes.md").exists()
    path = asyncio.run(service.save_deliverable(session.id, "notes.md", "operator notes"))
    assert path.read_text(encoding="utf-8") == "operator notes"


def queue_xss_finding(service: PipelineService, session_id: str) -> None:
    asyncio.run(
        service.save_deliverable(
            session_id,
            "xss_exploitation_queue.json",
            json.dumps({"vulnerabilities": [{"ID": "XSS-VULN-01", "source": "search param"}]}),
        )
    )


def test_validate_vulnerability_saves_result(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def verdict(invocation: AgentInvocation) -> AgentOutcome:
        assert invocation.workdir == invocation.context.repo_path
        assert "search param" in invocation.agent.prompt
        assert "deliverables/validation_result_XSS-VULN-01.json" in invocation.agent.prompt
        (invocation.deliverables_dir / "validation_result_XSS-VULN-01.json").write_text(
            json.dumps({"vuln_id": "wrong", "status": "FIXED", "evidence": "payload escaped"}),
            encoding="utf-8",
        )
        return AgentOutcome()

    runner = FakeAgentRunner({"validate-xss-vuln-01": [verdict]}, default=write_file)
    service, _, repo = build_service(tmp_path, monkeypatch, runner)
    session = asyncio.run(service.start_session("https://t", repo))
    queue_xss_finding(service, session.id)

    result = asyncio.run(service.validate_vulnerability(session.id, "xss-vuln-01"))

    assert result["vuln_id"] == "XSS-VULN-01"
    assert result["status"] == "FIXED"
    saved = json.loads((repo / "deliverables" / "validation_result_XSS-VULN-01.json").read_text(encoding="utf-8"))
    assert saved["vuln_id"] == "XSS-VULN-01"
    assert saved["evidence"] == "payload escaped"
    # no session state is recorded for a validation run
    assert [event.kind for event in service.audit.read_all(session.id)] == [EventKind.SESSION_CREATED]


def test_validate_vulnerability_rejects_missing_or_bad_results(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def bad_status(invocation: AgentInvocation) -> AgentOutcome:
        (invocation.deliverables_dir / "validation_result_XSS-VULN-01.json").write_text(
            json.dumps({"status": "PROBABLY_FINE"}), encoding="utf-8"
        )
        return AgentOutcome()

    runner = FakeAgentRunner({"validate-xss-vuln-01": [AgentOutcome(), bad_status]}, default=write_file)
    service, _, repo = build_service(tmp_path, monkeypatch, runner)
    session = asyncio.run(service.start_session("https://t", repo))
    queue_xss_finding(service, session.id)
    (repo / "deliverables" / "validation_result_XSS-VULN-01.json").write_text(
        json.dumps({"status": "FIXED"}), encoding="utf-8"
    )

    with pytest.raises(OutputValidationError, match="not written"):
        asyncio.run(service.validate_vulnerability(session.id, "XSS-VULN-01"))
    with pytest.raises(OutputValidationError, match="PROBABLY_FINE"):
        asyncio.run(service.validate_vulnerability(session.id, "XSS-VULN-01"))
    with pytest.raises(DeliverableError, match="not found in queue"):
        asyncio.run(service.validate_vulnerability(session.id, "XSS-VULN-07"))
    with pytest.raises(DeliverableError, match="Invalid vulnerability ID"):
        asyncio.run(service.validate_vulnerability(session.id, "SQL-1"))
