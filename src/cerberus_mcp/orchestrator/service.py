"""Command surface over the checkpoint manager; every command reconciles first."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..config import CerberusSettings
from ..context import RunContext
from ..deliverables import (
    DeliverableError,
    VulnerabilitySummary,
    find_vulnerability,
    list_vulnerabilities,
    save_deliverable,
)
from ..errors import (
    AgentBusyError,
    CheckpointNotFoundError,
    CorruptedStateError,
    OutputValidationError,
    SessionNotFoundError,
)
from ..execution.checkpoints import Checkpoint, GitVersionControl, VersionControl
from ..execution.retry import RetryPolicy
from ..execution.runner import AgentInvoker, CommandAgentRunner
from ..execution.validators import Validator, ValidatorRegistry
from ..fix_validation import (
    load_validation_result,
    result_filename,
    save_validation_result,
    validation_prompt,
)
from ..pipeline import AgentDefinition, AgentKind, PipelineDefinition, PipelineLoader
from ..state import (
    AgentExecutionRecord,
    AgentStatus,
    AuditLog,
    EventKind,
    Reconciler,
    Session,
    SessionMutex,
    SessionStore,
    new_session,
    session_id_for,
)
from .manager import CheckpointManager

logger = logging.getLogger(__name__)


class PipelineService:
    """Session lifecycle and pipeline commands for one state directory."""

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        audit: AuditLog,
        store: SessionStore,
        version_control: VersionControl,
        invoker: AgentInvoker,
        validators: ValidatorRegistry,
        retry_policy: RetryPolicy,
        stagger_delay: float = 2.0,
        agent_timeout: float = 3600.0,
    ) -> None:
        self._pipeline = pipeline
        self._audit = audit
        self._store = store
        self._vc = version_control
        self._reconciler = Reconciler(audit, store, pipeline)
        self._manager = CheckpointManager(
            pipeline,
            audit=audit,
            store=store,
            version_control=version_control,
            invoker=invoker,
            validators=validators,
            retry_policy=retry_policy,
            stagger_delay=stagger_delay,
            agent_timeout=agent_timeout,
        )

    @classmethod
    def from_settings(
        cls,
        settings: CerberusSettings,
        *,
        invoker: AgentInvoker | None = None,
        version_control: VersionControl | None = None,
        validators: Mapping[AgentKind, Validator] | None = None,
    ) -> "PipelineService":
        pipeline = PipelineLoader(settings.pipeline_path).load()
        state_dir = Path(settings.state_dir)
        mutex = SessionMutex(timeout=settings.lock_timeout)
        return cls(
            pipeline,
            audit=AuditLog(state_dir / "audit"),
            store=SessionStore(state_dir / "sessions", mutex),
            version_control=version_control
            or GitVersionControl(state_dir, isolate_parallel=settings.isolate_parallel),
            invoker=invoker or CommandAgentRunner(command=settings.agent_command),
            validators=ValidatorRegistry.for_pipeline(pipeline, validators),
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                jitter=settings.retry_jitter,
            ),
            stagger_delay=settings.stagger_delay,
            agent_timeout=settings.agent_timeout,
        )

    @property
    def pipeline(self) -> PipelineDefinition:
        return self._pipeline

    @property
    def manager(self) -> CheckpointManager:
        return self._manager

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def audit(self) -> AuditLog:
        return self._audit

    # ------------------------------------------------------------ sessions

    async def start_session(
        self,
        web_url: str,
        repo_path: str | Path,
        *,
        config_path: str | None = None,
        run_id: str | None = None,
    ) -> Session:
        """Create the session for (web_url, repo_path), or return the existing one."""

        url = web_url.strip()
        if not url:
            raise ValueError("web_url must not be empty")
        repo = Path(repo_path).expanduser().resolve()
        if not repo.is_dir():
            raise ValueError(f"Repository path {repo} is not a directory")

        session_id = session_id_for(url, str(repo))
        if self._audit.exists(session_id):
            session = await self.status(session_id)
            logger.info("Resuming existing session", extra={"session_id": session_id})
            return session
        if self._store.exists(session_id):
            raise CorruptedStateError(
                f"Session {session_id} has a store file but no audit log; delete it to start over"
            )

        async with self._store.mutex.hold(session_id):
            event = self._audit.new_event(
                EventKind.SESSION_CREATED,
                session_id,
                payload={
                    "web_url": url,
                    "repo_path": str(repo),
                    "config_path": config_path,
                    "run_id": run_id,
                    "pipeline": self._pipeline.name,
                },
            )
            self._audit.append(event)
            session = new_session(event, self._pipeline)
            self._store.save(session)
        logger.info(
            "Created session",
            extra={"session_id": session_id, "web_url": url, "repo": str(repo)},
        )
        return session

    async def status(self, session_id: str) -> Session:
        session, _ = await self._reconciler.reconcile(session_id)
        return session

    async def list_sessions(self) -> list[Session]:
        ids = sorted(set(self._audit.list_sessions()) | set(self._store.list_sessions()))
        sessions: list[Session] = []
        for session_id in ids:
            try:
                sessions.append(await self.status(session_id))
            except CorruptedStateError as exc:
                logger.warning(
                    "Skipping corrupted session", extra={"session_id": session_id, "error": str(exc)}
                )
        return sessions

    def list_agents(self, session: Session | None = None) -> list[dict[str, Any]]:
        agents: list[dict[str, Any]] = []
        for agent in self._pipeline.iter_agents():
            entry: dict[str, Any] = {
                "name": agent.name,
                "phase": agent.phase,
                "kind": agent.kind.value,
                "parallel": agent.parallel,
            }
            if session is not None:
                record = session.record(agent.name)
                entry.update(
                    status=record.status.value,
                    attempts=record.attempts,
                    last_error_kind=record.last_error_kind,
                )
            agents.append(entry)
        return agents

    async def delete_sessions(self, session_ids: Iterable[str]) -> list[str]:
        """Remove store and audit files; refuses sessions with an agent in flight."""

        deleted: list[str] = []
        for session_id in session_ids:
            if not (self._audit.exists(session_id) or self._store.exists(session_id)):
                raise SessionNotFoundError(f"Session '{session_id}' not found")
            busy = [
                agent.name
                for agent in self._pipeline.iter_agents()
                if self._manager.is_active(session_id, agent.name)
            ]
            if busy:
                raise AgentBusyError(
                    f"Session {session_id} has running agents: {', '.join(busy)}"
                )
            async with self._store.mutex.hold(session_id):
                self._store.delete(session_id)
                self._audit.delete(session_id)
            logger.info("Deleted session", extra={"session_id": session_id})
            deleted.append(session_id)
        return deleted

    # ------------------------------------------------------------ execution

    async def run_all(self, session_id: str) -> Session:
        session = await self.status(session_id)
        return await self._manager.run_all(self.context_for(session))

    async def run_phase(self, session_id: str, phase_name: str) -> Session:
        self._require_phase(phase_name)
        session = await self.status(session_id)
        return await self._manager.run_phase(self.context_for(session), phase_name)

    async def run_agent(self, session_id: str, agent_name: str) -> AgentExecutionRecord:
        self._require_agent(agent_name)
        session = await self.status(session_id)
        return await self._manager.run_agent(self.context_for(session), agent_name)

    async def rerun_agent(self, session_id: str, agent_name: str) -> AgentExecutionRecord:
        self._require_agent(agent_name)
        session = await self.status(session_id)
        return await self._manager.rerun_agent(self.context_for(session), agent_name)

    async def rollback_to_checkpoint(self, session_id: str, checkpoint_id: str) -> Session:
        """Reset the repository to a recorded checkpoint and forget later agent work.

        The owning agent and every agent that started or completed at or after
        the checkpoint are reset to pending.
        """

        session = await self.status(session_id)
        events = list(self._audit.read_all(session_id))
        position, owner, resolved_id = self._find_checkpoint(events, checkpoint_id)
        if position is None:
            raise CheckpointNotFoundError(
                f"Checkpoint '{checkpoint_id}' not recorded in session {session_id}"
            )

        reset = {owner}
        for event in events[position:]:
            if event.agent and event.kind in (EventKind.AGENT_STARTED, EventKind.AGENT_COMPLETED):
                reset.add(event.agent)
        busy = sorted(name for name in reset if self._manager.is_active(session_id, name))
        if busy:
            raise AgentBusyError(f"Cannot roll back while agents are running: {', '.join(busy)}")

        context = self.context_for(session)
        for name in sorted(reset):
            record = session.record(name)
            if record.has_open_checkpoint and record.checkpoint_isolated:
                await self._vc.rollback(
                    Checkpoint(
                        id=record.checkpoint_id,
                        repo_path=context.repo_path,
                        workdir=Path(record.checkpoint_workdir or context.repo_path),
                        isolated=True,
                        label=name,
                    )
                )
        await self._vc.restore(context.repo_path, resolved_id)
        updated = await self._manager.record(
            session_id,
            EventKind.SESSION_ROLLED_BACK,
            payload={"checkpoint_id": resolved_id, "owner": owner, "reset_agents": sorted(reset)},
        )
        logger.info(
            "Rolled back session to checkpoint",
            extra={"session_id": session_id, "checkpoint_id": resolved_id, "reset_agents": sorted(reset)},
        )
        return updated

    # ------------------------------------------------------------ deliverables

    async def save_deliverable(self, session_id: str, filename: str, content: str) -> Path:
        """Operator write into the repository's deliverables directory.

        The file lands in the main tree outside any checkpoint, so it is refused
        while an agent of the session is in flight. Agents write their own
        deliverables inside their attempt's working directory.
        """

        session = await self.status(session_id)
        self._require_idle(session_id, "save a deliverable")
        return save_deliverable(self.context_for(session), filename, content)

    async def validate_vulnerability(self, session_id: str, vuln_id: str) -> dict[str, Any]:
        """Re-test one queued vulnerability and save ``validation_result_<ID>.json``."""

        session = await self.status(session_id)
        self._require_idle(session_id, "validate a vulnerability")
        context = self.context_for(session)
        deliverables_dir = context.deliverables_dir()
        vuln = find_vulnerability(vuln_id, deliverables_dir)
        agent = AgentDefinition(
            name=f"validate-{vuln['ID'].lower()}",
            kind=AgentKind.GENERIC,
            phase="validation",
            prompt=validation_prompt(
                vuln,
                context.web_url,
                deliverables_path=deliverables_dir.relative_to(context.repo_path).as_posix(),
            ),
        )
        logger.info(
            "Validating vulnerability fix",
            extra={"session_id": session_id, "vuln_id": vuln["ID"]},
        )
        # a result left by an earlier validation must not pass for this one
        (deliverables_dir / result_filename(vuln["ID"])).unlink(missing_ok=True)
        await self._manager.invoke_standalone(context, agent)
        try:
            result = load_validation_result(deliverables_dir, vuln["ID"])
        except DeliverableError as exc:
            raise OutputValidationError(agent.name, str(exc)) from exc
        path = save_validation_result(context, result)
        return {**result, "path": str(path)}

    async def list_vulnerabilities(self, session_id: str) -> list[VulnerabilitySummary]:
        session = await self.status(session_id)
        return list_vulnerabilities(self.context_for(session).deliverables_dir())

    # ------------------------------------------------------------ helpers

    @staticmethod
    def context_for(session: Session) -> RunContext:
        return RunContext(
            session_id=session.id,
            web_url=session.web_url,
            repo_path=Path(session.repo_path),
            run_id=session.run_id,
        )

    def summarize(self, session: Session) -> dict[str, Any]:
        counts: dict[str, int] = {status.value: 0 for status in AgentStatus}
        for record in session.agents.values():
            counts[record.status.value] += 1
        return {
            "id": session.id,
            "web_url": session.web_url,
            "repo_path": session.repo_path,
            "status": session.status.value,
            "current_phase": session.current_phase,
            "agent_counts": counts,
            "cost_usd": round(sum(record.cost_usd for record in session.agents.values()), 6),
            "updated_at": session.updated_at,
        }

    def _require_idle(self, session_id: str, action: str) -> None:
        if self._manager.has_active_agents(session_id):
            raise AgentBusyError(f"Cannot {action} while agents of session {session_id} are running")

    def _require_agent(self, name: str) -> None:
        if not self._pipeline.has_agent(name):
            raise ValueError(f"Unknown agent '{name}'")

    def _require_phase(self, name: str) -> None:
        if not any(phase.name == name for phase in self._pipeline.phases):
            raise ValueError(f"Unknown phase '{name}'")

    @staticmethod
    def _find_checkpoint(events, checkpoint_id: str) -> tuple[int | None, str | None, str]:
        wanted = checkpoint_id.strip()
        matches = [
            (index, event)
            for index, event in enumerate(events)
            if event.kind is EventKind.CHECKPOINT_CREATED
            and wanted
            and str(event.payload.get("checkpoint_id", "")).startswith(wanted)
        ]
        exact = [match for match in matches if match[1].payload.get("checkpoint_id") == wanted]
        if exact:
            matches = exact
        if not matches:
            return None, None, wanted
        distinct = {event.payload["checkpoint_id"] for _, event in matches}
        if len(distinct) > 1:
            raise CheckpointNotFoundError(f"Checkpoint prefix '{wanted}' is ambiguous")
        index, event = matches[-1]
        return index, event.agent, str(event.payload["checkpoint_id"])


__all__ = ["PipelineService"]
