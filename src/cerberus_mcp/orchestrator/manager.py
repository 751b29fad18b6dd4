"""Checkpoint manager: drives agents through checkpointed, retried attempts."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from ..context import RunContext
from ..errors import (
    AgentBusyError,
    AgentFailedError,
    AuditWriteError,
    ErrorKind,
    OutputValidationError,
    PhaseBlockedError,
    PrerequisiteError,
    VersionControlError,
)
from ..execution.checkpoints import Checkpoint, VersionControl
from ..execution.retry import FailureClassification, RetryPolicy, classify
from ..execution.runner import AgentInvocation, AgentInvoker, AgentOutcome
from ..execution.validators import OutputArtifacts, ValidationResult, ValidatorRegistry
from ..pipeline import AgentDefinition, PipelineDefinition
from ..state import (
    AgentExecutionRecord,
    AgentStatus,
    AuditLog,
    EventKind,
    Session,
    SessionStore,
    apply_event,
)

logger = logging.getLogger(__name__)

_MAX_REASON = 2000


class CheckpointManager:
    """Execute agents, batches and phases against one pipeline definition.

    Every state transition is an audit append followed by the same fold step the
    reconciler uses, performed inside ``SessionStore.mutate``. The session mutex
    is never held across an agent call or a checkpoint operation.

    Attempts that work in the repository itself (sequential agents, and parallel
    members when the version control does not isolate them) hold a per-session
    tree lock from checkpoint to commit or rollback, so one attempt never
    captures or resets another one's half-written files.
    """

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
        self._invoker = invoker
        self._validators = validators
        self._retry = retry_policy
        self._stagger_delay = stagger_delay
        self._agent_timeout = agent_timeout
        self._active: set[tuple[str, str]] = set()
        self._tree_locks: dict[str, asyncio.Lock] = {}

    @property
    def pipeline(self) -> PipelineDefinition:
        return self._pipeline

    def is_active(self, session_id: str, agent: str) -> bool:
        return (session_id, agent) in self._active

    def has_active_agents(self, session_id: str) -> bool:
        return any(active_session == session_id for active_session, _ in self._active)

    @asynccontextmanager
    async def _working_tree(self, context: RunContext, agent: AgentDefinition) -> AsyncIterator[None]:
        if agent.parallel and self._vc.isolates_parallel:
            yield
            return
        lock = self._tree_locks.setdefault(context.session_id, asyncio.Lock())
        async with lock:
            yield

    async def record(
        self,
        session_id: str,
        kind: EventKind,
        *,
        agent: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Session:
        """Append one audit event and apply it to the store atomically."""

        event = self._audit.new_event(kind, session_id, agent=agent, payload=payload)

        def _apply(session: Session) -> Session:
            self._audit.append(event)
            return apply_event(session, event, self._pipeline)

        return await self._store.mutate(session_id, _apply)

    def check_prerequisites(self, session: Session, phase_name: str) -> None:
        missing = [
            name
            for name in self._pipeline.required_agents(phase_name)
            if session.record(name).status is not AgentStatus.COMPLETED
        ]
        if missing:
            raise PrerequisiteError(
                f"Phase '{phase_name}' requires completed agents: {', '.join(missing)}"
            )

    # ------------------------------------------------------------------ agents

    async def run_agent(self, context: RunContext, name: str) -> AgentExecutionRecord:
        """Run one agent to a terminal state, retrying transient failures."""

        agent = self._pipeline.agent(name)
        session = self._store.load(context.session_id)
        self.check_prerequisites(session, agent.phase)
        record = session.record(name)
        if record.status is AgentStatus.COMPLETED:
            logger.info(
                "Agent already completed",
                extra={"session_id": context.session_id, "agent": name},
            )
            return record
        if record.status is AgentStatus.FAILED:
            raise _failed_error(record, "terminal failure; re-run the agent to retry")

        key = (context.session_id, name)
        if key in self._active:
            raise AgentBusyError(f"Agent '{name}' is already running in session {context.session_id}")
        self._active.add(key)
        try:
            async with self._working_tree(context, agent):
                record = await self.recover_open_checkpoint(context, name)
            if record.status is AgentStatus.FAILED:
                raise _failed_error(record, record.last_error)
            return await self._attempt_loop(context, agent)
        finally:
            self._active.discard(key)

    async def _attempt_loop(self, context: RunContext, agent: AgentDefinition) -> AgentExecutionRecord:
        while True:
            async with self._working_tree(context, agent):
                record = await self._attempt(context, agent)
            if record.status is AgentStatus.COMPLETED:
                return record
            if record.status is AgentStatus.FAILED:
                logger.error(
                    "Agent failed terminally",
                    extra={
                        "session_id": context.session_id,
                        "agent": agent.name,
                        "error_kind": record.last_error_kind,
                        "attempts": record.attempts,
                    },
                )
                raise _failed_error(record, record.last_error)
            delay = self._retry.next_delay(record.attempts)
            logger.warning(
                "Retrying agent after failure",
                extra={
                    "session_id": context.session_id,
                    "agent": agent.name,
                    "attempt": record.attempts,
                    "error_kind": record.last_error_kind,
                    "delay": round(delay, 3),
                },
            )
            await asyncio.sleep(delay)

    async def recover_open_checkpoint(self, context: RunContext, name: str) -> AgentExecutionRecord:
        """Roll back an attempt a crash left in flight and record it as interrupted."""

        session = self._store.load(context.session_id)
        record = session.record(name)
        if record.status not in (AgentStatus.RUNNING, AgentStatus.ROLLED_BACK):
            return record

        logger.warning(
            "Recovering interrupted agent attempt",
            extra={
                "session_id": context.session_id,
                "agent": name,
                "checkpoint_id": record.checkpoint_id,
                "status": record.status.value,
            },
        )
        if record.status is AgentStatus.RUNNING and record.checkpoint_id:
            checkpoint = Checkpoint(
                id=record.checkpoint_id,
                repo_path=context.repo_path,
                workdir=Path(record.checkpoint_workdir or context.repo_path),
                isolated=record.checkpoint_isolated,
                label=name,
            )
            await self._vc.rollback(checkpoint)
            await self.record(
                context.session_id,
                EventKind.CHECKPOINT_ROLLED_BACK,
                agent=name,
                payload={"checkpoint_id": checkpoint.id, "recovered": True},
            )

        classification = FailureClassification(
            kind=ErrorKind.INTERRUPTED,
            reason_code="interrupted_attempt",
            matched_rule="crash_recovery",
        )
        terminal = not self._retry.should_retry(record.attempts, classification.kind)
        session = await self.record(
            context.session_id,
            EventKind.AGENT_FAILED,
            agent=name,
            payload={
                **classification.to_event_details(),
                "attempt": record.attempts,
                "terminal": terminal,
                "reason": "attempt interrupted before completion",
                "checkpoint_id": record.checkpoint_id,
            },
        )
        return session.record(name)

    async def _attempt(self, context: RunContext, agent: AgentDefinition) -> AgentExecutionRecord:
        session_id = context.session_id
        session = await self.record(
            session_id, EventKind.AGENT_STARTED, agent=agent.name, payload={"phase": agent.phase}
        )
        attempt = session.record(agent.name).attempts
        started = time.monotonic()

        try:
            checkpoint = await self._vc.create_checkpoint(
                context.repo_path, label=f"{agent.name}-attempt-{attempt}", isolated=agent.parallel
            )
        except VersionControlError as exc:
            return await self._fail(
                context, agent, attempt, None, classify(exc), str(exc), started, force_terminal=True
            )

        try:
            await self.record(
                session_id,
                EventKind.CHECKPOINT_CREATED,
                agent=agent.name,
                payload={
                    "checkpoint_id": checkpoint.id,
                    "workdir": str(checkpoint.workdir),
                    "isolated": checkpoint.isolated,
                    "label": checkpoint.label,
                },
            )
            return await self._invoke_and_settle(context, agent, attempt, checkpoint, started)
        except AuditWriteError:
            logger.error(
                "Audit append failed; aborting attempt",
                extra={"session_id": session_id, "agent": agent.name, "checkpoint_id": checkpoint.id},
            )
            await self._rollback_quietly(checkpoint, session_id, agent.name)
            raise

    async def _invoke_and_settle(
        self,
        context: RunContext,
        agent: AgentDefinition,
        attempt: int,
        checkpoint: Checkpoint,
        started: float,
    ) -> AgentExecutionRecord:
        invocation = AgentInvocation(
            agent=agent, context=context, workdir=checkpoint.workdir, attempt=attempt
        )
        logger.info(
            "Invoking agent",
            extra={
                "session_id": context.session_id,
                "agent": agent.name,
                "attempt": attempt,
                "workdir": str(checkpoint.workdir),
            },
        )
        try:
            outcome: AgentOutcome = await asyncio.wait_for(
                self._invoker(invocation), timeout=self._agent_timeout
            )
        except Exception as exc:  # external failures are classified, not propagated
            reason = str(exc) or type(exc).__name__
            return await self._fail(context, agent, attempt, checkpoint, classify(exc), reason, started)

        artifacts = OutputArtifacts(
            agent=agent.name,
            workdir=checkpoint.workdir,
            deliverables_dir=invocation.deliverables_dir,
            files=tuple(outcome.artifacts),
        )
        result = self._validate(agent, artifacts)
        if not result.valid:
            reason = result.reason or "output rejected"
            await self.record(
                context.session_id,
                EventKind.VALIDATION_FAILED,
                agent=agent.name,
                payload={"attempt": attempt, "reason": reason, "checkpoint_id": checkpoint.id},
            )
            classification = classify(OutputValidationError(agent.name, reason))
            return await self._fail(
                context, agent, attempt, checkpoint, classification, reason, started,
                cost_usd=outcome.cost_usd,
            )

        try:
            commit_id = await self._vc.commit(
                checkpoint, message=f"{agent.name}: completed attempt {attempt}"
            )
        except VersionControlError as exc:
            return await self._fail(
                context, agent, attempt, checkpoint, classify(exc), str(exc), started,
                cost_usd=outcome.cost_usd, force_terminal=True,
            )

        session = await self.record(
            context.session_id,
            EventKind.AGENT_COMPLETED,
            agent=agent.name,
            payload={
                "attempt": attempt,
                "checkpoint_id": checkpoint.id,
                "commit_id": commit_id,
                "cost_usd": outcome.cost_usd,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        logger.info(
            "Agent completed",
            extra={"session_id": context.session_id, "agent": agent.name, "attempt": attempt},
        )
        return session.record(agent.name)

    def _validate(self, agent: AgentDefinition, artifacts: OutputArtifacts) -> ValidationResult:
        try:
            return self._validators.validate(agent, artifacts)
        except OSError as exc:
            return ValidationResult.fail(f"validator could not read deliverables: {exc}")

    async def _fail(
        self,
        context: RunContext,
        agent: AgentDefinition,
        attempt: int,
        checkpoint: Checkpoint | None,
        classification: FailureClassification,
        reason: str,
        started: float,
        *,
        cost_usd: float = 0.0,
        force_terminal: bool = False,
    ) -> AgentExecutionRecord:
        if checkpoint is not None:
            try:
                await self._vc.rollback(checkpoint)
            except VersionControlError as exc:
                logger.error(
                    "Checkpoint rollback failed; leaving agent failed for operator review",
                    extra={
                        "session_id": context.session_id,
                        "agent": agent.name,
                        "checkpoint_id": checkpoint.id,
                        "error": str(exc),
                    },
                )
                force_terminal = True
                reason = f"{reason} (rollback failed: {exc})"
            else:
                await self.record(
                    context.session_id,
                    EventKind.CHECKPOINT_ROLLED_BACK,
                    agent=agent.name,
                    payload={"attempt": attempt, "checkpoint_id": checkpoint.id},
                )

        terminal = force_terminal or not self._retry.should_retry(attempt, classification.kind)
        session = await self.record(
            context.session_id,
            EventKind.AGENT_FAILED,
            agent=agent.name,
            payload={
                **classification.to_event_details(),
                "attempt": attempt,
                "terminal": terminal,
                "reason": reason[:_MAX_REASON],
                "checkpoint_id": checkpoint.id if checkpoint else None,
                "cost_usd": cost_usd,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return session.record(agent.name)

    async def _rollback_quietly(self, checkpoint: Checkpoint, session_id: str, agent: str) -> None:
        try:
            await self._vc.rollback(checkpoint)
        except VersionControlError:
            logger.exception(
                "Rollback after aborted attempt failed",
                extra={"session_id": session_id, "agent": agent, "checkpoint_id": checkpoint.id},
            )

    async def invoke_standalone(self, context: RunContext, agent: AgentDefinition) -> AgentOutcome:
        """Run an ad-hoc agent in the repository with no checkpoint and no session record.

        Used for read-only follow-ups such as fix validation. The session tree lock is
        held for the duration so the call never overlaps a checkpointed attempt.
        """

        invocation = AgentInvocation(agent=agent, context=context, workdir=context.repo_path, attempt=1)
        logger.info(
            "Invoking standalone agent",
            extra={"session_id": context.session_id, "agent": agent.name},
        )
        async with self._working_tree(context, agent):
            return await asyncio.wait_for(self._invoker(invocation), timeout=self._agent_timeout)

    # ------------------------------------------------------------ phases

    async def run_batch(
        self, context: RunContext, agents: list[AgentDefinition]
    ) -> list[AgentFailedError]:
        """Run batch members concurrently and return the failures once all settle."""

        session = self._store.load(context.session_id)
        failures: list[AgentFailedError] = []
        launch: list[AgentDefinition] = []
        for agent in agents:
            record = session.record(agent.name)
            if record.status is AgentStatus.COMPLETED:
                continue
            if record.status is AgentStatus.FAILED:
                failures.append(_failed_error(record, "terminal failure; re-run the agent to retry"))
                continue
            launch.append(agent)

        # A declared stagger slot wins; otherwise the member's position in the batch.
        slots = {
            agent.name: agent.stagger_slot if agent.stagger_slot is not None else position
            for position, agent in enumerate(agents)
        }
        launch.sort(key=lambda agent: slots[agent.name])

        async def _member(agent: AgentDefinition) -> AgentExecutionRecord:
            delay = slots[agent.name] * self._stagger_delay
            if delay:
                await asyncio.sleep(delay)
            return await self.run_agent(context, agent.name)

        tasks = {
            agent.name: asyncio.create_task(
                _member(agent), name=f"{context.session_id}:{agent.name}"
            )
            for agent in launch
        }
        if not tasks:
            return failures
        try:
            await asyncio.wait(tasks.values())
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        unexpected: BaseException | None = None
        for name, task in tasks.items():
            error = task.exception()
            if error is None:
                continue
            if isinstance(error, AgentFailedError):
                failures.append(error)
            elif unexpected is None:
                unexpected = error
            else:
                logger.error(
                    "Additional batch member error",
                    extra={"session_id": context.session_id, "agent": name, "error": str(error)},
                )
        if unexpected is not None:
            raise unexpected
        return failures

    async def run_phase(self, context: RunContext, phase_name: str) -> Session:
        phase = self._pipeline.phase(phase_name)
        self.check_prerequisites(self._store.load(context.session_id), phase.name)
        logger.info(
            "Running phase", extra={"session_id": context.session_id, "phase": phase.name}
        )

        failures: list[AgentFailedError] = []
        for unit in phase.units():
            if len(unit) == 1 and not unit[0].parallel:
                try:
                    await self.run_agent(context, unit[0].name)
                except AgentFailedError as exc:
                    failures.append(exc)
            else:
                failures.extend(await self.run_batch(context, unit))
            if failures:
                break

        if failures:
            raise PhaseBlockedError(phase.name, failures)
        return self._store.load(context.session_id)

    async def run_all(self, context: RunContext) -> Session:
        for phase in self._pipeline.phases:
            session = self._store.load(context.session_id)
            if all(
                session.record(agent.name).status is AgentStatus.COMPLETED for agent in phase.agents
            ):
                continue
            await self.run_phase(context, phase.name)
        return self._store.load(context.session_id)

    async def rerun_agent(self, context: RunContext, name: str) -> AgentExecutionRecord:
        """Clear an agent's record (including a terminal failure) and run it again."""

        agent = self._pipeline.agent(name)
        session = self._store.load(context.session_id)
        self.check_prerequisites(session, agent.phase)
        if self.is_active(context.session_id, name):
            raise AgentBusyError(f"Agent '{name}' is already running in session {context.session_id}")

        async with self._working_tree(context, agent):
            previous = await self.recover_open_checkpoint(context, name)
        await self.record(
            context.session_id,
            EventKind.AGENT_RESET,
            agent=name,
            payload={"previous_status": previous.status.value, "previous_attempts": previous.attempts},
        )
        return await self.run_agent(context, name)


def _failed_error(record: AgentExecutionRecord, detail: str | None) -> AgentFailedError:
    return AgentFailedError(
        record.name,
        error_kind=record.last_error_kind,
        attempts=record.attempts,
        checkpoint_id=record.checkpoint_id,
        detail=detail,
    )


__all__ = ["CheckpointManager"]
