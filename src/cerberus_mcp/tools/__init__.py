"""Tool registration for Cerberus MCP."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import CerberusSettings
from ..errors import AgentFailedError, PhaseBlockedError
from ..orchestrator import PipelineService
from ..state import AgentExecutionRecord, Session
from ..totp import generate_totp

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_session: Any
    session_status: Any
    list_agents: Any
    list_sessions: Any
    run_all: Any
    run_agent: Any
    run_phase: Any
    rerun_agent: Any
    rollback_to_checkpoint: Any
    delete_sessions: Any
    save_deliverable: Any
    list_vulnerabilities: Any
    validate_vulnerability: Any
    generate_totp: Any


def _record_payload(record: AgentExecutionRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")


def _blocked_payload(service: PipelineService, session: Session, exc: PhaseBlockedError) -> dict[str, Any]:
    return {
        **service.summarize(session),
        "blocked_phase": exc.phase,
        "failures": [_failure_payload(failure) for failure in exc.failures],
    }


def _failure_payload(exc: AgentFailedError) -> dict[str, Any]:
    return {
        "agent": exc.agent,
        "error_kind": exc.error_kind,
        "attempts": exc.attempts,
        "checkpoint_id": exc.checkpoint_id,
        "message": str(exc),
    }


def register_tools(
    server: FastMCP,
    *,
    service: PipelineService,
    settings: CerberusSettings,
) -> ToolHandles:
    """Register Cerberus MCP tools on the server."""

    async def _start_session(
        web_url: str,
        repo_path: str,
        config_path: str | None = None,
        run_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create (or resume) the session for a target URL and repository."""

        session = await service.start_session(
            web_url, repo_path, config_path=config_path, run_id=run_id
        )
        _emit_log(context, "info", "Session ready", extra={"session_id": session.id})
        return service.summarize(session)

    async def _session_status(session_id: str, context: Context | None = None) -> dict[str, Any]:
        session = await service.status(session_id)
        _emit_log(context, "debug", "Session status", extra={"session_id": session_id})
        return {
            **service.summarize(session),
            "agents": service.list_agents(session),
        }

    async def _list_agents(
        session_id: str | None = None, context: Context | None = None
    ) -> list[dict[str, Any]]:
        """List pipeline agents, with per-session progress when a session id is given."""

        session = await service.status(session_id) if session_id else None
        catalog = service.list_agents(session)
        _emit_log(context, "debug", "Listing pipeline agents", extra={"count": len(catalog)})
        return catalog

    async def _list_sessions(context: Context | None = None) -> list[dict[str, Any]]:
        sessions = await service.list_sessions()
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return [service.summarize(session) for session in sessions]

    async def _run_all(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Run every remaining phase in order; stops at the first blocked phase."""

        try:
            session = await service.run_all(session_id)
        except PhaseBlockedError as exc:
            _emit_log(
                context,
                "warning",
                "Pipeline blocked",
                extra={"session_id": session_id, "phase": exc.phase},
            )
            return _blocked_payload(service, await service.status(session_id), exc)
        _emit_log(context, "info", "Pipeline run finished", extra={"session_id": session_id})
        return service.summarize(session)

    async def _run_phase(
        session_id: str, phase: str, context: Context | None = None
    ) -> dict[str, Any]:
        try:
            session = await service.run_phase(session_id, phase)
        except PhaseBlockedError as exc:
            _emit_log(
                context,
                "warning",
                "Phase blocked",
                extra={"session_id": session_id, "phase": exc.phase},
            )
            return _blocked_payload(service, await service.status(session_id), exc)
        _emit_log(context, "info", "Phase finished", extra={"session_id": session_id, "phase": phase})
        return service.summarize(session)

    async def _run_agent(
        session_id: str, agent: str, context: Context | None = None
    ) -> dict[str, Any]:
        record = await service.run_agent(session_id, agent)
        _emit_log(
            context,
            "info",
            "Agent finished",
            extra={"session_id": session_id, "agent": agent, "status": record.status.value},
        )
        return _record_payload(record)

    async def _rerun_agent(
        session_id: str, agent: str, context: Context | None = None
    ) -> dict[str, Any]:
        """Reset an agent (including a terminal failure) and run it again."""

        record = await service.rerun_agent(session_id, agent)
        _emit_log(
            context,
            "info",
            "Agent re-run finished",
            extra={"session_id": session_id, "agent": agent, "status": record.status.value},
        )
        return _record_payload(record)

    async def _rollback_to_checkpoint(
        session_id: str, checkpoint_id: str, context: Context | None = None
    ) -> dict[str, Any]:
        session = await service.rollback_to_checkpoint(session_id, checkpoint_id)
        _emit_log(
            context,
            "warning",
            "Session rolled back",
            extra={"session_id": session_id, "checkpoint_id": checkpoint_id},
        )
        return {
            **service.summarize(session),
            "agents": service.list_agents(session),
        }

    async def _delete_sessions(
        session_ids: list[str], context: Context | None = None
    ) -> dict[str, Any]:
        deleted = await service.delete_sessions(session_ids)
        _emit_log(context, "info", "Deleted sessions", extra={"count": len(deleted)})
        return {"deleted": deleted}

    async def _save_deliverable(
        session_id: str,
        deliverable_name: str,
        content: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Write a deliverable file into the session's deliverables directory."""

        path = await service.save_deliverable(session_id, deliverable_name, content)
        _emit_log(
            context,
            "info",
            "Saved deliverable",
            extra={"session_id": session_id, "path": str(path)},
        )
        return {"path": str(path), "bytes": len(content.encode("utf-8"))}

    async def _list_vulnerabilities(
        session_id: str, context: Context | None = None
    ) -> list[dict[str, Any]]:
        summaries = await service.list_vulnerabilities(session_id)
        _emit_log(
            context,
            "debug",
            "Listing queued vulnerabilities",
            extra={"session_id": session_id, "count": len(summaries)},
        )
        return [asdict(summary) for summary in summaries]

    async def _validate_vulnerability(
        session_id: str, vuln_id: str, context: Context | None = None
    ) -> dict[str, Any]:
        """Re-test one queued vulnerability and record FIXED, STILL_VULNERABLE or CANNOT_TEST."""

        result = await service.validate_vulnerability(session_id, vuln_id)
        _emit_log(
            context,
            "info",
            "Vulnerability validated",
            extra={"session_id": session_id, "vuln_id": result["vuln_id"], "status": result["status"]},
        )
        return result

    async def _generate_totp(secret: str, context: Context | None = None) -> dict[str, Any]:
        totp = generate_totp(secret)
        # never log the secret or the code
        _emit_log(context, "debug", "Generated TOTP code", extra={"expires_in": totp.expires_in})
        return asdict(totp)

    tool_start = server.tool(
        name="start_session",
        description=(
            "Create a pentest session for a target URL and source repository. "
            "Calling it again for the same pair resumes the existing session."
        ),
    )(_start_session)

    tool_status = server.tool(
        name="session_status",
        description="Show session status, current phase and per-agent progress.",
    )(_session_status)

    tool_list_agents = server.tool(
        name="list_agents",
        description="List pipeline agents by phase, optionally with a session's progress.",
    )(_list_agents)

    tool_list_sessions = server.tool(
        name="list_sessions",
        description="List known sessions with status and agent counts.",
    )(_list_sessions)

    tool_run_all = server.tool(
        name="run_all",
        description="Run all remaining phases in order, checkpointing every agent attempt.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": f"Agents modify the repository; state lives in {settings.state_dir}",
            }
        },
    )(_run_all)

    tool_run_phase = server.tool(
        name="run_phase",
        description="Run a single phase once its prerequisite phases are complete.",
    )(_run_phase)

    tool_run_agent = server.tool(
        name="run_agent",
        description="Run one agent with checkpoint, validation and bounded retries.",
    )(_run_agent)

    tool_rerun_agent = server.tool(
        name="rerun_agent",
        description="Reset an agent's record, clearing a terminal failure, and run it again.",
    )(_rerun_agent)

    tool_rollback = server.tool(
        name="rollback_to_checkpoint",
        description=(
            "Reset the repository to a recorded checkpoint and mark the agents that ran "
            "after it as pending."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Discards repository changes made after the checkpoint",
            }
        },
    )(_rollback_to_checkpoint)

    tool_delete = server.tool(
        name="delete_sessions",
        description="Delete session store and audit files.",
    )(_delete_sessions)

    tool_save_deliverable = server.tool(
        name="save_deliverable",
        description=(
            "Operator write of a deliverable file for the session's current run. "
            "Refused while the session has agents running."
        ),
    )(_save_deliverable)

    tool_list_vulns = server.tool(
        name="list_vulnerabilities",
        description="Summarize vulnerabilities queued for exploitation.",
    )(_list_vulnerabilities)

    tool_validate = server.tool(
        name="validate_vulnerability",
        description=(
            "Re-test a single queued vulnerability (e.g. XSS-VULN-01) after a fix and save "
            "validation_result_<ID>.json to the deliverables directory."
        ),
    )(_validate_vulnerability)

    tool_totp = server.tool(
        name="generate_totp",
        description="Generate the current 6-digit TOTP code for a base32 secret, for 2FA logins.",
    )(_generate_totp)

    return ToolHandles(
        start_session=tool_start,
        session_status=tool_status,
        list_agents=tool_list_agents,
        list_sessions=tool_list_sessions,
        run_all=tool_run_all,
        run_agent=tool_run_agent,
        run_phase=tool_run_phase,
        rerun_agent=tool_rerun_agent,
        rollback_to_checkpoint=tool_rollback,
        delete_sessions=tool_delete,
        save_deliverable=tool_save_deliverable,
        list_vulnerabilities=tool_list_vulns,
        validate_vulnerability=tool_validate,
        generate_totp=tool_totp,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
