"""FastMCP server bootstrap for Cerberus."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import CerberusSettings, get_settings
from .errors import CorruptedStateError
from .orchestrator import PipelineService
from .state import AgentStatus
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Cerberus server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[CerberusSettings] = None,
    service: PipelineService | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the pipeline tools and status resource."""

    settings = settings or get_settings()
    service = service or PipelineService.from_settings(settings)

    server = FastMCP(
        name="Cerberus MCP",
        version=__version__,
        instructions=(
            "Cerberus runs a phased penetration-testing pipeline of external agents "
            "against a target URL and its source repository. Every agent attempt is "
            "checkpointed, validated and recorded in an append-only audit log, so runs "
            "can be resumed, retried and rolled back."
        ),
    )

    handles = register_tools(server, service=service, settings=settings)

    @server.resource(
        "resource://cerberus/status",
        name="cerberus_status",
        title="Cerberus MCP Status",
        description="Pipeline definition and session overview for the Cerberus MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing pipeline and session state."""

        sessions = []
        running: list[dict[str, str]] = []
        session_error: str | None = None
        try:
            for session in await service.list_sessions():
                sessions.append(service.summarize(session))
                running.extend(
                    {"session_id": session.id, "agent": name}
                    for name, record in session.agents.items()
                    if record.status is AgentStatus.RUNNING
                )
        except CorruptedStateError as exc:
            session_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "state_dir": str(settings.state_dir),
            "pipeline": {
                "name": service.pipeline.name,
                "phases": [
                    {
                        "name": phase.name,
                        "agents": [agent.name for agent in phase.agents],
                        "prerequisites": phase.prerequisites,
                    }
                    for phase in service.pipeline.phases
                ],
            },
            "retry": {
                "max_attempts": settings.max_attempts,
                "base_delay": settings.retry_base_delay,
                "max_delay": settings.retry_max_delay,
            },
            "sessions": {
                "count": len(sessions),
                "recent": sessions[-5:],
                "running_agents": running,
                "error": session_error,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "pipeline_service", service)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Cerberus MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Cerberus MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "state_dir": str(settings.state_dir),
            "pipeline": server.pipeline_service.pipeline.name,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
