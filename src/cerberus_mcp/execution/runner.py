"""Agent invocation contract and the subprocess-backed agent runner."""

from __future__ import annotations

import asyncio
import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Mapping, Sequence, Union

from ..context import RunContext
from ..errors import CerberusError
from ..pipeline import AgentDefinition
from .utils import sanitize_environment


class AgentRunnerError(CerberusError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


class AgentInvocationError(AgentRunnerError):
    """Raised when the agent process exits unsuccessfully."""

    def __init__(self, message: str, *, returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@dataclass(slots=True, frozen=True)
class AgentInvocation:
    """Everything an external agent needs for one attempt."""

    agent: AgentDefinition
    context: RunContext
    workdir: Path
    attempt: int

    @property
    def deliverables_dir(self) -> Path:
        return self.context.deliverables_dir(self.workdir)


@dataclass(slots=True)
class AgentOutcome:
    """Successful agent completion plus the artifacts it reports."""

    artifacts: tuple[str, ...] = ()
    cost_usd: float = 0.0
    output: str = ""


AgentInvoker = Callable[[AgentInvocation], Awaitable[AgentOutcome]]


class CommandAgentRunner:
    """Run an agent CLI with the agent prompt inside the attempt's working directory."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        command: str = "claude",
        flags: Sequence[str] | None = None,
    ) -> None:
        self._explicit = Path(executable) if executable is not None else None
        self._command = command
        self._executable_path: Path | None = None
        self._flags = tuple(flags if flags is not None else ("-p", "--output-format", "json"))

    @staticmethod
    def _resolve_executable(explicit: Path | None, command: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise AgentNotFoundError(f"Agent CLI '{command}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        if self._executable_path is None:
            self._executable_path = self._resolve_executable(self._explicit, self._command)
        return self._executable_path

    async def __call__(self, invocation: AgentInvocation) -> AgentOutcome:
        prompt = build_prompt(invocation)
        cmd = [str(self.executable), *self._flags, prompt]
        invocation.deliverables_dir.mkdir(parents=True, exist_ok=True)
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(invocation.workdir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(agent_environment(invocation)),
        )
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        if process.returncode != 0:
            raise AgentInvocationError(
                f"Agent '{invocation.agent.name}' exited with code {process.returncode}: "
                f"{stderr.strip()[:500]}",
                returncode=process.returncode if process.returncode is not None else -1,
                stdout=stdout,
                stderr=stderr,
            )
        return AgentOutcome(cost_usd=parse_cost(stdout), output=stdout)


Scripted = Union[AgentOutcome, BaseException, Callable[[AgentInvocation], AgentOutcome]]


class FakeAgentRunner:
    """Test double that replays scripted outcomes per agent name.

    A scripted callable receives the invocation (so it can write deliverables)
    and returns the outcome; a scripted exception is raised. Agents with no
    remaining script replay ``default`` (an empty outcome unless given).
    """

    def __init__(
        self,
        scripts: Mapping[str, Iterable[Scripted]] | None = None,
        *,
        default: Scripted | None = None,
    ) -> None:
        self._scripts: dict[str, list[Scripted]] = {
            name: list(steps) for name, steps in (scripts or {}).items()
        }
        self._invocations: list[AgentInvocation] = []
        self._default = default

    async def __call__(self, invocation: AgentInvocation) -> AgentOutcome:
        self._invocations.append(invocation)
        await asyncio.sleep(0)
        steps = self._scripts.get(invocation.agent.name)
        step: Scripted = steps.pop(0) if steps else (self._default or AgentOutcome())
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(invocation)
        return step

    @property
    def invocations(self) -> list[AgentInvocation]:
        return self._invocations

    def calls_for(self, agent: str) -> list[AgentInvocation]:
        return [invocation for invocation in self._invocations if invocation.agent.name == agent]


def build_prompt(invocation: AgentInvocation) -> str:
    agent = invocation.agent
    sections = [
        agent.prompt.strip() or f"You are the {agent.name} agent of a penetration testing pipeline.",
        f"Target URL: {invocation.context.web_url}",
        f"Source repository: {invocation.workdir}",
        f"Save deliverables to: {invocation.deliverables_dir}",
    ]
    return "\n\n".join(sections)


def agent_environment(invocation: AgentInvocation) -> dict[str, str]:
    env = {
        "CERBERUS_SESSION_ID": invocation.context.session_id,
        "CERBERUS_WEB_URL": invocation.context.web_url,
        "CERBERUS_AGENT": invocation.agent.name,
        "CERBERUS_ATTEMPT": str(invocation.attempt),
        "CERBERUS_DELIVERABLES_DIR": str(invocation.deliverables_dir),
    }
    if invocation.context.run_id:
        env["CERBERUS_RUN_ID"] = invocation.context.run_id
    return env


def parse_cost(stdout: str) -> float:
    """Extract ``total_cost_usd`` from a JSON result document, if present."""

    text = stdout.strip()
    if not text:
        return 0.0
    document = None
    for candidate in (text, text.splitlines()[-1]):
        try:
            document = json.loads(candidate)
            break
        except ValueError:
            continue
    if not isinstance(document, dict):
        return 0.0
    value = document.get("total_cost_usd", document.get("cost_usd", 0.0))
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


__all__ = [
    "AgentInvocation",
    "AgentInvocationError",
    "AgentInvoker",
    "AgentNotFoundError",
    "AgentOutcome",
    "AgentRunnerError",
    "CommandAgentRunner",
    "FakeAgentRunner",
    "agent_environment",
    "build_prompt",
    "parse_cost",
]
