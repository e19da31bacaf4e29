"""
Worker process lifecycle for a single scrape attempt.

A scrape script runs as an isolated child process under a hard wall-clock
timeout. Its last non-empty stdout line is a JSON result:

    {"success": true, "count": 42, "records": [...], "timestamp": "..."}

(``processosCount``/``processos`` are accepted as aliases.)

Lifecycle:

    SPAWNED -> RUNNING -> COMPLETED   (child exited on its own)
                       -> TIMED_OUT   (wall clock expired, child terminated)
                       -> KILLED      (attempt canceled, child terminated)

Termination sends SIGTERM, waits ``grace_period`` seconds, then SIGKILL.
Every terminal transition goes through ``_finalize``, which always reaps
the child.
"""

import asyncio
import enum
import json
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from scrape_orchestrator.config import ScriptsConfig, Settings
from scrape_orchestrator.core.datetime_utils import utc_now
from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType

logger = get_logger(__name__)

STDERR_TAIL_CHARS = 2000


class WorkerState(str, enum.Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"


_TRANSITIONS: dict[WorkerState, set[WorkerState]] = {
    WorkerState.SPAWNED: {WorkerState.RUNNING, WorkerState.KILLED},
    WorkerState.RUNNING: {WorkerState.COMPLETED, WorkerState.TIMED_OUT, WorkerState.KILLED},
    WorkerState.COMPLETED: set(),
    WorkerState.TIMED_OUT: set(),
    WorkerState.KILLED: set(),
}


class ScriptOutputError(ValueError):
    """The script's stdout did not end with a valid JSON result."""


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class ScriptResult:
    """Parsed result line of a scrape script."""

    success: bool
    count: int = 0
    records: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    timestamp: str | None = None


@dataclass
class WorkerOutcome:
    """Everything known about a finished worker process."""

    state: WorkerState
    returncode: int | None
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def stderr_tail(self) -> str:
        return self.stderr[-STDERR_TAIL_CHARS:]


def parse_script_output(stdout: str) -> ScriptResult:
    """Parse the last non-empty stdout line as the script's JSON result.

    Raises:
        ScriptOutputError: no output, or the last line is not a JSON object
    """
    lines = [line for line in stdout.strip().splitlines() if line.strip()]
    if not lines:
        raise ScriptOutputError("Failed to parse script output: script produced no output")

    try:
        data = json.loads(lines[-1])
    except json.JSONDecodeError as e:
        raise ScriptOutputError(f"Failed to parse script output: {e}") from e
    if not isinstance(data, dict) or "success" not in data:
        raise ScriptOutputError("Failed to parse script output: missing 'success' field")

    records = data.get("records", data.get("processos")) or []
    if not isinstance(records, list):
        raise ScriptOutputError("Failed to parse script output: records is not a list")
    count = data.get("count", data.get("processosCount"))
    return ScriptResult(
        success=bool(data["success"]),
        count=int(count) if count is not None else len(records),
        records=records,
        error=data.get("error"),
        timestamp=data.get("timestamp"),
    )


def resolve_script(
    scrape_type: ScrapeType,
    subtype: ScrapeSubType | None,
    scripts: ScriptsConfig,
    scripts_dir: str,
) -> Path:
    """Path of the script that implements a scrape type."""
    if scrape_type == ScrapeType.PENDING_MANIFESTATIONS:
        if subtype is None:
            raise ValueError("Pending manifestation scrapes require a subtype")
        name = scripts.pendentes[subtype.value]
    else:
        name = getattr(scripts, scrape_type.value)
    return Path(scripts_dir) / name


def build_worker_env(
    target: Any,
    credential_id: str,
    output_file: str | None = None,
) -> dict[str, str]:
    """Environment for a scrape script.

    Only the credential reference is passed; the script resolves the secret
    itself.
    """
    env = {
        **os.environ,
        "PJE_CREDENTIAL_ID": credential_id,
        "PJE_TARGET_CODE": target.code,
        "PJE_TARGET_DEGREE": getattr(target.degree, "value", target.degree),
        "PJE_BASE_URL": target.base_url,
        "PJE_LOGIN_URL": target.login_url,
        "PJE_API_URL": target.api_url,
    }
    if output_file:
        env["PJE_OUTPUT_FILE"] = output_file
    return env


class WorkerProcess:
    """One child process bound to a wall-clock timeout."""

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        timeout: float = 600.0,
        grace_period: float = 5.0,
        cwd: str | None = None,
    ) -> None:
        self.command = command
        self.env = env
        self.timeout = timeout
        self.grace_period = grace_period
        self.cwd = cwd
        self.state: WorkerState | None = None
        self.process: asyncio.subprocess.Process | None = None
        self.history: list[WorkerState] = []

    def _transition(self, new_state: WorkerState) -> None:
        if self.state is not None and new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    async def run(self) -> WorkerOutcome:
        """Spawn, wait for exit or timeout, and always reap the child.

        Raises:
            asyncio.CancelledError: the attempt was canceled; the child has
                been terminated and reaped before this propagates
        """
        started = utc_now()
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
            cwd=self.cwd,
            # Own process group, so descendants such as browsers are signalled with it
            start_new_session=True,
        )
        self._transition(WorkerState.SPAWNED)
        logger.bind(pid=self.process.pid, command=self.command[0]).debug("worker_spawned")

        communicate = asyncio.ensure_future(self.process.communicate())
        self._transition(WorkerState.RUNNING)
        try:
            stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), self.timeout)
            terminal = WorkerState.COMPLETED
        except TimeoutError:
            terminal = WorkerState.TIMED_OUT
            stdout, stderr = await self._finalize(terminal, communicate)
        except asyncio.CancelledError:
            await self._finalize(WorkerState.KILLED, communicate)
            raise
        else:
            await self._finalize(terminal, communicate)

        return WorkerOutcome(
            state=terminal,
            returncode=self.process.returncode,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            duration_seconds=(utc_now() - started).total_seconds(),
        )

    async def _finalize(
        self, state: WorkerState, communicate: "asyncio.Future[tuple[bytes, bytes]]"
    ) -> tuple[bytes, bytes]:
        """Single cleanup path: stop the child if needed, reap it, collect output."""
        self._transition(state)
        process = self.process
        assert process is not None

        if process.returncode is None:
            await self._terminate(process)
        elif state != WorkerState.COMPLETED:
            # Leader gone; stop descendants still holding its pipes
            _signal_group(process, signal.SIGKILL)

        try:
            stdout, stderr = await communicate
        except Exception as e:
            logger.bind(pid=process.pid, error=str(e)).warning("worker_output_collect_failed")
            stdout, stderr = b"", b""

        logger.bind(pid=process.pid, state=state.value, returncode=process.returncode).debug(
            "worker_finalized"
        )
        return stdout, stderr

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the child's process group, then SIGKILL whatever is left after grace."""
        if not _signal_group(process, signal.SIGTERM):
            return
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), self.grace_period)
        except TimeoutError:
            logger.bind(pid=process.pid, grace_period=self.grace_period).warning(
                "worker_kill_after_grace_period"
            )
        # Descendants may outlive the leader
        _signal_group(process, signal.SIGKILL)
        await process.wait()


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
    """Signal the group led by the child; False once the group is gone."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return False
    return True


def build_command(settings: Settings, script_path: Path) -> list[str]:
    """Command line for a script: the configured runtime, or the script itself."""
    if settings.script_runtime:
        return [settings.script_runtime, str(script_path)]
    return [str(script_path)]
