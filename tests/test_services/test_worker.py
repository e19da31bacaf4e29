"""Tests for worker processes and script output parsing."""

import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from scrape_orchestrator.config import ScriptsConfig, Settings
from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType
from scrape_orchestrator.models.target import Degree, TargetConfig
from scrape_orchestrator.services.worker import (
    ScriptOutputError,
    WorkerProcess,
    WorkerState,
    build_command,
    build_worker_env,
    parse_script_output,
    resolve_script,
)


def _script(tmp_path: Path, body: str) -> list[str]:
    path = tmp_path / "script.py"
    path.write_text(textwrap.dedent(body))
    return [sys.executable, str(path)]


async def _wait_for_file(path: Path, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not path.exists():
        if loop.time() > deadline:
            raise AssertionError(f"{path.name} was never written")
        await asyncio.sleep(0.02)


class TestParseScriptOutput:
    """Tests for parse_script_output."""

    def test_last_line_is_the_result(self):
        """Should ignore progress lines before the JSON result."""
        stdout = 'Logging in...\nFetched page 1\n{"success": true, "count": 2, "records": [{"a": 1}, {"a": 2}]}\n\n'

        result = parse_script_output(stdout)

        assert result.success is True
        assert result.count == 2
        assert result.records == [{"a": 1}, {"a": 2}]

    def test_accepts_aliases(self):
        stdout = '{"success": true, "processosCount": 1, "processos": [{"numero": "1"}]}'

        result = parse_script_output(stdout)

        assert result.count == 1
        assert result.records == [{"numero": "1"}]

    def test_count_defaults_to_records(self):
        result = parse_script_output('{"success": true, "records": [{}, {}, {}]}')

        assert result.count == 3

    def test_reported_failure(self):
        result = parse_script_output('{"success": false, "error": "Login failed"}')

        assert result.success is False
        assert result.error == "Login failed"

    @pytest.mark.parametrize(
        "stdout",
        ["", "   \n", "done", '{"count": 1}', "[1, 2]", '{"success": true, "records": "x"}'],
    )
    def test_invalid_output(self, stdout):
        """Should raise ScriptOutputError for anything but a result object."""
        with pytest.raises(ScriptOutputError, match="Failed to parse script output"):
            parse_script_output(stdout)


class TestResolveScript:
    """Tests for resolve_script / build_command."""

    def test_scrape_type_scripts(self):
        scripts = ScriptsConfig({})

        assert resolve_script(ScrapeType.GENERAL_DOCKET, None, scripts, "/s") == Path(
            "/s/raspar-acervo-geral.js"
        )
        assert resolve_script(
            ScrapeType.PENDING_MANIFESTATIONS, ScrapeSubType.NO_DEADLINE, scripts, "/s"
        ) == Path("/s/raspar-pendentes-sem-prazo.js")

    def test_pending_requires_subtype(self):
        with pytest.raises(ValueError):
            resolve_script(ScrapeType.PENDING_MANIFESTATIONS, None, ScriptsConfig({}), "/s")

    def test_build_command(self):
        script = Path("/s/raspar.js")

        assert build_command(Settings(script_runtime="node"), script) == ["node", "/s/raspar.js"]
        assert build_command(Settings(script_runtime=""), script) == ["/s/raspar.js"]


class TestBuildWorkerEnv:
    """Tests for build_worker_env."""

    def test_passes_credential_reference_only(self):
        """Should expose target endpoints and the credential id, not a secret."""
        target = TargetConfig(
            code="TRT3",
            degree=Degree.SECOND,
            base_url="https://pje.trt3.jus.br",
            login_url="https://pje.trt3.jus.br/login",
            api_url="https://pje.trt3.jus.br/api",
        )

        env = build_worker_env(target, "cred-42", output_file="/tmp/out.json")

        assert env["PJE_CREDENTIAL_ID"] == "cred-42"
        assert env["PJE_TARGET_CODE"] == "TRT3"
        assert env["PJE_TARGET_DEGREE"] == "2g"
        assert env["PJE_API_URL"] == "https://pje.trt3.jus.br/api"
        assert env["PJE_OUTPUT_FILE"] == "/tmp/out.json"
        assert "PJE_PASSWORD" not in env


@pytest.mark.asyncio
class TestWorkerProcess:
    """Tests for WorkerProcess with real child processes."""

    async def test_completed(self, tmp_path):
        """Should collect stdout and exit code of a finished child."""
        command = _script(
            tmp_path,
            """
            import json, sys
            print("working")
            print("warning", file=sys.stderr)
            print(json.dumps({"success": True, "count": 0, "records": []}))
            """,
        )
        worker = WorkerProcess(command, timeout=30)

        outcome = await worker.run()

        assert outcome.state == WorkerState.COMPLETED
        assert outcome.returncode == 0
        assert parse_script_output(outcome.stdout).success is True
        assert "warning" in outcome.stderr_tail
        assert worker.history == [
            WorkerState.SPAWNED,
            WorkerState.RUNNING,
            WorkerState.COMPLETED,
        ]

    async def test_nonzero_exit(self, tmp_path):
        command = _script(tmp_path, "import sys; sys.exit(3)")

        outcome = await WorkerProcess(command, timeout=30).run()

        assert outcome.state == WorkerState.COMPLETED
        assert outcome.returncode == 3

    async def test_timeout_terminates_child(self, tmp_path):
        """Should stop a child that outlives its wall-clock timeout."""
        command = _script(tmp_path, "import time; time.sleep(30)")
        worker = WorkerProcess(command, timeout=0.5, grace_period=1.0)

        outcome = await worker.run()

        assert outcome.state == WorkerState.TIMED_OUT
        assert worker.process.returncode is not None
        assert outcome.duration_seconds < 10

    async def test_kill_after_grace_period(self, tmp_path):
        """Should SIGKILL a child that ignores SIGTERM."""
        command = _script(
            tmp_path,
            """
            import signal, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("ready", flush=True)
            time.sleep(30)
            """,
        )
        worker = WorkerProcess(command, timeout=1.5, grace_period=0.5)

        outcome = await worker.run()

        assert outcome.state == WorkerState.TIMED_OUT
        assert worker.process.returncode == -9

    async def test_cancel_terminates_child(self, tmp_path):
        """Should SIGTERM and reap the child when the attempt is canceled."""
        started = tmp_path / "started"
        stopped = tmp_path / "stopped"
        command = _script(
            tmp_path,
            f"""
            import signal, sys, time
            from pathlib import Path

            def stop(signum, frame):
                Path({str(stopped)!r}).write_text("term")
                sys.exit(0)

            signal.signal(signal.SIGTERM, stop)
            Path({str(started)!r}).write_text("up")
            time.sleep(30)
            """,
        )
        worker = WorkerProcess(command, timeout=30, grace_period=5.0)
        task = asyncio.create_task(worker.run())
        await _wait_for_file(started)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert worker.state == WorkerState.KILLED
        assert worker.history[-1] == WorkerState.KILLED
        assert worker.process.returncode == 0
        assert stopped.read_text() == "term"

    async def test_cancel_kills_child_ignoring_sigterm(self, tmp_path):
        started = tmp_path / "started"
        command = _script(
            tmp_path,
            f"""
            import signal, time
            from pathlib import Path
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            Path({str(started)!r}).write_text("up")
            time.sleep(30)
            """,
        )
        worker = WorkerProcess(command, timeout=30, grace_period=0.5)
        task = asyncio.create_task(worker.run())
        await _wait_for_file(started)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert worker.state == WorkerState.KILLED
        assert worker.process.returncode == -9

    async def test_descendants_stopped_with_child(self, tmp_path):
        """Should stop processes the child spawned, not only the child."""
        heartbeat = tmp_path / "grandchild.log"
        grandchild = textwrap.dedent(
            f"""
            import signal, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            while True:
                with open({str(heartbeat)!r}, "a") as f:
                    f.write("."); f.flush()
                time.sleep(0.05)
            """
        )
        command = _script(
            tmp_path,
            f"""
            import subprocess, sys, time
            subprocess.Popen([sys.executable, "-c", {grandchild!r}])
            time.sleep(30)
            """,
        )
        worker = WorkerProcess(command, timeout=30, grace_period=0.5)
        task = asyncio.create_task(worker.run())
        await _wait_for_file(heartbeat)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.1)
        size = heartbeat.stat().st_size
        await asyncio.sleep(0.5)
        assert heartbeat.stat().st_size == size
