"""
runway.integrations.executor.local - Local Subprocess Executor
================================================================

Runs steps on the local machine, inside a workspace directory.

Step Handling:
    RUN:                ``<shell> -c <command>`` via asyncio subprocess,
                        stdout and stderr merged into the step's logs.
    UPLOAD_ARTIFACT:    Reads ``path`` (relative to the workspace). A file is
                        stored as-is; a directory is stored as a gzipped tar.
    DOWNLOAD_ARTIFACT:  Writes the artifact to ``path`` (default: the artifact
                        name). Tar archives produced by directory uploads are
                        unpacked into that directory.

Cancellation:
    Each command runs in its own session. If the worker is cancelled while
    a command runs, the whole process group is killed and the shell reaped
    before the CancelledError propagates.
"""

from __future__ import annotations

import asyncio
import io
import os
import signal
import tarfile
from pathlib import Path
from typing import Optional

import structlog

from runway.core.config import ExecutorConfig
from runway.core.enums import StepKind
from runway.core.models import Step
from runway.integrations.executor.base import ExecutionResult, Executor


logger = structlog.get_logger()

_GZIP_MAGIC = b"\x1f\x8b"


class LocalProcessExecutor(Executor):
    """Executes steps as local shell commands.

    Example:
        >>> executor = LocalProcessExecutor(ExecutorConfig(workspace_dir="site"))
        >>> result = await executor.execute(Step(name="build", command="make"), {})
    """

    def __init__(self, config: Optional[ExecutorConfig] = None) -> None:
        super().__init__(config or ExecutorConfig(backend="local"))
        self._workspace = Path(self._config.workspace_dir)
        self._logger = logger.bind(component="local_executor")

    @property
    def workspace(self) -> Path:
        return self._workspace

    async def execute(
        self,
        step: Step,
        env: dict[str, str],
        inputs: Optional[dict[str, bytes]] = None,
    ) -> ExecutionResult:
        if step.kind == StepKind.RUN:
            return await self._run_command(step, env)
        if step.kind == StepKind.UPLOAD_ARTIFACT:
            return await asyncio.to_thread(self._collect, step)
        if step.kind == StepKind.DOWNLOAD_ARTIFACT:
            content = (inputs or {}).get(step.artifact)
            if content is None:
                return ExecutionResult(
                    exit_code=1,
                    logs=[f"artifact '{step.artifact}' was not provided to the step"],
                )
            return await asyncio.to_thread(self._materialize, step, content)
        return ExecutionResult(
            exit_code=1,
            logs=[f"step kind '{step.kind.value}' cannot run on an executor"],
        )

    # =========================================================================
    # RUN
    # =========================================================================

    async def _run_command(self, step: Step, env: dict[str, str]) -> ExecutionResult:
        process_env = dict(os.environ) if self._config.inherit_env else {}
        process_env.update(self.merge_env(env, step))

        self._logger.debug("process_starting", step=step.name, command=step.command)
        process = await asyncio.create_subprocess_exec(
            self._config.shell,
            "-c",
            step.command,
            cwd=str(self._workspace),
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            # The shell leads its own process group; background children go too.
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()
            self._logger.info("process_killed", step=step.name, pid=process.pid)
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return ExecutionResult(
            exit_code=process.returncode if process.returncode is not None else 1,
            logs=output.splitlines(),
        )

    # =========================================================================
    # UPLOAD / DOWNLOAD
    # =========================================================================

    def _collect(self, step: Step) -> ExecutionResult:
        source = self._workspace / step.path
        if source.is_file():
            data = source.read_bytes()
        elif source.is_dir():
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
                for child in sorted(source.rglob("*")):
                    archive.add(child, arcname=str(child.relative_to(source)), recursive=False)
            data = buffer.getvalue()
        else:
            return ExecutionResult(exit_code=1, logs=[f"path not found: {step.path}"])

        return ExecutionResult(
            exit_code=0,
            artifacts={step.artifact: data},
            logs=[f"collected {step.path} as '{step.artifact}' ({len(data)} bytes)"],
        )

    def _materialize(self, step: Step, content: bytes) -> ExecutionResult:
        target = self._workspace / (step.path or step.artifact)
        if content.startswith(_GZIP_MAGIC):
            try:
                with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as archive:
                    target.mkdir(parents=True, exist_ok=True)
                    archive.extractall(target, filter="data")
                return ExecutionResult(
                    exit_code=0,
                    logs=[f"unpacked '{step.artifact}' into {target}"],
                )
            except tarfile.TarError:
                pass  # plain gzip file, not an archive: write it as-is

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return ExecutionResult(
            exit_code=0,
            logs=[f"wrote '{step.artifact}' to {target} ({len(content)} bytes)"],
        )
