from __future__ import annotations

import asyncio
import json
import logging
import shlex
from pathlib import Path

from stagegate.workers.base import (
    Worker,
    WorkerError,
    WorkerProcessError,
    WorkerResult,
    WorkOrder,
    WorkspaceCorruptionError,
)

logger = logging.getLogger(__name__)


class CommandWorker(Worker):
    """Runs an arbitrary command per attempt.

    The work order is written to stdin as JSON. The last non-empty stdout line
    must be a JSON object ``{"artifactReference", "summary", "success"}``;
    anything else on stdout is kept as the artifact body when the command did
    not write ``outputLocation`` itself.
    """

    name = "command"

    def __init__(self, command: str, working_directory: Path | None = None) -> None:
        if not command.strip():
            raise WorkerProcessError(
                "No worker command configured.", worker=self.name, retriable=False
            )
        self.command = command
        self.working_directory = working_directory

    def build_command(self) -> list[str]:
        return shlex.split(self.command)

    async def run(self, order: WorkOrder) -> WorkerResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(),
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Worker command not found: {self.command}", worker=self.name, retriable=False
            ) from exc

        payload = json.dumps(order.to_dict(), ensure_ascii=False).encode("utf-8")
        try:
            stdout, stderr = await process.communicate(payload)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode == 3:
            raise WorkspaceCorruptionError(
                f"Worker command reported workspace corruption: {stderr_text}", worker=self.name
            )
        if process.returncode != 0:
            raise WorkerError(
                f"Worker command failed with exit code {process.returncode}: {stderr_text}",
                worker=self.name,
                exit_code=process.returncode,
            )

        lines = [line for line in stdout_text.splitlines() if line.strip()]
        result_payload: dict | None = None
        if lines:
            try:
                candidate = json.loads(lines[-1])
            except json.JSONDecodeError:
                candidate = None
            if isinstance(candidate, dict):
                result_payload = candidate
                lines = lines[:-1]

        output = Path(order.output_location)
        output.parent.mkdir(parents=True, exist_ok=True)
        if lines and not output.exists():
            output.write_text("\n".join(lines) + "\n", encoding="utf-8")
        if result_payload is None:
            logger.warning("worker command printed no result line for %s", order.stage)
            return WorkerResult(
                artifact_reference=str(output),
                summary=lines[-1][:200] if lines else "",
                success=bool(lines),
            )
        return WorkerResult.from_dict(result_payload, default_artifact=str(output))
