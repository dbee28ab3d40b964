from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from stagegate.workers.base import (
    Worker,
    WorkerError,
    WorkerProcessError,
    WorkerResult,
    WorkOrder,
    WorkspaceCorruptionError,
)

logger = logging.getLogger(__name__)

CORRUPTION_MARKER = "WORKSPACE_CORRUPTED"


class ClaudeWorker(Worker):
    """Runs one stage attempt through the ``claude`` CLI in print mode."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        model: str = "",
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.model:
            command.extend(["--model", self.model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result" and isinstance(event.get("result"), str):
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _stream(self, prompt: str) -> tuple[list[str], dict[str, Any] | None]:
        command = self.build_command(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Claude binary not found: {self.binary}", worker=self.name, retriable=False
            ) from exc
        if process.stdout is None:
            raise WorkerProcessError(
                "Claude worker did not expose stdout.", worker=self.name, retriable=False
            )

        chunks: list[str] = []
        final_event: dict[str, Any] | None = None
        parse_buffer = ""
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    chunks.append(line)
                    continue
                if not isinstance(event, dict):
                    continue
                if event.get("type") == "result":
                    final_event = event
                content = self._extract_content(event)
                if content:
                    chunks.append(content)
            if parse_buffer:
                chunks.append(parse_buffer)
            return_code = await process.wait()
        except asyncio.CancelledError:
            # Halting an invocation must not leave the CLI running.
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise WorkerError(
                f"Claude worker failed with exit code {return_code}: {stderr_output}",
                worker=self.name,
                exit_code=return_code,
            )
        return chunks, final_event

    async def run(self, order: WorkOrder) -> WorkerResult:
        chunks, final_event = await self._stream(order.render())
        content = "\n".join(chunks).strip()
        if final_event and isinstance(final_event.get("result"), str) and not content:
            content = final_event["result"].strip()
        if CORRUPTION_MARKER in content:
            raise WorkspaceCorruptionError(
                "Worker reported workspace corruption.", worker=self.name
            )

        output = Path(order.output_location)
        output.parent.mkdir(parents=True, exist_ok=True)
        # The CLI may already have written the file itself; keep that version.
        if not output.exists() or not output.read_text(encoding="utf-8").strip():
            output.write_text(content + "\n", encoding="utf-8")
        success = not bool(final_event and final_event.get("is_error"))
        summary = content.splitlines()[0][:200] if content else ""
        logger.debug("claude worker finished %s attempt %s", order.stage, order.attempt)
        return WorkerResult(artifact_reference=str(output), summary=summary, success=success)
