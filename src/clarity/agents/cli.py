"""Agent strategies backed by a coding-agent CLI subprocess.

The CLI runs inside the workspace with its JSON event stream on stdout.
Events are parsed line by line into progress callbacks and a final
``AgentResult``. The whole run is bounded by the configured timeout;
past it the process is killed.
"""

import asyncio
import json
import logging
import os
import shutil
import time
from abc import abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from src.clarity.agents.strategy import AgentStrategy, has_api_key
from src.clarity.agents.types import (
    AgentCapabilities,
    AgentContext,
    AgentProgressEvent,
    AgentProvider,
    AgentResult,
    AgentType,
    ProgressEventType,
    ValidationResult,
)
from src.clarity.sessions.codec import extract_session_file, restore_session_file

logger = logging.getLogger(__name__)

DEFAULT_SOLUTION = (
    "I analyzed the issue and made changes to the codebase. "
    "Please review the pull request for details."
)


@dataclass
class StreamState:
    """What has been learned from the agent's event stream so far."""

    session_id: Optional[str] = None
    cost_usd: float = 0.0
    error: Optional[str] = None
    texts: List[str] = field(default_factory=list)
    final_text: Optional[str] = None
    turn_count: int = 0
    stderr_lines: List[str] = field(default_factory=list)

    @property
    def solution(self) -> str:
        if self.texts:
            return self.texts[-1]
        return self.final_text or DEFAULT_SOLUTION


class CliAgentStrategy(AgentStrategy):
    """Base class for agents driven through a CLI subprocess.

    Attributes:
        cli_path: Executable name or path.
        home: Home directory the CLI keeps its session files under.
    """

    def __init__(self, cli_path: str, home: Optional[Path] = None):
        self.cli_path = cli_path
        self.home = home or Path.home()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._aborted = False

    @abstractmethod
    def build_command(self, context: AgentContext) -> List[str]:
        ...

    @abstractmethod
    def handle_event(
        self, state: StreamState, event: Dict[str, Any], context: AgentContext
    ) -> None:
        """Fold one JSON event from stdout into ``state``."""

    def session_dir(self, workspace_dir: str) -> Optional[Path]:
        """Directory holding ``<session_id>.jsonl`` files, if supported."""
        return None

    async def execute(self, context: AgentContext) -> AgentResult:
        self._aborted = False
        start_time = time.monotonic()
        state = StreamState()

        self._emit(context, ProgressEventType.STARTED, f"Starting {self.display_name}...")
        self._restore_session(context)

        try:
            try:
                self._process = await self._start_process(context)
                await self._collect_output_with_timeout(self._process, state, context)
            except asyncio.TimeoutError:
                await self._kill_process()
                state.error = (
                    f"{self.name} timed out after {context.config.timeout_seconds}s"
                )
                logger.error(
                    "Agent timed out",
                    extra={"agent": self.name, "timeout": context.config.timeout_seconds},
                )
            except OSError as exc:
                state.error = f"Failed to start {self.name}: {exc}"
                logger.error("Failed to start agent CLI: %s", exc)

            exit_code = self._process.returncode if self._process is not None else -1
            if state.error is None and self._aborted:
                state.error = "Execution aborted"
            if state.error is None and exit_code not in (0, None):
                tail = state.stderr_lines[-1] if state.stderr_lines else ""
                state.error = f"{self.name} exited with code {exit_code}: {tail}".rstrip(": ")

            duration_ms = int((time.monotonic() - start_time) * 1000)
            return self._build_result(state, context, duration_ms)
        finally:
            self._process = None

    async def abort(self) -> None:
        if self._process is not None and self._process.returncode is None:
            self._aborted = True
            await self._kill_process()
            logger.info("Abort signal sent", extra={"agent": self.name})

    async def cleanup(self) -> None:
        await self.abort()
        self._aborted = False

    async def validate(self, context: AgentContext) -> ValidationResult:
        errors = []
        if shutil.which(self.cli_path) is None:
            errors.append(f"{self.cli_path} executable not found")
        provider = context.config.provider or AgentProvider.ANTHROPIC
        if not has_api_key(provider):
            errors.append(f"API key for provider {provider.value} is required")
        if not context.prompt.strip():
            errors.append("Prompt is required")
        return ValidationResult(valid=not errors, errors=errors)

    def _restore_session(self, context: AgentContext) -> None:
        session_dir = self.session_dir(context.workspace_dir)
        if session_dir is None or not (context.resume_session_id and context.session_blob):
            return
        restore_session_file(context.resume_session_id, context.session_blob, session_dir)

    async def _start_process(self, context: AgentContext) -> asyncio.subprocess.Process:
        """Launch the CLI inside the workspace.

        Raises:
            OSError: If the executable cannot be found or started.
        """
        logger.info(
            "Starting agent CLI",
            extra={
                "agent": self.name,
                "workspace": context.workspace_dir,
                "prompt_length": len(context.prompt),
                "resuming": bool(context.resume_session_id),
                "timeout": context.config.timeout_seconds,
            },
        )
        return await asyncio.create_subprocess_exec(
            *self.build_command(context),
            cwd=context.workspace_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(os.environ),
        )

    async def _collect_output_with_timeout(
        self,
        process: asyncio.subprocess.Process,
        state: StreamState,
        context: AgentContext,
    ) -> None:
        """Consume stdout events and stderr lines until the process exits.

        Raises:
            asyncio.TimeoutError: If the process exceeds the timeout.
        """

        async def stream_stdout() -> None:
            async for line in self._read_stream(process.stdout):
                event = self._parse_event(line)
                if event is not None:
                    self.handle_event(state, event, context)

        async def stream_stderr() -> None:
            async for line in self._read_stream(process.stderr):
                state.stderr_lines.append(line)
                logger.debug("%s stderr: %s", self.name, line)

        async def run() -> None:
            await asyncio.gather(stream_stdout(), stream_stderr())
            await process.wait()

        await asyncio.wait_for(run(), timeout=context.config.timeout_seconds)

    async def _read_stream(
        self, stream: Optional[asyncio.StreamReader]
    ) -> AsyncIterator[str]:
        if stream is None:
            return
        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            yield raw_line.decode("utf-8", errors="replace").rstrip("\n")

    def _parse_event(self, line: str) -> Optional[Dict[str, Any]]:
        if not line.strip():
            return None
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("%s stdout: %s", self.name, line)
            return None
        return event if isinstance(event, dict) else None

    async def _kill_process(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    def _emit(
        self,
        context: AgentContext,
        event_type: ProgressEventType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if context.on_progress is None:
            return
        try:
            context.on_progress(AgentProgressEvent(type=event_type, message=message, data=data))
        except Exception:
            logger.exception("Progress callback failed", extra={"agent": self.name})

    def _build_result(
        self,
        state: StreamState,
        context: AgentContext,
        duration_ms: int,
    ) -> AgentResult:
        session_blob = None
        session_dir = self.session_dir(context.workspace_dir)
        if state.session_id and session_dir is not None:
            session_blob = extract_session_file(state.session_id, session_dir)

        metadata: Dict[str, Any] = {
            "agent": self.name,
            "turn_count": state.turn_count,
            "provider": context.config.provider.value if context.config.provider else None,
            "model": context.config.model,
        }

        if state.error is not None:
            logger.error(
                "Agent execution failed",
                extra={"agent": self.name, "error": state.error, "duration_ms": duration_ms},
            )
            self._emit(context, ProgressEventType.ERROR, state.error)
            return AgentResult(
                success=False,
                message=f"{self.display_name} execution failed",
                error=state.error,
                cost_usd=state.cost_usd,
                duration_ms=duration_ms,
                session_id=state.session_id,
                session_blob=session_blob,
                metadata=metadata,
            )

        logger.info(
            "Agent execution completed",
            extra={
                "agent": self.name,
                "duration_ms": duration_ms,
                "cost_usd": state.cost_usd,
                "turn_count": state.turn_count,
            },
        )
        self._emit(context, ProgressEventType.COMPLETED, f"{self.display_name} execution completed")
        solution = state.solution
        return AgentResult(
            success=True,
            message=solution,
            solution=solution,
            cost_usd=state.cost_usd,
            duration_ms=duration_ms,
            session_id=state.session_id,
            session_blob=session_blob,
            metadata=metadata,
        )


def _short_path(file_path: str) -> str:
    parts = file_path.split("/")
    return "/".join(parts[-2:]) if len(parts) > 2 else file_path


def describe_tool_use(name: str, tool_input: Optional[Dict[str, Any]]) -> str:
    """Short human-readable description of a tool invocation."""
    if not tool_input:
        return name
    if name in ("Read", "Write", "Edit"):
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[name]
        path = tool_input.get("file_path")
        return f"{verb} {_short_path(path)}" if path else f"{verb} file"
    if name == "Bash":
        command = tool_input.get("command")
        if command:
            return tool_input.get("description") or f"Running {command.split()[0]}"
        return "Running command"
    if name == "Grep":
        pattern = tool_input.get("pattern")
        return f'Searching for "{pattern[:30]}"' if pattern else "Searching"
    if name == "Glob":
        pattern = tool_input.get("pattern")
        return f"Finding files {pattern[:30]}" if pattern else "Finding files"
    return name


class ClaudeCodeStrategy(CliAgentStrategy):
    """Claude Code in headless mode (``claude -p --output-format stream-json``)."""

    name = AgentType.CLAUDE_CODE.value
    display_name = "Claude Code"

    def build_command(self, context: AgentContext) -> List[str]:
        command = [
            self.cli_path,
            "-p",
            context.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(context.config.max_turns),
            "--permission-mode",
            "bypassPermissions",
        ]
        if context.resume_session_id:
            command += ["--resume", context.resume_session_id]
        if context.config.model:
            command += ["--model", context.config.model]
        return command

    def session_dir(self, workspace_dir: str) -> Optional[Path]:
        return self.home / ".claude" / "projects" / workspace_dir.replace("/", "-")

    def handle_event(
        self, state: StreamState, event: Dict[str, Any], context: AgentContext
    ) -> None:
        event_type = event.get("type")

        if event_type == "system" and event.get("subtype") == "init":
            state.session_id = event.get("session_id") or state.session_id
            logger.info("Captured agent session", extra={"session_id": state.session_id})
            self._emit(
                context,
                ProgressEventType.THINKING,
                f"{self.display_name} is analyzing the codebase...",
            )

        elif event_type == "assistant":
            state.turn_count += 1
            content = (event.get("message") or {}).get("content") or []
            texts = [c.get("text", "") for c in content if c.get("type") == "text"]
            text = "\n\n".join(t for t in texts if t)
            if text.strip():
                state.texts.append(text)
            tool_uses = [c for c in content if c.get("type") == "tool_use"]
            if tool_uses:
                names = [t.get("name", "") for t in tool_uses]
                self._emit(
                    context,
                    ProgressEventType.TOOL_USE,
                    f"Using tools: {', '.join(names)}",
                    data={
                        "tools": names,
                        "tool_details": [
                            {
                                "name": t.get("name", ""),
                                "context": describe_tool_use(t.get("name", ""), t.get("input")),
                            }
                            for t in tool_uses
                        ],
                    },
                )

        elif event_type == "result":
            state.cost_usd = float(event.get("total_cost_usd") or 0.0)
            state.session_id = state.session_id or event.get("session_id")
            if isinstance(event.get("result"), str):
                state.final_text = event["result"]
            if event.get("subtype") == "error_during_execution" or event.get("is_error") is True:
                state.error = event.get("error") or "An error occurred during execution"

    def get_capabilities(self) -> AgentCapabilities:
        return AgentCapabilities(
            supports_streaming=False,
            supports_session_management=True,
            supported_providers=(AgentProvider.ANTHROPIC,),
            max_context_length=200000,
        )


class OpenCodeStrategy(CliAgentStrategy):
    """OpenCode (``opencode run --format json``), multi-provider."""

    name = AgentType.OPENCODE.value
    display_name = "OpenCode"

    def build_command(self, context: AgentContext) -> List[str]:
        command = [self.cli_path, "run", "--format", "json"]
        provider = context.config.provider or AgentProvider.ANTHROPIC
        if context.config.model:
            command += ["--model", f"{provider.value}/{context.config.model}"]
        command.append(context.prompt)
        return command

    def handle_event(
        self, state: StreamState, event: Dict[str, Any], context: AgentContext
    ) -> None:
        state.session_id = state.session_id or event.get("sessionID")
        part = event.get("part") or {}
        event_type = event.get("type")

        if event_type == "text":
            text = part.get("text", "")
            if text.strip():
                state.texts.append(text)
        elif event_type == "tool_use":
            state.turn_count += 1
            tool = part.get("tool", "")
            self._emit(context, ProgressEventType.TOOL_USE, f"Using tools: {tool}", data={"tools": [tool]})
        elif event_type == "step_finish":
            state.cost_usd += float(part.get("cost") or 0.0)
        elif event_type == "error":
            error = event.get("error") or {}
            if isinstance(error, dict):
                state.error = (error.get("data") or {}).get("message") or error.get("name") or "OpenCode error"
            else:
                state.error = str(error)

    def get_capabilities(self) -> AgentCapabilities:
        return AgentCapabilities(
            supports_streaming=True,
            supports_session_management=False,
            supported_providers=tuple(AgentProvider),
        )
