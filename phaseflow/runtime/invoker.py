"""
invoker.py - Run one capability invocation as a supervised external process.

Each invocation spawns its own process from a command template (the
``{capability}`` placeholder is replaced with the capability id), writes the
instruction to its stdin, streams stdout line by line to an optional output
callback, and parses the collected stdout as structured (JSON) output.

Failure modes:
    - spawn failure, timeout        -> error_kind "process"
    - non-zero exit, unparseable    -> error_kind "output"
    - abort() during the session    -> error_kind "aborted"

At most ``max_processes`` capability processes run at once; extra
invocations wait for a slot without blocking the event loop.

Usage:
    from phaseflow.runtime.invoker import CapabilityInvoker

    invoker = CapabilityInvoker(["claude", "--print", "--output-format", "json",
                                 "--skill", "{capability}"])
    result = await invoker.invoke("chapter-writer", "Execute Draft phase.")
    invoker.abort(result.session_id)  # no-op once finished
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .types import InvocationResult, SessionId, generate_session_id, utcnow

logger = logging.getLogger(__name__)

CAPABILITY_PLACEHOLDER = "{capability}"
KILL_GRACE_SECONDS = 5.0
STDOUT_CHUNK_BYTES = 64 * 1024

OutputCallback = Callable[[SessionId, str], None]


class SessionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class _Session:
    id: SessionId
    capability_id: Optional[str] = None
    state: SessionState = SessionState.PENDING
    process: Optional[asyncio.subprocess.Process] = None
    abort_requested: bool = False
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.FAILED, SessionState.ABORTED)


def parse_structured_output(text: str) -> Optional[Dict[str, Any]]:
    """Parse process stdout as structured output.

    The whole output is tried as one JSON document first; otherwise the last
    line holding a JSON object wins (stream-style output). Returns None if
    nothing parses.
    """
    text = text.strip()
    if not text:
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        value = None
    else:
        return value if isinstance(value, dict) else {"result": value}

    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


class CapabilityInvoker:
    """Spawns and supervises capability processes.

    Attributes:
        command: Command template; "{capability}" is substituted per call.
        timeout_seconds: Wall-clock limit per invocation.
        max_processes: Concurrent process slots.
        session_retention: Finished sessions kept for status queries.
    """

    def __init__(
        self,
        command: List[str],
        timeout_seconds: float = 1800,
        max_processes: int = 4,
        session_retention: int = 100,
        cwd: Optional[Path] = None,
    ):
        if not command:
            raise ValueError("Invoker command must not be empty")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self.max_processes = max(1, int(max_processes))
        self.session_retention = session_retention
        self.cwd = cwd
        self._sessions: "OrderedDict[SessionId, _Session]" = OrderedDict()
        self._semaphore: Optional[asyncio.Semaphore] = None

    # =========================================================================
    # Sessions
    # =========================================================================

    def new_session_id(self) -> SessionId:
        """Reserve a session id so it can be aborted before the process starts."""
        session_id = generate_session_id()
        self._sessions[session_id] = _Session(id=session_id)
        return session_id

    def session_state(self, session_id: SessionId) -> Optional[SessionState]:
        session = self._sessions.get(session_id)
        return session.state if session else None

    def active_sessions(self) -> List[SessionId]:
        return [s.id for s in self._sessions.values() if not s.finished]

    def abort(self, session_id: SessionId) -> bool:
        """Terminate a session's process. No-op for unknown or finished sessions.

        Returns:
            True if the session was pending or running.
        """
        session = self._sessions.get(session_id)
        if session is None or session.finished:
            return False

        session.abort_requested = True
        session.abort_event.set()
        process = session.process
        if process is not None and process.returncode is None:
            logger.info("Aborting session %s (pid %s)", session_id, process.pid)
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        else:
            logger.info("Aborting session %s before its process started", session_id)
        return True

    def _finish(self, session: _Session, state: SessionState) -> None:
        session.state = state
        session.finished_at = utcnow()
        session.process = None
        finished = [s.id for s in self._sessions.values() if s.finished]
        for stale in finished[: max(0, len(finished) - self.session_retention)]:
            del self._sessions[stale]

    # =========================================================================
    # Invocation
    # =========================================================================

    def build_argv(self, capability_id: str) -> List[str]:
        return [arg.replace(CAPABILITY_PLACEHOLDER, capability_id) for arg in self.command]

    async def invoke(
        self,
        capability_id: str,
        instruction: str,
        session_id: Optional[SessionId] = None,
        cwd: Optional[Path] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> InvocationResult:
        """Run one capability invocation to completion, abort or timeout."""
        if session_id is None or session_id not in self._sessions:
            session_id = session_id or generate_session_id()
            self._sessions[session_id] = _Session(id=session_id)
        session = self._sessions[session_id]
        session.capability_id = capability_id

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_processes)

        try:
            async with self._semaphore:
                result = await self._run(session, capability_id, instruction, cwd, on_output)
        except BaseException:
            self._kill(session.process)
            self._finish(session, SessionState.ABORTED)
            raise

        if result.success:
            state = SessionState.COMPLETED
        elif result.aborted:
            state = SessionState.ABORTED
        else:
            state = SessionState.FAILED
        self._finish(session, state)
        return result

    async def _run(
        self,
        session: _Session,
        capability_id: str,
        instruction: str,
        cwd: Optional[Path],
        on_output: Optional[OutputCallback],
    ) -> InvocationResult:
        if session.abort_requested:
            return self._aborted(session)

        argv = self.build_argv(capability_id)
        workdir = cwd or self.cwd
        logger.debug("Session %s: spawning %s", session.id, argv[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir) if workdir else None,
            )
        except OSError as e:
            logger.warning("Session %s: failed to spawn %s: %s", session.id, argv[0], e)
            return InvocationResult(
                success=False,
                session_id=session.id,
                error=f"Failed to start capability process: {e}",
                error_kind="process",
            )

        session.process = process
        session.state = SessionState.RUNNING
        if session.abort_requested:
            self._kill(process)

        stdout_lines: List[str] = []
        communicate = asyncio.ensure_future(
            self._communicate(session, process, instruction, stdout_lines, on_output)
        )
        aborted = asyncio.ensure_future(session.abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, aborted},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            aborted.cancel()

        if communicate not in done:
            timed_out = not session.abort_requested
            await self._terminate(process)
            try:
                await asyncio.wait_for(communicate, KILL_GRACE_SECONDS)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                communicate.cancel()
            except (OSError, ValueError) as e:
                logger.debug("Session %s: stream error after stop: %s", session.id, e)
            if timed_out:
                logger.warning(
                    "Session %s: %s timed out after %ss",
                    session.id,
                    capability_id,
                    self.timeout_seconds,
                )
                return InvocationResult(
                    success=False,
                    session_id=session.id,
                    error=f"Capability {capability_id} timed out after {self.timeout_seconds}s",
                    error_kind="process",
                    exit_code=process.returncode,
                )
            return self._aborted(session, process.returncode)

        try:
            stderr_text = communicate.result()
        except (OSError, ValueError) as e:
            logger.warning("Session %s: reading %s output failed: %s", session.id, capability_id, e)
            await self._terminate(process)
            return InvocationResult(
                success=False,
                session_id=session.id,
                error=f"Failed to read output of capability {capability_id}: {e}",
                error_kind="output",
                exit_code=process.returncode,
            )
        exit_code = process.returncode
        if session.abort_requested:
            return self._aborted(session, exit_code)

        if exit_code != 0:
            detail = stderr_text.strip().splitlines()[-1] if stderr_text.strip() else ""
            return InvocationResult(
                success=False,
                session_id=session.id,
                error=f"Capability {capability_id} exited with code {exit_code}"
                + (f": {detail}" if detail else ""),
                error_kind="output",
                exit_code=exit_code,
            )

        output = parse_structured_output("".join(stdout_lines))
        if output is None:
            return InvocationResult(
                success=False,
                session_id=session.id,
                error=f"Capability {capability_id} produced no structured output",
                error_kind="output",
                exit_code=exit_code,
            )

        logger.debug("Session %s: %s completed", session.id, capability_id)
        return InvocationResult(
            success=True, session_id=session.id, output=output, exit_code=exit_code
        )

    async def _communicate(
        self,
        session: _Session,
        process: asyncio.subprocess.Process,
        instruction: str,
        stdout_lines: List[str],
        on_output: Optional[OutputCallback],
    ) -> str:
        """Feed stdin, stream stdout and collect stderr; returns stderr text."""

        async def feed() -> None:
            try:
                process.stdin.write(instruction.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Session %s: process closed stdin early", session.id)
            finally:
                process.stdin.close()

        def emit(raw: bytes) -> None:
            text = raw.decode("utf-8", errors="replace")
            stdout_lines.append(text)
            if on_output is not None:
                try:
                    on_output(session.id, text)
                except Exception as e:
                    logger.warning("Output callback failed for %s: %s", session.id, e)

        async def pump() -> None:
            # Chunked reads: a single JSON result line may exceed StreamReader's line limit.
            pending = bytearray()
            while True:
                chunk = await process.stdout.read(STDOUT_CHUNK_BYTES)
                if not chunk:
                    break
                pending.extend(chunk)
                start = 0
                while True:
                    end = pending.find(b"\n", start)
                    if end < 0:
                        break
                    emit(bytes(pending[start : end + 1]))
                    start = end + 1
                del pending[:start]
            if pending:
                emit(bytes(pending))

        _, _, stderr = await asyncio.gather(feed(), pump(), process.stderr.read())
        await process.wait()
        return stderr.decode("utf-8", errors="replace")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()

    def _kill(self, process: Optional[asyncio.subprocess.Process]) -> None:
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _aborted(self, session: _Session, exit_code: Optional[int] = None) -> InvocationResult:
        logger.info("Session %s aborted", session.id)
        return InvocationResult(
            success=False,
            session_id=session.id,
            error="Invocation aborted",
            error_kind="aborted",
            exit_code=exit_code,
        )
