"""Sandbox-Supervisor: ein langlebiger Worker-Prozess pro Instanz.

Der Supervisor startet ``skillguard.skills.sandbox_worker`` mit drei
Pipes, gibt die Policy per Umgebung weiter und multiplext Aufrufe über
eine Korrelationstabelle (``id`` → Future).

    sandbox = await create_skill_sandbox(settings)
    try:
        result = await sandbox.execute_skill(path, payload={"city": "Berlin"})
    finally:
        await sandbox.close()

Garantien:
  - Antworten werden nur über die ``id`` zugeordnet, keine FIFO-Annahme.
  - Antworten mit unbekannter ``id`` und kaputte Zeilen werden verworfen.
  - Timeout pro Aufruf: ``entry_timeout_ms + 1000`` ms. Danach wird nur
    das Interesse am Ergebnis aufgegeben; der Worker rechnet weiter.
  - ``close()`` weist alle offenen Aufrufe ab und beendet den Worker.
  - Stirbt der Worker, werden die laufenden Aufrufe abgewiesen. Es gibt
    keinen automatischen Neustart, der Aufrufer baut eine neue Sandbox.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib.util
import json
import os
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from skillguard.core.errors import (
    SandboxClosedError,
    SandboxError,
    SandboxExecutionError,
    SandboxTimeoutError,
)
from skillguard.utils.logging import get_logger, log_warning

if TYPE_CHECKING:
    from skillguard.config import SandboxSettings

log = get_logger(__name__)

WORKER_MODULE = "skillguard.skills.sandbox_worker"
TIMEOUT_GRACE_MS = 1_000
CLOSE_TIMEOUT_SECONDS = 5.0
STREAM_LIMIT = 8 * 1024 * 1024

__all__ = ["SkillSandbox", "create_skill_sandbox"]


@dataclass
class _PendingCall:
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle


class SkillSandbox:
    """Host-seitiger Prozess-Manager für einen Sandbox-Worker.

    Args:
        settings: Sandbox-Policy (Timeout, Egress, Runtime-Allowlist).
        logger: Strukturierter Logger (Default: Modul-Logger).
        worker_command: Alternativer Startbefehl für den Worker.
    """

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        logger: Any | None = None,
        worker_command: list[str] | None = None,
    ) -> None:
        self._settings = settings
        self._log = logger or log
        self._worker_command = worker_command
        self._proc: asyncio.subprocess.Process | None = None
        self._pending: dict[str, _PendingCall] = {}
        self._closed = False
        self._exited = False
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def call_timeout(self) -> float:
        """Timeout pro Aufruf in Sekunden."""
        return (self._settings.entry_timeout_ms + TIMEOUT_GRACE_MS) / 1000

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lebenszyklus
    # ------------------------------------------------------------------

    def _command(self) -> list[str]:
        if self._worker_command:
            return list(self._worker_command)
        if importlib.util.find_spec(WORKER_MODULE) is None:
            raise SandboxError(
                f"sandbox worker missing: {WORKER_MODULE}",
                error_code="SANDBOX_WORKER_MISSING",
            )
        return [sys.executable, "-m", WORKER_MODULE]

    async def start(self) -> SkillSandbox:
        if self._proc is not None:
            return self
        command = self._command()
        env = {**os.environ, **self._settings.to_worker_env()}
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            self._log.error("skill_sandbox_process_error", message=str(exc))
            raise SandboxError(
                f"sandbox worker could not be started: {exc}",
                error_code="SANDBOX_SPAWN_FAILED",
            ) from exc

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._log.info(
            "skill_sandbox_started",
            pid=self._proc.pid,
            entry_timeout_ms=self._settings.entry_timeout_ms,
            egress_deny=self._settings.egress_deny,
        )
        return self

    async def close(self) -> None:
        """Weist offene Aufrufe ab, beendet den Worker und wartet auf sein Ende."""
        self._closed = True
        self._reject_all(SandboxClosedError())

        proc = self._proc
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=CLOSE_TIMEOUT_SECONDS)
            except TimeoutError:
                log_warning(self._log, "skill_sandbox_kill", pid=proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        tasks = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if proc is not None and proc.stdin is not None:
            proc.stdin.close()
        self._log.info("skill_sandbox_closed", pid=proc.pid if proc else None)

    async def __aenter__(self) -> SkillSandbox:
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Öffentliche Methoden
    # ------------------------------------------------------------------

    async def execute_skill(
        self,
        skill_path: Path | str,
        *,
        entrypoint: str | None = None,
        payload: dict[str, Any] | None = None,
        command: str | None = None,
    ) -> Any:
        """Führt einen Skill im Worker aus und gibt sein Ergebnis zurück.

        Raises:
            SandboxExecutionError: Der Worker meldet einen Fehler
                (Policy, Timeout, Skill-Exception). ``error_code`` kommt
                aus dem Worker.
            SandboxTimeoutError: Keine Antwort innerhalb des Timeouts.
            SandboxClosedError: Sandbox wurde geschlossen.
        """
        params: dict[str, Any] = {"skillPath": str(skill_path)}
        if entrypoint is not None:
            params["entrypoint"] = entrypoint
        if payload is not None:
            params["payload"] = payload
        if command is not None:
            params["command"] = command
        return await self._send("execute", params)

    async def healthcheck(self) -> bool:
        result = await self._send("healthcheck")
        return result is not None

    # ------------------------------------------------------------------
    # Protokoll
    # ------------------------------------------------------------------

    async def _send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if self._closed:
            raise SandboxClosedError()
        if self._exited:
            raise SandboxError("sandbox process exited", error_code="SANDBOX_PROCESS_EXITED")
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise SandboxError("sandbox not started", error_code="SANDBOX_NOT_STARTED")

        request_id = uuid.uuid4().hex
        message: dict[str, Any] = {"id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        frame = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        timer = loop.call_later(self.call_timeout, self._expire, request_id)
        self._pending[request_id] = _PendingCall(future=future, timer=timer)

        try:
            proc.stdin.write(frame)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._settle(
                request_id,
                error=SandboxError(f"sandbox stdin closed: {exc}", error_code="SANDBOX_PIPE_CLOSED"),
            )

        try:
            return await future
        finally:
            # Abgebrochene Aufrufer: Eintrag und Timer aufräumen
            entry = self._pending.pop(request_id, None)
            if entry is not None:
                entry.timer.cancel()

    def _settle(
        self,
        request_id: str,
        *,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(result)
        return True

    def _expire(self, request_id: str) -> None:
        self._settle(
            request_id,
            error=SandboxTimeoutError(
                f"sandbox timeout for {request_id}",
                details={"timeout_seconds": self.call_timeout},
            ),
        )

    def _reject_all(self, error: SandboxError) -> None:
        for request_id in list(self._pending):
            self._settle(request_id, error=error)

    def _dispatch_line(self, line: str | bytes) -> None:
        """Ordnet eine Antwortzeile ihrem offenen Aufruf zu."""
        try:
            response = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._log.debug("skill_sandbox_malformed_frame")
            return
        if not isinstance(response, dict):
            self._log.debug("skill_sandbox_malformed_frame")
            return

        request_id = response.get("id")
        if request_id == "fatal":
            self._log.error("skill_sandbox_worker_fatal", error=response.get("error"))
            return
        if not isinstance(request_id, str) or request_id not in self._pending:
            return

        if response.get("ok") is True:
            self._settle(request_id, result=response.get("result"))
        else:
            self._settle(
                request_id,
                error=SandboxExecutionError(
                    str(response.get("error") or "sandbox error"),
                    error_code=str(response.get("code") or "SANDBOX_EXECUTION_FAILED"),
                ),
            )

    async def _read_stdout(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        while True:
            try:
                line = await proc.stdout.readline()
            except ValueError:
                log_warning(self._log, "skill_sandbox_frame_too_large")
                continue
            if not line:
                break
            line = line.strip()
            if line:
                self._dispatch_line(line)

        returncode = await proc.wait()
        if self._closed:
            return
        self._exited = True
        self._log.error(
            "skill_sandbox_process_exited",
            pid=proc.pid,
            returncode=returncode,
            inflight=len(self._pending),
        )
        self._reject_all(
            SandboxError(
                f"sandbox process exited with code {returncode}",
                error_code="SANDBOX_PROCESS_EXITED",
            )
        )

    async def _read_stderr(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stderr is not None
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._log.debug("skill_sandbox_stderr", output=text)


async def create_skill_sandbox(
    settings: SandboxSettings,
    *,
    logger: Any | None = None,
    worker_command: list[str] | None = None,
) -> SkillSandbox | None:
    """Startet eine Sandbox; None, wenn sie in der Konfiguration deaktiviert ist."""
    if not settings.enabled:
        return None
    sandbox = SkillSandbox(settings, logger=logger, worker_command=worker_command)
    return await sandbox.start()
