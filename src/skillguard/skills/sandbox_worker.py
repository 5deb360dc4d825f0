"""Sandbox-Worker: lädt Skill-Code und führt ihn unter Policy aus.

Wird vom Supervisor als eigener Prozess gestartet::

    python -m skillguard.skills.sandbox_worker

Protokoll: zeilenweise JSON über stdin/stdout.

    → {"id": "...", "method": "execute", "params": {...}}
    ← {"id": "...", "ok": true, "result": ...}
    ← {"id": "...", "ok": false, "error": "...", "code": "..."}

Jede eingehende Zeile, auch eine kaputte, erzeugt genau eine Antwort.
Logs gehen nach stderr, stdout gehört dem Protokoll.

Die Policy kommt aus der Umgebung (SKILLGUARD_SANDBOX_*):
  - ENTRY_TIMEOUT_MS: Ausführungs-Timeout (Minimum 250 ms)
  - EGRESS_DENY / EGRESS_ALLOWLIST: Egress-Guard
  - RUNTIME_ALLOWLIST: erlaubte Skill-Kommandos

Ein Timeout bricht nur das Warten ab; der Skill-Code läuft weiter und
kann sich mit späteren Aufrufen überschneiden.
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import json
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, TextIO

from skillguard.config import SandboxSettings
from skillguard.core.errors import (
    CommandBlockedError,
    SandboxError,
    SkillExecutionTimeout,
    SkillGuardError,
)
from skillguard.skills.egress import EgressGuard, EgressPolicy, install_egress_guard
from skillguard.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

DEFAULT_ENTRYPOINT = "skill.py"
DEFAULT_COMMAND = "default"
MIN_TIMEOUT_MS = 250
# Größte akzeptierte Protokollzeile (Bytes)
MAX_LINE_BYTES = 8 * 1024 * 1024


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, SkillGuardError):
        return exc.error_code
    return "SKILL_ERROR"


async def _contain(call: Any) -> Any:
    """Wandelt SystemExit & Co. aus dem Skill in einen normalen Fehler um.

    Ein BaseException aus einem Task würde sonst die Event-Loop verlassen.
    """
    try:
        return await call
    except (asyncio.CancelledError, KeyboardInterrupt):
        raise
    except Exception:
        raise
    except BaseException as exc:
        raise _aborted(exc) from exc


def _aborted(exc: BaseException) -> SandboxError:
    return SandboxError(f"skill raised {exc.__class__.__name__}", error_code="SKILL_ABORTED")


class WorkerRuntime:
    """Zustand des Workers: Policy, Egress-Guard, Modul-Cache.

    ``handle_line`` ist die komplette Request-Verarbeitung und kann
    ohne Subprozess getestet werden.
    """

    def __init__(self, settings: SandboxSettings) -> None:
        self.settings = settings
        self.timeout_ms = max(MIN_TIMEOUT_MS, settings.entry_timeout_ms)
        self.command_allowlist = frozenset(settings.runtime_allowlist)
        self.egress_hosts = list(settings.egress_allowlist)
        self._guard: EgressGuard | None = None
        self._modules: dict[Path, ModuleType] = {}

    def apply_egress_policy(self) -> None:
        if not self.settings.egress_deny or self._guard is not None:
            return
        self._guard = install_egress_guard(EgressPolicy(self.egress_hosts))

    def remove_egress_policy(self) -> None:
        if self._guard is not None:
            self._guard.uninstall()
            self._guard = None

    # ------------------------------------------------------------------
    # Skill laden
    # ------------------------------------------------------------------

    def _load_module(self, source: Path) -> ModuleType:
        cached = self._modules.get(source)
        if cached is not None:
            return cached
        module_name = f"skillguard_skill_{len(self._modules)}_{source.parent.name}"
        spec = importlib.util.spec_from_file_location(module_name, source)
        if spec is None or spec.loader is None:
            raise SandboxError(f"cannot load skill module: {source}", error_code="SKILL_LOAD_FAILED")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        self._modules[source] = module
        return module

    def _resolve_callable(self, params: dict[str, Any]) -> Any:
        skill_path = params.get("skillPath")
        if not skill_path:
            raise SandboxError("skillPath is required", error_code="INVALID_PARAMS")
        entrypoint = params.get("entrypoint") or DEFAULT_ENTRYPOINT
        source = (Path(skill_path) / entrypoint).resolve()
        if not source.is_file():
            raise SandboxError(
                f"skill entrypoint missing: {source}",
                error_code="SKILL_ENTRYPOINT_MISSING",
            )
        module = self._load_module(source)
        execute = getattr(module, "execute", None) or getattr(module, "main", None)
        if not callable(execute):
            raise SandboxError(
                "skill module missing execute function",
                error_code="SKILL_EXPORT_MISSING",
            )
        return execute

    # ------------------------------------------------------------------
    # Ausführung
    # ------------------------------------------------------------------

    async def execute_skill(self, params: dict[str, Any] | None) -> Any:
        params = params or {}
        command = str(params.get("command") or DEFAULT_COMMAND)
        if self.command_allowlist and command not in self.command_allowlist:
            raise CommandBlockedError(
                f'skill command "{command}" blocked by runtime allowlist',
                details={"command": command},
            )
        execute = self._resolve_callable(params)

        payload = params.get("payload")
        if payload is None:
            payload = params.get("input") or {}
        options = {
            "command": command,
            "context": {"allowedEgressHosts": list(self.egress_hosts)},
        }

        if inspect.iscoroutinefunction(execute):
            call = execute(payload, options)
        else:
            call = asyncio.to_thread(execute, payload, options)

        # ensure_future: bei Timeout läuft der Skill weiter, wird aber nicht abgebrochen
        task = asyncio.ensure_future(_contain(call))
        done, _ = await asyncio.wait({task}, timeout=self.timeout_ms / 1000)
        if not done:
            task.add_done_callback(_consume_result)
            raise SkillExecutionTimeout()
        result = task.result()
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=self.timeout_ms / 1000)
        return result

    async def handle_message(self, message: Any) -> dict[str, Any]:
        if not isinstance(message, dict) or not isinstance(message.get("id"), str):
            return {"id": "invalid", "ok": False, "error": "invalid rpc payload"}

        request_id = message["id"]
        method = message.get("method")

        if method == "healthcheck":
            return {"id": request_id, "ok": True, "result": {"ok": True}}

        if method != "execute":
            return {"id": request_id, "ok": False, "error": f"unknown method {method}"}

        try:
            result = await self.execute_skill(message.get("params"))
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except BaseException as exc:
            if isinstance(exc, TimeoutError):
                exc = SkillExecutionTimeout()
            elif not isinstance(exc, Exception):
                exc = _aborted(exc)
            log.warning(
                "skill_sandbox_execute_failed",
                request_id=request_id,
                error=str(exc),
                code=_error_code(exc),
            )
            return {
                "id": request_id,
                "ok": False,
                "error": str(exc) or exc.__class__.__name__,
                "code": _error_code(exc),
            }
        return {"id": request_id, "ok": True, "result": result}

    async def handle_line(self, raw: str | bytes) -> dict[str, Any]:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {"id": "invalid", "ok": False, "error": "invalid rpc payload"}
        return await self.handle_message(message)


def _consume_result(task: asyncio.Future[Any]) -> None:
    # Abgehängte Skill-Tasks: Ergebnis abholen, damit asyncio nicht warnt
    if not task.cancelled() and task.exception() is not None:
        log.debug("skill_sandbox_abandoned_task_failed", error=str(task.exception()))


def encode_response(response: dict[str, Any]) -> str:
    """Serialisiert eine Antwort; nicht serialisierbare Ergebnisse werden Fehler."""
    try:
        return json.dumps(response, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        return json.dumps({
            "id": response.get("id", "invalid"),
            "ok": False,
            "error": f"skill result is not JSON serialisable: {exc}",
            "code": "INVALID_RESULT",
        })


def send(response: dict[str, Any], stream: TextIO | None = None) -> None:
    out = stream or sys.stdout
    out.write(encode_response(response) + "\n")
    out.flush()


async def serve(runtime: WorkerRuntime, stdin: TextIO | None = None) -> None:
    """Liest Requests bis EOF und beantwortet sie nebenläufig."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader),
        stdin or sys.stdin,
    )

    inflight: set[asyncio.Task[None]] = set()

    async def respond(line: bytes) -> None:
        send(await runtime.handle_line(line))

    while True:
        try:
            line = await reader.readline()
        except ValueError:
            # Zeile über dem Limit: Rest verwerfen, Fehler melden
            send({"id": "invalid", "ok": False, "error": "invalid rpc payload"})
            continue
        if not line:
            break
        if not line.strip():
            continue
        task = asyncio.create_task(respond(line))
        inflight.add(task)
        task.add_done_callback(inflight.discard)

    if inflight:
        await asyncio.gather(*inflight, return_exceptions=True)


async def _main() -> None:
    runtime = WorkerRuntime(SandboxSettings.from_env())
    runtime.apply_egress_policy()
    log.info(
        "skill_sandbox_worker_started",
        timeout_ms=runtime.timeout_ms,
        egress_deny=runtime.settings.egress_deny,
        runtime_allowlist=sorted(runtime.command_allowlist),
    )
    await serve(runtime)


def main() -> int:
    setup_logging(level="INFO", console=True)
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        return 0
    except Exception as exc:
        log.exception("skill_sandbox_worker_fatal")
        send({"id": "fatal", "ok": False, "error": str(exc), "code": _error_code(exc)})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
