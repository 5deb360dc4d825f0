"""Egress-Policy im Sandbox-Worker.

Anwendungsseitige Abfangschicht, keine Firewall: umschlossen werden die
Einstiegspunkte, über die Python-Code üblicherweise ins Netz geht:

  - ``urllib.request.urlopen`` (fetch-artiger Aufruf)
  - ``http.client.HTTPConnection.connect`` (Low-Level-Client, inkl. HTTPS)
  - ``httpx.Client.send`` / ``httpx.AsyncClient.send``

Fail-closed: ist ``egress_deny`` aktiv und die Allowlist leer, wird jeder
ausgehende Aufruf blockiert. Ein Ziel ohne erkennbaren Host ebenfalls.
"""

from __future__ import annotations

import functools
import http.client
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import SplitResult, urlsplit

import httpx

from skillguard.core.errors import EgressBlockedError
from skillguard.utils.logging import get_logger

log = get_logger(__name__)

__all__ = [
    "EgressGuard",
    "EgressPolicy",
    "extract_host",
    "install_egress_guard",
]


def _host_from_netloc(value: str) -> str | None:
    value = value.strip()
    if not value:
        return None
    return urlsplit(f"//{value}").hostname


def extract_host(target: Any) -> str | None:
    """Ermittelt den Zielhost eines Aufrufs.

    Unterstützt URL-Strings, ``httpx.URL``/``httpx.Request``,
    ``urllib``-Requests, ``urlsplit``-Ergebnisse sowie Objekte oder
    Dicts mit ``hostname``/``host``/``url``.
    """
    if target is None:
        return None
    if isinstance(target, bytes):
        target = target.decode("utf-8", errors="replace")
    if isinstance(target, str):
        return urlsplit(target.strip()).hostname
    if isinstance(target, httpx.URL):
        return target.host or None
    if isinstance(target, httpx.Request):
        return target.url.host or None
    if isinstance(target, SplitResult):
        return target.hostname
    if isinstance(target, dict):
        for key in ("hostname", "host"):
            if target.get(key):
                return _host_from_netloc(str(target[key]))
        if target.get("url"):
            return extract_host(target["url"])
        return None
    for attr in ("hostname", "host"):
        value = getattr(target, attr, None)
        if isinstance(value, str) and value:
            return _host_from_netloc(value)
    url = getattr(target, "url", None) or getattr(target, "full_url", None)
    if url is not None and url is not target:
        return extract_host(url)
    return None


@dataclass
class EgressPolicy:
    """Allowlist-basierte Egress-Entscheidung."""

    allowlist: Iterable[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.allowlist = frozenset(
            entry.strip().lower() for entry in self.allowlist if entry and entry.strip()
        )

    def is_allowed(self, host: str | None) -> bool:
        if not host or not self.allowlist:
            return False
        return host.lower() in self.allowlist

    def check(self, target: Any) -> str:
        """Gibt den Host zurück oder wirft EgressBlockedError."""
        host = extract_host(target)
        if not self.is_allowed(host):
            log.warning("skill_sandbox_egress_blocked", host=host)
            raise EgressBlockedError(
                f"egress blocked by policy for host {host or '<unknown>'}",
                details={"host": host},
            )
        return host  # type: ignore[return-value]


class EgressGuard:
    """Installierte Wrapper; ``uninstall()`` stellt die Originale wieder her."""

    def __init__(self, policy: EgressPolicy) -> None:
        self.policy = policy
        self._patches: list[tuple[Any, str, Any]] = []

    def _patch(self, owner: Any, name: str, wrapper_factory: Callable[[Any], Any]) -> None:
        original = getattr(owner, name)
        self._patches.append((owner, name, original))
        setattr(owner, name, wrapper_factory(original))

    def install(self) -> EgressGuard:
        policy = self.policy

        def wrap_urlopen(original: Any) -> Any:
            @functools.wraps(original)
            def urlopen(url: Any, *args: Any, **kwargs: Any) -> Any:
                policy.check(url)
                return original(url, *args, **kwargs)

            return urlopen

        def wrap_connect(original: Any) -> Any:
            @functools.wraps(original)
            def connect(self_conn: http.client.HTTPConnection) -> Any:
                # Bei Proxy-Tunneln zählt das eigentliche Ziel
                policy.check({"host": self_conn._tunnel_host or self_conn.host})
                return original(self_conn)

            return connect

        def wrap_send(original: Any) -> Any:
            @functools.wraps(original)
            def send(self_client: httpx.Client, request: httpx.Request, *args: Any, **kwargs: Any) -> Any:
                policy.check(request)
                return original(self_client, request, *args, **kwargs)

            return send

        def wrap_async_send(original: Any) -> Any:
            @functools.wraps(original)
            async def send(
                self_client: httpx.AsyncClient, request: httpx.Request, *args: Any, **kwargs: Any,
            ) -> Any:
                policy.check(request)
                return await original(self_client, request, *args, **kwargs)

            return send

        self._patch(urllib.request, "urlopen", wrap_urlopen)
        self._patch(http.client.HTTPConnection, "connect", wrap_connect)
        self._patch(httpx.Client, "send", wrap_send)
        self._patch(httpx.AsyncClient, "send", wrap_async_send)
        log.info("skill_sandbox_egress_guard_installed", allowlist=sorted(policy.allowlist))
        return self

    def uninstall(self) -> None:
        while self._patches:
            owner, name, original = self._patches.pop()
            setattr(owner, name, original)


def install_egress_guard(policy: EgressPolicy) -> EgressGuard:
    """Installiert die Egress-Wrapper prozessweit."""
    return EgressGuard(policy).install()
