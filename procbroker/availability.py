import asyncio
import json
import logging
import os
import re
import subprocess
import time
from typing import Iterable, List, Mapping, Optional

from .env import DEFAULT_SHADOWED_ENV_VARS, sanitize_environment
from .schemas import AuthStatus, AvailabilityStatus, InstalledStatus

logger = logging.getLogger("uvicorn.error")

_AUTH_TEXT_RE = re.compile(r"Authenticated as:\s*(.+)", re.IGNORECASE)
NOT_FOUND_MESSAGE = "Claude CLI not found. Install it and make sure it is on PATH"


def _parse_auth_output(raw: str) -> AuthStatus:
    text = (raw or "").strip()
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        logged_in = payload.get("loggedIn")
        if logged_in is None:
            logged_in = payload.get("authenticated")
        account = payload.get("email") or payload.get("account") or payload.get("accountEmail")
        if logged_in:
            return AuthStatus(authenticated=True, account=str(account) if account else None)
        return AuthStatus(authenticated=False, error="Not authenticated")
    match = _AUTH_TEXT_RE.search(text)
    if match:
        return AuthStatus(authenticated=True, account=match.group(1).strip())
    return AuthStatus(authenticated=False, error="Not authenticated")


class AvailabilityChecker:
    """Cached probes of the CLI's version and login state. Advisory only."""

    def __init__(
        self,
        cli_path: str = "claude",
        *,
        ttl_s: float = 5.0,
        command_timeout_s: float = 5.0,
        shadowed_env_vars: Iterable[str] = DEFAULT_SHADOWED_ENV_VARS,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.cli_path = cli_path
        self.ttl_s = ttl_s
        self.command_timeout_s = command_timeout_s
        self.shadowed_env_vars = tuple(shadowed_env_vars)
        self._environ = environ
        self._installed: Optional[InstalledStatus] = None
        self._installed_at = 0.0
        self._auth: Optional[AuthStatus] = None
        self._auth_at = 0.0
        self._lock = asyncio.Lock()

    def _fresh(self, checked_at: float) -> bool:
        return (time.monotonic() - checked_at) < self.ttl_s

    def invalidate(self) -> None:
        self._installed = None
        self._auth = None

    async def _run_cli(self, args: List[str]) -> str:
        env = sanitize_environment(self._environ if self._environ is not None else os.environ, self.shadowed_env_vars)

        def _runner() -> str:
            return subprocess.check_output(
                [self.cli_path, *args],
                text=True,
                stderr=subprocess.STDOUT,
                timeout=self.command_timeout_s,
                encoding="utf-8",
                errors="replace",
                env=env,
            )

        return await asyncio.to_thread(_runner)

    def _describe_failure(self, exc: Exception) -> str:
        if isinstance(exc, FileNotFoundError):
            return NOT_FOUND_MESSAGE
        if isinstance(exc, subprocess.CalledProcessError):
            output = (exc.output or "").strip() if isinstance(exc.output, str) else ""
            return f"exited with code {exc.returncode}: {output or 'Unknown error'}"
        if isinstance(exc, subprocess.TimeoutExpired):
            return f"timed out after {self.command_timeout_s:g}s"
        return str(exc) or exc.__class__.__name__

    async def _probe_installed(self) -> InstalledStatus:
        try:
            raw = await self._run_cli(["--version"])
        except (OSError, subprocess.SubprocessError) as exc:
            error = self._describe_failure(exc)
            logger.warning("Claude CLI version check failed: %s", error)
            return InstalledStatus(installed=False, error=error)
        return InstalledStatus(installed=True, version=raw.strip() or None)

    async def _probe_auth(self) -> AuthStatus:
        try:
            raw = await self._run_cli(["auth", "status"])
        except subprocess.CalledProcessError as exc:
            # Some CLI builds report "not logged in" through a non-zero exit.
            output = exc.output if isinstance(exc.output, str) else ""
            parsed = _parse_auth_output(output)
            if parsed.authenticated:
                return parsed
            return AuthStatus(authenticated=False, error=self._describe_failure(exc))
        except (OSError, subprocess.SubprocessError) as exc:
            error = self._describe_failure(exc)
            logger.warning("Claude CLI auth check failed: %s", error)
            return AuthStatus(authenticated=False, error=error)
        return _parse_auth_output(raw)

    async def check_installed(self, force: bool = False) -> InstalledStatus:
        async with self._lock:
            if not force and self._installed is not None and self._fresh(self._installed_at):
                return self._installed
            self._installed = await self._probe_installed()
            self._installed_at = time.monotonic()
            return self._installed

    async def _cached_auth(self, force: bool) -> AuthStatus:
        async with self._lock:
            if not force and self._auth is not None and self._fresh(self._auth_at):
                return self._auth
            self._auth = await self._probe_auth()
            self._auth_at = time.monotonic()
            return self._auth

    async def check_authenticated(self, force: bool = False) -> AuthStatus:
        installed = await self.check_installed(force=force)
        if not installed.installed:
            return AuthStatus(authenticated=False, error="CLI not available")
        return await self._cached_auth(force)

    async def snapshot(self, force: bool = False) -> AvailabilityStatus:
        installed = await self.check_installed(force=force)
        if not installed.installed:
            return AvailabilityStatus(installed=False, checked_at=time.time(), error=installed.error)
        auth = await self._cached_auth(force)
        return AvailabilityStatus(
            installed=True,
            version=installed.version,
            authenticated=auth.authenticated,
            account=auth.account,
            checked_at=time.time(),
            error=auth.error,
        )
