import asyncio
import logging
import math
import os
import shlex
import signal
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_DEFAULT_TIMEOUT_S = 5.0
KILL_GRACE_S = 2.0
_DRAIN_MIN_S = 0.25


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    def to_dict(self) -> Dict[str, Any]:
        return {"exitCode": self.exit_code, "stdout": self.stdout, "stderr": self.stderr}


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def ssh_target(host: Any) -> Optional[str]:
    conn = _field(host, "connection")
    address = _field(conn, "host")
    if not address:
        return None
    user = _field(conn, "user")
    return f"{user}@{address}" if user else str(address)


def build_ssh_argv(host: Any, command: str, timeout_s: float) -> List[str]:
    conn = _field(host, "connection")
    target = ssh_target(host)
    if not target:
        raise ValueError(f"SSH host missing for {_field(host, 'id')}")
    argv = [
        "ssh",
        "-o",
        "BatchMode=yes",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        f"ConnectTimeout={max(1, math.ceil(timeout_s))}",
    ]
    key_path = _field(conn, "key_path")
    if key_path:
        argv.extend(["-i", str(key_path)])
    port = _field(conn, "port")
    if port and int(port) != 22:
        argv.extend(["-p", str(port)])
    argv.extend([target, command])
    return argv


class HostCommandRunner:
    """Run shell commands locally or over SSH with a uniform result shape."""

    def __init__(self, *, sudo_password_env: str = "RUNTIMECTL_SUDO_PASSWORD") -> None:
        self.sudo_password_env = sudo_password_env

    async def _spawn(
        self,
        argv: List[str],
        timeout_s: float,
        stdin_text: Optional[str] = None,
        kill_grace_s: Optional[float] = None,
    ) -> CommandResult:
        grace = KILL_GRACE_S if kill_grace_s is None else max(0.0, kill_grace_s)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            return CommandResult(exit_code=1, stderr=str(exc))
        payload = stdin_text.encode("utf-8") if stdin_text is not None else None
        communicate = asyncio.ensure_future(proc.communicate(payload))
        try:
            out, err = await asyncio.wait_for(asyncio.shield(communicate), timeout=max(0.001, timeout_s))
        except asyncio.TimeoutError:
            await self._terminate(proc, grace)
            try:
                out, err = await asyncio.wait_for(communicate, timeout=max(grace, _DRAIN_MIN_S))
            except asyncio.TimeoutError:
                communicate.cancel()
                out, err = b"", b""
            stderr = _decode(err).rstrip()
            note = f"Command timed out after {timeout_s:g}s"
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(out),
                stderr=f"{stderr}\n{note}".strip(),
            )
        code = proc.returncode if proc.returncode is not None else 1
        return CommandResult(exit_code=code, stdout=_decode(out), stderr=_decode(err))

    async def _terminate(self, proc: "asyncio.subprocess.Process", grace_s: float = KILL_GRACE_S) -> None:
        # The child leads its own session, so the whole group goes down with it.
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_s)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM; sending SIGKILL", proc.pid)
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    async def run_local(
        self,
        command: str,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        stdin_text: Optional[str] = None,
        *,
        kill_grace_s: Optional[float] = None,
    ) -> CommandResult:
        return await self._spawn(["bash", "-c", command], timeout_s, stdin_text, kill_grace_s)

    async def run_on_host(
        self,
        host: Any,
        command: str,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        stdin_text: Optional[str] = None,
        *,
        kill_grace_s: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` on ``host``; ``kill_grace_s`` bounds the SIGTERM wait after a timeout."""
        if _field(host, "transport") == "local":
            return await self.run_local(command, timeout_s, stdin_text, kill_grace_s=kill_grace_s)
        try:
            argv = build_ssh_argv(host, command, timeout_s)
        except ValueError as exc:
            return CommandResult(exit_code=1, stderr=str(exc))
        return await self._spawn(argv, timeout_s, stdin_text, kill_grace_s)

    async def run_sudo_on_host(self, host: Any, command: str, timeout_s: float = _DEFAULT_TIMEOUT_S) -> CommandResult:
        password = _field(_field(host, "connection"), "password") or os.getenv(self.sudo_password_env)
        if password:
            sudo_cmd = f"sudo -S -p '' bash -c {shlex.quote(command)}"
            return await self.run_on_host(host, sudo_cmd, timeout_s, stdin_text=f"{password}\n")
        sudo_cmd = f"sudo -n bash -c {shlex.quote(command)}"
        return await self.run_on_host(host, sudo_cmd, timeout_s)


def _decode(raw: Optional[bytes]) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")
