import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil
from pydantic import ValidationError

from .schemas import ActiveRuntime, RuntimeLock
from .store import atomic_write_text


logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def pid_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        # AccessDenied still means the pid exists.
        return psutil.pid_exists(pid)


class ActiveRuntimeStore:
    """Persist the single active-runtime record as one JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[ActiveRuntime]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return ActiveRuntime.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("Ignoring unreadable active runtime file %s", self.path)
            return None

    def save(self, state: ActiveRuntime) -> None:
        atomic_write_text(self.path, json.dumps(state.to_dict(), indent=2) + "\n")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class RuntimeLockFile:
    """Create-exclusive lock file; protects one install directory on one machine."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def try_create(self, model_id: str) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = RuntimeLock(pid=os.getpid(), startedAt=utc_now(), model=model_id)
        try:
            fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload.model_dump_json(by_alias=True))
        return True

    def read(self) -> Optional[RuntimeLock]:
        try:
            raw = self.path.read_text(encoding="utf-8")
            return RuntimeLock.model_validate(json.loads(raw))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValidationError):
            return None

    def age_s(self, lock: Optional[RuntimeLock]) -> Optional[float]:
        if not lock:
            return None
        started = _parse_iso(lock.started_at)
        if started is None:
            return None
        return time.time() - started

    def release(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
