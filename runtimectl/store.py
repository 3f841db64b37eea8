import json
import logging
import os
import re
import shlex
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from .schemas import TEMPLATE_VAR_RE, TEMPLATE_VARS, RuntimesConfig, empty_config


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
CONFIG_FILE_MODE = 0o600
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TOP_LEVEL_KEYS = {"schema_version", "hosts", "backends", "models"}


class RuntimeConfigError(ValueError):
    """Raised when a runtimes catalog fails validation."""


class TemplateError(RuntimeConfigError):
    pass


def _format_validation_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = [str(part) for part in err.get("loc") or ()]
    msg = str(err.get("msg") or "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    if err.get("type") == "extra_forbidden" and loc:
        parent = ".".join(loc[:-1]) or "runtimes"
        return f'{parent}: unknown key "{loc[-1]}"'
    where = ".".join(loc)
    return f"{where}: {msg}" if where else msg


def validate(data: Union[RuntimesConfig, Mapping[str, Any]]) -> RuntimesConfig:
    """Validate a raw catalog; raises RuntimeConfigError on the first violation."""
    if isinstance(data, RuntimesConfig):
        data = data.model_dump(mode="json", exclude_none=True)
    if not isinstance(data, Mapping):
        raise RuntimeConfigError("runtimes: expected object")
    for key in data:
        if key not in _TOP_LEVEL_KEYS:
            logger.warning('runtimes: unknown top-level key "%s" ignored', key)
    if data.get("schema_version") != 1 or isinstance(data.get("schema_version"), bool):
        raise RuntimeConfigError("runtimes.schema_version: must be 1")
    try:
        payload = json.dumps(dict(data))
    except (TypeError, ValueError) as exc:
        raise RuntimeConfigError(f"runtimes: not JSON-serializable ({exc})") from exc
    try:
        # JSON mode: strict scalars, nested objects still build models.
        config = RuntimesConfig.model_validate_json(payload)
    except ValidationError as exc:
        raise RuntimeConfigError(_format_validation_error(exc)) from exc
    for host in config.hosts:
        refs = host.connection.secret_refs()
        if refs:
            logger.warning(
                "host %s: secret references (%s) are not yet supported; use inline values",
                host.id,
                ", ".join(refs),
            )
    return config


def redact(config: RuntimesConfig) -> RuntimesConfig:
    """Deep copy for display with connection secrets replaced."""
    clone = config.model_copy(deep=True)
    for host in clone.hosts:
        if host.connection.password is not None:
            host.connection.password = REDACTED
        if host.connection.key_path is not None:
            host.connection.key_path = REDACTED
    return clone


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(shlex.quote(str(item)) for item in value)
    if isinstance(value, Mapping):
        parts = []
        for key, val in value.items():
            if not _ENV_KEY_RE.match(str(key)):
                raise TemplateError(f"invalid environment variable name {key!r}")
            parts.append(f"{key}={shlex.quote(str(val))}")
        return " ".join(parts)
    return shlex.quote(str(value))


def interpolate(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute whitelisted {var} tokens with shell-escaped values."""

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in TEMPLATE_VARS:
            raise TemplateError(f"unknown template variable {{{key}}}")
        return _render_value(variables.get(key))

    return TEMPLATE_VAR_RE.sub(_sub, template)


def atomic_write_text(path: Path, text: str, mode: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _dump(config: RuntimesConfig) -> str:
    return json.dumps(config.model_dump(mode="json", exclude_none=True), indent=2) + "\n"


def bootstrap(path: Path) -> bool:
    if path.exists():
        return False
    atomic_write_text(path, json.dumps(empty_config(), indent=2) + "\n", mode=CONFIG_FILE_MODE)
    logger.info("Created empty runtimes catalog at %s", path)
    return True


def load_runtimes(path: Path) -> RuntimesConfig:
    bootstrap(path)
    raw = path.read_text(encoding="utf-8")
    if not raw.strip():
        return validate(empty_config())
    try:
        data: Dict[str, Any] = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeConfigError(f"{path}: invalid JSON ({exc.msg} at line {exc.lineno})") from exc
    return validate(data)


def save_runtimes(config: Union[RuntimesConfig, Mapping[str, Any]], path: Path) -> RuntimesConfig:
    validated = validate(config)
    atomic_write_text(path, _dump(validated), mode=CONFIG_FILE_MODE)
    os.chmod(path, CONFIG_FILE_MODE)
    return validated
