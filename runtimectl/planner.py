from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from .schemas import ActiveRuntime, ModelLaunch, ModelRuntimeDefaults, RuntimeBackend, RuntimeHost, RuntimeModel, RuntimesConfig
from .store import TemplateError, interpolate


DEFAULT_PORT = 8080
DEFAULT_PROBE_TIMEOUT_S = 60
DEFAULT_PROBE_INTERVAL_MS = 1000
STOP_TIMEOUT_S = 30
APPLY_TIMEOUT_S = 30
VERIFY_TIMEOUT_S = 15
START_TIMEOUT_S = 30

PlanMode = Literal["live", "dry-run"]


class StepKind(str, Enum):
    STOP_MODEL = "stop_model"
    APPLY_BACKEND = "apply_backend"
    VERIFY_BACKEND = "verify_backend"
    START_MODEL = "start_model"
    PROBE_HEALTH = "probe_health"


@dataclass
class PlanStep:
    kind: StepKind
    host_id: str
    command: str
    timeout_sec: float
    description: str
    probe_interval_ms: Optional[float] = None
    rollback_cmd: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "host_id": self.host_id,
            "command": self.command,
            "timeout_sec": self.timeout_sec,
            "description": self.description,
        }
        if self.probe_interval_ms is not None:
            data["probe_interval_ms"] = self.probe_interval_ms
        if self.rollback_cmd:
            data["rollback_cmd"] = self.rollback_cmd
        return data


@dataclass
class PlanRequest:
    model_id: str
    host_override: Optional[str] = None
    backend_override: Optional[str] = None
    mode: PlanMode = "live"
    force_restart: bool = False


@dataclass
class ResolvedHost:
    id: str
    display_name: str
    transport: str
    # host/port/user/key_path only; passwords never leave the catalog.
    connection: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_host(cls, host: RuntimeHost) -> "ResolvedHost":
        conn = host.connection.model_dump(include={"host", "port", "user", "key_path"}, exclude_none=True)
        return cls(id=host.id, display_name=host.display_name, transport=host.transport, connection=conn)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "transport": self.transport,
            "connection": dict(self.connection),
        }


@dataclass
class ResolvedBackend:
    id: str
    display_name: str
    type: str
    env: Dict[str, str] = field(default_factory=dict)
    args: List[str] = field(default_factory=list)

    @classmethod
    def from_backend(cls, backend: RuntimeBackend) -> "ResolvedBackend":
        return cls(
            id=backend.id,
            display_name=backend.display_name,
            type=backend.type,
            env=dict(backend.env or {}),
            args=list(backend.args or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "type": self.type,
            "env": dict(self.env),
            "args": list(self.args),
        }


@dataclass
class ResolvedModel:
    id: str
    display_name: str
    source: str
    launch: ModelLaunch
    runtime_defaults: Optional[ModelRuntimeDefaults] = None

    @classmethod
    def from_model(cls, model: RuntimeModel) -> "ResolvedModel":
        return cls(
            id=model.id,
            display_name=model.display_name,
            source=model.source,
            launch=model.launch.model_copy(),
            runtime_defaults=model.runtime_defaults.model_copy() if model.runtime_defaults else None,
        )

    @property
    def port(self) -> int:
        if self.runtime_defaults and self.runtime_defaults.port:
            return self.runtime_defaults.port
        return DEFAULT_PORT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "source": self.source,
            "launch": self.launch.model_dump(exclude_none=True),
            "runtime_defaults": self.runtime_defaults.model_dump(exclude_none=True) if self.runtime_defaults else None,
        }


@dataclass
class PlanResult:
    model: ResolvedModel
    backend: Optional[ResolvedBackend]
    hosts: List[ResolvedHost]
    steps: List[PlanStep]
    reuse: bool = False
    mode: PlanMode = "live"
    # Hosts that only need their previous model stopped.
    stop_hosts: List[ResolvedHost] = field(default_factory=list)
    # Full deployment sequence kept on reuse plans.
    fallback_steps: List[PlanStep] = field(default_factory=list)

    ok = True

    def find_host(self, host_id: str) -> Optional[ResolvedHost]:
        for host in [*self.hosts, *self.stop_hosts]:
            if host.id == host_id:
                return host
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "reuse": self.reuse,
            "mode": self.mode,
            "model": self.model.to_dict(),
            "backend": self.backend.to_dict() if self.backend else None,
            "hosts": [h.to_dict() for h in self.hosts],
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class PlanError:
    code: str
    reason: str

    ok = False

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "code": self.code, "reason": self.reason}


PlanOutput = Union[PlanResult, PlanError]


def _resolve_host(
    request: PlanRequest, model: RuntimeModel, config: RuntimesConfig
) -> Tuple[Optional[RuntimeHost], Optional[PlanError]]:
    if request.host_override:
        host = next((h for h in config.hosts if h.id == request.host_override and h.enabled), None)
        if not host:
            return None, PlanError("NO_ELIGIBLE_HOST", f"Host not found or disabled: {request.host_override}")
        if model.host_policy != "any" and host.id not in model.host_policy:
            return None, PlanError(
                "HOST_POLICY_VIOLATION", f"Host {host.id} violates host policy for model {model.id}"
            )
        return host, None
    if model.host_policy == "any":
        host = next((h for h in config.hosts if h.enabled), None)
    else:
        host = None
        for host_id in model.host_policy:
            candidate = config.host(host_id)
            if candidate and candidate.enabled:
                host = candidate
                break
    if not host:
        return None, PlanError("NO_ELIGIBLE_HOST", f"No eligible host found for model {model.id}")
    return host, None


def _resolve_backend(
    request: PlanRequest, model: RuntimeModel, config: RuntimesConfig, host: RuntimeHost
) -> Tuple[Optional[RuntimeBackend], Optional[PlanError]]:
    if request.backend_override:
        backend = next((b for b in config.backends if b.id == request.backend_override and b.enabled), None)
        if not backend:
            return None, PlanError("BACKEND_NOT_FOUND", f"Backend not found or disabled: {request.backend_override}")
        if not backend.allows_host(host.id):
            return None, PlanError(
                "BACKEND_HOST_MISMATCH", f"Backend {backend.id} is not available on host {host.id}"
            )
        return backend, None
    if model.backend_policy == "any":
        return None, None
    for backend_id in model.backend_policy:
        backend = config.backend(backend_id)
        if backend and backend.enabled and backend.allows_host(host.id):
            return backend, None
    return None, PlanError("BACKEND_NOT_FOUND", f"No eligible backend found for model {model.id}")


def _template_vars(model: RuntimeModel, host: RuntimeHost, backend: Optional[RuntimeBackend]) -> Dict[str, Any]:
    port = DEFAULT_PORT
    if model.runtime_defaults and model.runtime_defaults.port:
        port = model.runtime_defaults.port
    return {
        "source": model.source,
        "port": port,
        "host": host.connection.host or host.id,
        "backend_args": list(backend.args or []) if backend else [],
        "backend_env": dict(backend.env or {}) if backend else {},
        "model_id": model.id,
        "host_id": host.id,
        "backend_id": backend.id if backend else None,
    }


def _stop_step(host: RuntimeHost, variables: Dict[str, Any], description: str) -> Optional[PlanStep]:
    if not host.model_control.stop_cmd:
        return None
    return PlanStep(
        kind=StepKind.STOP_MODEL,
        host_id=host.id,
        command=interpolate(host.model_control.stop_cmd, variables),
        timeout_sec=STOP_TIMEOUT_S,
        description=description,
    )


def _probe_step(model: RuntimeModel, host: RuntimeHost, variables: Dict[str, Any]) -> PlanStep:
    launch = model.launch
    return PlanStep(
        kind=StepKind.PROBE_HEALTH,
        host_id=host.id,
        command=interpolate(launch.probe_cmd, variables),
        timeout_sec=launch.probe_timeout_sec if launch.probe_timeout_sec is not None else DEFAULT_PROBE_TIMEOUT_S,
        probe_interval_ms=(
            launch.probe_interval_ms if launch.probe_interval_ms is not None else DEFAULT_PROBE_INTERVAL_MS
        ),
        description=f"Probe health for {model.id} on {host.id}",
    )


def _build_steps(
    model: RuntimeModel,
    host: RuntimeHost,
    backend: Optional[RuntimeBackend],
    config: RuntimesConfig,
    active: Optional[ActiveRuntime],
) -> Tuple[List[PlanStep], List[RuntimeHost]]:
    variables = _template_vars(model, host, backend)
    steps: List[PlanStep] = []
    stop_hosts: List[RuntimeHost] = []

    for host_id in (active.host_ids if active else []):
        if host_id == host.id:
            continue
        previous = config.host(host_id)
        if not previous:
            continue
        step = _stop_step(previous, _template_vars(model, previous, backend), f"Stop active model on {host_id}")
        if step:
            steps.append(step)
            stop_hosts.append(previous)

    step = _stop_step(host, variables, f"Stop running model on {host.id}")
    if step:
        steps.append(step)

    if backend and backend.apply_cmd:
        steps.append(
            PlanStep(
                kind=StepKind.APPLY_BACKEND,
                host_id=host.id,
                command=interpolate(backend.apply_cmd, variables),
                timeout_sec=APPLY_TIMEOUT_S,
                rollback_cmd=interpolate(backend.rollback_cmd, variables) if backend.rollback_cmd else None,
                description=f"Apply backend {backend.id} on {host.id}",
            )
        )
    if backend and backend.verify_cmd:
        steps.append(
            PlanStep(
                kind=StepKind.VERIFY_BACKEND,
                host_id=host.id,
                command=interpolate(backend.verify_cmd, variables),
                timeout_sec=VERIFY_TIMEOUT_S,
                description=f"Verify backend {backend.id} on {host.id}",
            )
        )
    steps.append(
        PlanStep(
            kind=StepKind.START_MODEL,
            host_id=host.id,
            command=interpolate(model.launch.start_cmd, variables),
            timeout_sec=START_TIMEOUT_S,
            description=f"Start model {model.id} on {host.id}",
        )
    )
    steps.append(_probe_step(model, host, variables))
    return steps, stop_hosts


def _matches_active(
    active: Optional[ActiveRuntime], model: RuntimeModel, host: RuntimeHost, backend: Optional[RuntimeBackend]
) -> bool:
    if not active or not active.healthy:
        return False
    return (
        active.model_id == model.id
        and (active.backend_id or None) == (backend.id if backend else None)
        and list(active.host_ids) == [host.id]
    )


def plan(request: PlanRequest, config: RuntimesConfig, active: Optional[ActiveRuntime] = None) -> PlanOutput:
    """Resolve a model request into an ordered step list. Pure: no I/O, errors are returned."""
    model = next((m for m in config.models if m.id == request.model_id and m.enabled), None)
    if not model:
        return PlanError("MODEL_NOT_FOUND", f"Model not found or disabled: {request.model_id}")

    host, err = _resolve_host(request, model, config)
    if err:
        return err
    backend, err = _resolve_backend(request, model, config, host)
    if err:
        return err

    try:
        steps, stop_hosts = _build_steps(model, host, backend, config, active)
        reuse = not request.force_restart and _matches_active(active, model, host, backend)
        probe = _probe_step(model, host, _template_vars(model, host, backend)) if reuse else None
    except TemplateError as exc:
        return PlanError("TEMPLATE_ERROR", str(exc))

    result = PlanResult(
        model=ResolvedModel.from_model(model),
        backend=ResolvedBackend.from_backend(backend) if backend else None,
        hosts=[ResolvedHost.from_host(host)],
        steps=steps,
        mode=request.mode,
        stop_hosts=[ResolvedHost.from_host(h) for h in stop_hosts],
    )
    if probe is not None:
        result.reuse = True
        result.fallback_steps = steps
        result.steps = [probe]
    return result
