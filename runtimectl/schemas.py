import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
MAX_ID_LEN = 64
TEMPLATE_VAR_RE = re.compile(r"\{([a-z_][a-z0-9_]*)\}")
# Shared by config validation and command interpolation.
TEMPLATE_VARS = frozenset(
    {"source", "port", "host", "backend_args", "backend_env", "model_id", "host_id", "backend_id"}
)
SCHEMA_VERSION = 1

HostTransport = Literal["local", "ssh"]
BackendType = Literal["vulkan", "rocm", "cuda", "metal", "cpu", "custom"]
Policy = Union[Literal["any"], List[str]]

_STRICT = {"extra": "forbid", "strict": True, "protected_namespaces": ()}


def unknown_template_vars(template: str) -> List[str]:
    return [name for name in TEMPLATE_VAR_RE.findall(template or "") if name not in TEMPLATE_VARS]


def _check_template(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    unknown = unknown_template_vars(value)
    if unknown:
        raise ValueError(f"unknown template variable {{{unknown[0]}}}")
    return value


def _check_id(value: str) -> str:
    if len(value) > MAX_ID_LEN or not ID_RE.match(value):
        raise ValueError("invalid id format")
    return value


class HostConnection(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    key_path: Optional[str] = None
    password: Optional[str] = None

    # *_ref keys are let through here and reported by the store.
    model_config = {"extra": "allow", "strict": True}

    @model_validator(mode="after")
    def _only_ref_extras(self) -> "HostConnection":
        for key in (self.model_extra or {}):
            if not key.endswith("_ref"):
                raise ValueError(f'unknown key "{key}"')
        return self

    def secret_refs(self) -> List[str]:
        return sorted(self.model_extra or {})


class HostCapabilities(BaseModel):
    gpu: List[str]
    backends: List[str]
    vram_gb: Optional[float] = None

    model_config = _STRICT


class HostHealth(BaseModel):
    check_cmd: str
    timeout_sec: Optional[float] = None

    model_config = _STRICT

    @field_validator("check_cmd")
    @classmethod
    def _validate_cmd(cls, value):
        return _check_template(value)


class HostModelControl(BaseModel):
    stop_cmd: str
    cleanup_cmd: Optional[str] = None

    model_config = _STRICT

    @field_validator("stop_cmd", "cleanup_cmd")
    @classmethod
    def _validate_cmds(cls, value):
        return _check_template(value)


class RuntimeHost(BaseModel):
    id: str
    display_name: str
    enabled: bool
    transport: HostTransport
    connection: HostConnection
    capabilities: HostCapabilities
    health: HostHealth
    model_control: HostModelControl

    model_config = _STRICT

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value):
        return _check_id(value)


class RuntimeBackend(BaseModel):
    id: str
    display_name: str
    enabled: bool
    type: BackendType
    host_filters: Policy
    apply_cmd: Optional[str] = None
    verify_cmd: Optional[str] = None
    verify_always: Optional[bool] = None
    rollback_cmd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    args: Optional[List[str]] = None

    model_config = _STRICT

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value):
        return _check_id(value)

    @field_validator("apply_cmd", "verify_cmd", "rollback_cmd")
    @classmethod
    def _validate_cmds(cls, value):
        return _check_template(value)

    def allows_host(self, host_id: str) -> bool:
        return self.host_filters == "any" or host_id in self.host_filters


class ModelLaunch(BaseModel):
    start_cmd: str
    probe_cmd: str
    probe_timeout_sec: Optional[float] = None
    probe_interval_ms: Optional[float] = None

    model_config = _STRICT

    @field_validator("start_cmd", "probe_cmd")
    @classmethod
    def _validate_cmds(cls, value):
        return _check_template(value)


class ModelRuntimeDefaults(BaseModel):
    port: Optional[int] = None
    context_window: Optional[int] = None
    max_tokens: Optional[int] = None

    model_config = _STRICT


class RuntimeModel(BaseModel):
    id: str
    display_name: str
    enabled: bool
    source: str
    host_policy: Policy
    backend_policy: Policy
    launch: ModelLaunch
    runtime_defaults: Optional[ModelRuntimeDefaults] = None

    model_config = _STRICT

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value):
        return _check_id(value)


class RuntimesConfig(BaseModel):
    schema_version: Literal[1]
    hosts: List[RuntimeHost]
    backends: List[RuntimeBackend]
    models: List[RuntimeModel]

    # Unknown top-level keys are tolerated (and warned about by the store).
    model_config = {"extra": "allow", "strict": True, "protected_namespaces": ()}

    @model_validator(mode="after")
    def _check_references(self) -> "RuntimesConfig":
        host_ids = set()
        for host in self.hosts:
            if host.id in host_ids:
                raise ValueError(f'hosts: duplicate id "{host.id}"')
            host_ids.add(host.id)
        backend_ids = set()
        for backend in self.backends:
            if backend.id in backend_ids:
                raise ValueError(f'backends: duplicate id "{backend.id}"')
            backend_ids.add(backend.id)
            if backend.host_filters != "any":
                for host_id in backend.host_filters:
                    if host_id not in host_ids:
                        raise ValueError(f'backends[{backend.id}].host_filters: unknown host id "{host_id}"')
        model_ids = set()
        for model in self.models:
            if model.id in model_ids:
                raise ValueError(f'models: duplicate id "{model.id}"')
            model_ids.add(model.id)
            if model.host_policy != "any":
                for host_id in model.host_policy:
                    if host_id not in host_ids:
                        raise ValueError(f'models[{model.id}].host_policy: unknown host id "{host_id}"')
            if model.backend_policy != "any":
                for backend_id in model.backend_policy:
                    if backend_id not in backend_ids:
                        raise ValueError(f'models[{model.id}].backend_policy: unknown backend id "{backend_id}"')
        return self

    def host(self, host_id: str) -> Optional[RuntimeHost]:
        return next((h for h in self.hosts if h.id == host_id), None)

    def backend(self, backend_id: str) -> Optional[RuntimeBackend]:
        return next((b for b in self.backends if b.id == backend_id), None)

    def model(self, model_id: str) -> Optional[RuntimeModel]:
        return next((m for m in self.models if m.id == model_id), None)


def empty_config() -> Dict[str, Any]:
    return {"schema_version": SCHEMA_VERSION, "hosts": [], "backends": [], "models": []}


class ActiveRuntime(BaseModel):
    """What is currently deployed; absent file means nothing is running."""

    model_id: str = Field(alias="modelId")
    backend_id: Optional[str] = Field(default=None, alias="backendId")
    host_ids: List[str] = Field(alias="hostIds")
    healthy: bool
    started_at: str = Field(alias="startedAt")
    pid: Optional[int] = None
    endpoint: Optional[str] = None

    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RuntimeLock(BaseModel):
    pid: int
    started_at: str = Field(default="", alias="startedAt")
    model: str = ""

    model_config = {"populate_by_name": True, "protected_namespaces": ()}
