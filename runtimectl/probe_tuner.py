"""Best-effort probe timeout tuning from a model's apparent size.

The size is guessed from the source string (parameter count and quantization
tag), not measured. It only ever loosens probe timing for models that did not
set both probe fields explicitly, and can be switched off in settings.
"""

import re
from typing import Optional, Tuple

from .planner import PlanOutput, PlanResult, StepKind
from .schemas import RuntimesConfig


OVERHEAD_FACTOR = 1.08
_PARAMS_RE = re.compile(r"(?<![a-z0-9.])(\d+(?:\.\d+)?)b(?![a-z])")
_QUANT_BITS = (
    (re.compile(r"q8"), 8),
    (re.compile(r"q6"), 6),
    (re.compile(r"q4|mxfp4|fp4"), 4),
    (re.compile(r"q3"), 3),
    (re.compile(r"q2"), 2),
)
DEFAULT_BITS = 16

# (max GiB, timeout_sec, interval_ms)
SIZE_TIERS = (
    (10.0, 120, 1000),
    (40.0, 300, 1200),
    (80.0, 900, 2000),
    (140.0, 3600, 5000),
)
LARGEST_TIER = (5400, 5000)


def bits_per_weight(source: str) -> int:
    lower = (source or "").lower()
    for pattern, bits in _QUANT_BITS:
        if pattern.search(lower):
            return bits
    return DEFAULT_BITS


def estimate_model_size_gib(source: str) -> Optional[float]:
    match = _PARAMS_RE.search((source or "").lower())
    if not match:
        return None
    try:
        params_b = float(match.group(1))
    except ValueError:
        return None
    if params_b <= 0:
        return None
    return params_b * (bits_per_weight(source) / 8.0) * OVERHEAD_FACTOR


def probe_defaults_for_size(size_gib: float) -> Tuple[int, int]:
    for max_gib, timeout_sec, interval_ms in SIZE_TIERS:
        if size_gib <= max_gib:
            return timeout_sec, interval_ms
    return LARGEST_TIER


def apply_dynamic_probe_defaults(result: PlanOutput, config: RuntimesConfig) -> PlanOutput:
    if not isinstance(result, PlanResult):
        return result
    model = config.model(result.model.id)
    if not model:
        return result
    has_timeout = model.launch.probe_timeout_sec is not None
    has_interval = model.launch.probe_interval_ms is not None
    if has_timeout and has_interval:
        return result
    size_gib = estimate_model_size_gib(model.source)
    if size_gib is None:
        return result
    timeout_sec, interval_ms = probe_defaults_for_size(size_gib)
    for step in [*result.steps, *result.fallback_steps]:
        if step.kind is not StepKind.PROBE_HEALTH:
            continue
        if not has_timeout:
            step.timeout_sec = timeout_sec
        if not has_interval:
            step.probe_interval_ms = interval_ms
    return result
