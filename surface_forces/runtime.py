"""
Process-wide Taichi runtime handling.

Kernels in this package are compiled lazily on first launch, so the runtime
only has to be initialized before the first force/estimator is constructed.
The backend is picked from the TAICHI_ARCH environment variable.
"""

from __future__ import annotations

import logging
import os

import taichi as ti

logger = logging.getLogger(__name__)

_ARCHS = {
    "cpu": ti.cpu,
    "gpu": ti.gpu,
    "cuda": ti.cuda,
    "vulkan": ti.vulkan,
    "metal": ti.metal,
}

_TAICHI_INITIALIZED = False


def ensure_taichi_initialized() -> None:
    """Lazily initialize Taichi (f64 default, IEEE float semantics)."""
    global _TAICHI_INITIALIZED
    if _TAICHI_INITIALIZED:
        return
    arch_name = os.environ.get("TAICHI_ARCH", "cpu").strip().lower()
    if arch_name not in _ARCHS:
        raise ValueError(
            f"Unsupported TAICHI_ARCH '{arch_name}', expected one of {sorted(_ARCHS)}"
        )
    kwargs = dict(
        arch=_ARCHS[arch_name],
        default_fp=ti.f64,
        fast_math=False,
        debug=False,
        kernel_profiler=False,
        log_level=ti.ERROR,
    )
    mem_frac = os.environ.get("TAICHI_MEM_FRACTION")
    if mem_frac and arch_name != "cpu":
        try:
            kwargs["device_memory_fraction"] = float(mem_frac)
        except ValueError:
            logger.warning(f"Ignoring invalid TAICHI_MEM_FRACTION={mem_frac!r}")
    ti.init(**kwargs)
    _TAICHI_INITIALIZED = True
    logger.debug(f"Taichi initialized (arch={arch_name})")


def reset_taichi() -> None:
    """Release Taichi runtime and allow re-init."""
    global _TAICHI_INITIALIZED
    ti.reset()
    _TAICHI_INITIALIZED = False
