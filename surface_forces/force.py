"""
State shared by the surface energy terms and the registry that creates them.

A ForceContext owns what every term needs besides its own parameters: the
deformable surface, named per-vertex arrays with modification times, the
term's gradient buffer, its weight and its name. Terms compose a context
instead of inheriting from a common base.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Tuple, Type

import numpy as np

from .config import ConfigurationError, parse_float
from .surface import DeformableSurface, next_mtime

logger = logging.getLogger(__name__)


class ForceContext:
    def __init__(self, surface: DeformableSurface, name: str = "", weight: float = 1.0):
        self.surface = surface
        self.name = name
        self.weight = float(weight)
        self._point_data: Dict[str, np.ndarray] = {}
        self._mtimes: Dict[str, int] = {}
        self.gradient = np.zeros((surface.number_of_points, 3), dtype=np.float64)

    @property
    def number_of_points(self) -> int:
        return self.surface.number_of_points

    @property
    def status(self) -> np.ndarray:
        return self.surface.status

    # --------------------------------
    # Named point data
    # --------------------------------
    def add_point_data(self, name: str, components: int = 1, fill: float = 0.0) -> np.ndarray:
        """Allocate (or reallocate when the vertex count changed) a named array."""
        n = self.number_of_points
        shape = (n,) if components == 1 else (n, components)
        data = self._point_data.get(name)
        if data is None or data.shape != shape:
            data = np.full(shape, fill, dtype=np.float64)
            self._point_data[name] = data
            # New arrays are out of date until first computed
            self._mtimes[name] = 0
        return data

    def point_data(self, name: str) -> np.ndarray:
        try:
            return self._point_data[name]
        except KeyError:
            raise KeyError(f"{self.name or 'Force'}: no point data named '{name}'") from None

    def get_point_data(self, name: str) -> Optional[np.ndarray]:
        return self._point_data.get(name)

    def set_point_data(self, name: str, values: np.ndarray) -> None:
        data = self.point_data(name)
        values = np.asarray(values, dtype=np.float64)
        if values.shape != data.shape:
            raise ConfigurationError(
                f"Point data '{name}' has shape {data.shape}, got {values.shape}"
            )
        data[...] = values
        self.touch(name)

    def point_data_names(self) -> List[str]:
        return list(self._point_data)

    def touch(self, name: str) -> None:
        self._mtimes[name] = next_mtime()

    def is_up_to_date(self, name: str) -> bool:
        """True when the named array was computed after the surface last moved."""
        return name in self._point_data and self._mtimes.get(name, 0) >= self.surface.mtime

    # --------------------------------
    # Gradient
    # --------------------------------
    def reset_gradient(self) -> np.ndarray:
        n = self.number_of_points
        if self.gradient.shape != (n, 3):
            self.gradient = np.zeros((n, 3), dtype=np.float64)
        else:
            self.gradient.fill(0.0)
        return self.gradient

    def accumulate_gradient(self, buffer: np.ndarray, weight: float) -> None:
        """Add weight * gradient into an optimizer buffer of N*3 or (N, 3) values."""
        n = self.number_of_points
        if buffer.size != 3 * n:
            raise ConfigurationError(f"Gradient buffer has {buffer.size} values, expected {3 * n}")
        if n == 0:
            return
        view = buffer if buffer.shape == (n, 3) else buffer.reshape(n, 3)
        if not np.shares_memory(view, buffer):
            raise ConfigurationError("Gradient buffer must be contiguous or shaped (N, 3)")
        view += weight * self.gradient

    # --------------------------------
    # Parameters
    # --------------------------------
    def set_parameter(self, name: str, value: str) -> Optional[bool]:
        if name == "Weight":
            ok, weight = parse_float(value)
            if ok:
                self.weight = weight
            return ok
        if name == "Name":
            self.name = str(value)
            return True
        return None

    def parameters(self) -> List[Tuple[str, str]]:
        return [("Name", self.name), ("Weight", f"{self.weight:g}")]


class EnergyTerm(Protocol):
    KEY: str
    context: ForceContext

    def initialize(self) -> None: ...

    def update(self, gradient: bool = True) -> None: ...

    def evaluate(self) -> float: ...

    def evaluate_gradient(self, buffer: np.ndarray, step: float, weight: float) -> None: ...

    def set_parameter(self, name: str, value: str) -> bool: ...

    def parameters(self) -> List[Tuple[str, str]]: ...


# --------------------------------
# Registry
# --------------------------------
_REGISTRY: Dict[str, Type] = {}


def register_energy_term(cls: Type) -> Type:
    """Class decorator to register an energy term by its KEY."""
    key = getattr(cls, "KEY", None)
    if not key:
        raise ValueError(f"{cls.__name__} must define KEY")
    _REGISTRY[key] = cls
    return cls


def create_energy_term(key: str, *args, **kwargs):
    cls = _REGISTRY.get(key)
    if not cls:
        raise KeyError(f"No energy term registered for key '{key}'")
    return cls(*args, **kwargs)


def list_energy_terms() -> List[str]:
    return list(_REGISTRY.keys())


def apply_parameters(term, params: Dict[str, str]) -> None:
    """Set string parameters on a term, raising on the first rejected key."""
    for key, value in params.items():
        if not term.set_parameter(key, value):
            raise ConfigurationError(f"Invalid value for parameter '{key}': {value!r}")
