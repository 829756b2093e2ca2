"""
Configuration of the surface forces.

Parameters can be set programmatically (dataclass attributes) or through the
string interface used by configuration files and the command line, where
each force accepts a set of named keys, optionally preceded by one of its
parameter prefixes, e.g. "Edge distance Type = closest maximum".
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import Callable, ClassVar, Dict, List, Optional, Tuple


class ConfigurationError(RuntimeError):
    """Fatal configuration problem detected while setting up a force."""


# --------------------------------
# Enumerations
# --------------------------------
class EdgeType(IntEnum):
    EXTREMUM = 0
    CLOSEST_MINIMUM = 1
    CLOSEST_MAXIMUM = 2
    CLOSEST_EXTREMUM = 3
    STRONGEST_MINIMUM = 4
    STRONGEST_MAXIMUM = 5
    STRONGEST_EXTREMUM = 6
    NEONATAL_WHITE_SURFACE = 7
    NEONATAL_PIAL_SURFACE = 8

    @classmethod
    def from_string(cls, value: str) -> "EdgeType":
        key = value.strip().lower()
        try:
            return _EDGE_TYPE_SPELLINGS[key]
        except KeyError:
            raise ValueError(f"Unknown edge type: {value!r}") from None

    def __str__(self) -> str:
        return _EDGE_TYPE_NAMES[self]


_EDGE_TYPE_SPELLINGS: Dict[str, EdgeType] = {
    "extremum": EdgeType.EXTREMUM,
    "closestminimum": EdgeType.CLOSEST_MINIMUM,
    "closest minimum": EdgeType.CLOSEST_MINIMUM,
    "localminimum": EdgeType.CLOSEST_MINIMUM,
    "local minimum": EdgeType.CLOSEST_MINIMUM,
    "minimum": EdgeType.CLOSEST_MINIMUM,
    "min": EdgeType.CLOSEST_MINIMUM,
    "closestmaximum": EdgeType.CLOSEST_MAXIMUM,
    "closest maximum": EdgeType.CLOSEST_MAXIMUM,
    "localmaximum": EdgeType.CLOSEST_MAXIMUM,
    "local maximum": EdgeType.CLOSEST_MAXIMUM,
    "maximum": EdgeType.CLOSEST_MAXIMUM,
    "max": EdgeType.CLOSEST_MAXIMUM,
    "closestextremum": EdgeType.CLOSEST_EXTREMUM,
    "closest extremum": EdgeType.CLOSEST_EXTREMUM,
    "strongestminimum": EdgeType.STRONGEST_MINIMUM,
    "strongest minimum": EdgeType.STRONGEST_MINIMUM,
    "strongestmaximum": EdgeType.STRONGEST_MAXIMUM,
    "strongest maximum": EdgeType.STRONGEST_MAXIMUM,
    "strongestextremum": EdgeType.STRONGEST_EXTREMUM,
    "strongest extremum": EdgeType.STRONGEST_EXTREMUM,
    "neonatal white surface": EdgeType.NEONATAL_WHITE_SURFACE,
    "neonatal white": EdgeType.NEONATAL_WHITE_SURFACE,
    "neonatal t2-w wm/cgm": EdgeType.NEONATAL_WHITE_SURFACE,
    "neonatal t2-w cgm/wm": EdgeType.NEONATAL_WHITE_SURFACE,
    "neonatal pial surface": EdgeType.NEONATAL_PIAL_SURFACE,
    "neonatal pial": EdgeType.NEONATAL_PIAL_SURFACE,
    "neonatal t2-w cgm/csf": EdgeType.NEONATAL_PIAL_SURFACE,
    "neonatal t2-w csf/cgm": EdgeType.NEONATAL_PIAL_SURFACE,
}

_EDGE_TYPE_NAMES: Dict[EdgeType, str] = {
    EdgeType.EXTREMUM: "Extremum",
    EdgeType.CLOSEST_MINIMUM: "ClosestMinimum",
    EdgeType.CLOSEST_MAXIMUM: "ClosestMaximum",
    EdgeType.CLOSEST_EXTREMUM: "ClosestExtremum",
    EdgeType.STRONGEST_MINIMUM: "StrongestMinimum",
    EdgeType.STRONGEST_MAXIMUM: "StrongestMaximum",
    EdgeType.STRONGEST_EXTREMUM: "StrongestExtremum",
    EdgeType.NEONATAL_WHITE_SURFACE: "Neonatal T2-w WM/cGM",
    EdgeType.NEONATAL_PIAL_SURFACE: "Neonatal T2-w cGM/CSF",
}


def coerce_edge_type(value) -> EdgeType:
    """Accept an EdgeType, its integer value or any recognized spelling."""
    if isinstance(value, EdgeType):
        return value
    if isinstance(value, str):
        return EdgeType.from_string(value)
    try:
        return EdgeType(int(value))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid edge type value: {value!r}") from None


class DistanceMeasure(IntEnum):
    MINIMUM = 0
    NORMAL = 1

    @classmethod
    def from_string(cls, value: str) -> "DistanceMeasure":
        key = value.strip().lower()
        if key in ("minimum", "min", "minimum distance"):
            return cls.MINIMUM
        if key in ("normal", "normal distance"):
            return cls.NORMAL
        raise ValueError(f"Unknown distance measure: {value!r}")

    def __str__(self) -> str:
        return "Minimum" if self is DistanceMeasure.MINIMUM else "Normal"


# --------------------------------
# Value parsers, (ok, value)
# --------------------------------
def parse_float(value: str) -> Tuple[bool, float]:
    text = str(value).strip().lower()
    if text in ("auto", "nan"):
        return True, math.nan
    try:
        return True, float(text)
    except ValueError:
        return False, 0.0


def parse_int(value: str) -> Tuple[bool, int]:
    try:
        return True, int(str(value).strip())
    except ValueError:
        return False, 0


def parse_edge_type(value: str) -> Tuple[bool, EdgeType]:
    try:
        return True, EdgeType.from_string(value)
    except ValueError:
        return False, EdgeType.EXTREMUM


def parse_distance_measure(value: str) -> Tuple[bool, DistanceMeasure]:
    try:
        return True, DistanceMeasure.from_string(value)
    except ValueError:
        return False, DistanceMeasure.MINIMUM


def format_value(value) -> str:
    if isinstance(value, IntEnum):
        return str(value)
    if isinstance(value, float):
        if math.isinf(value):
            return "inf" if value > 0 else "-inf"
        return f"{value:g}"
    return str(value)


Parser = Callable[[str], Tuple[bool, object]]


class ParameterSet:
    """String interface shared by the parameter dataclasses.

    Subclasses declare PREFIXES and KEYS (key -> (attribute, parser)).
    set_parameter() returns True on success, False when the value failed to
    parse (state unchanged) and None when the key is not recognized.
    """

    PREFIXES: ClassVar[Tuple[str, ...]] = ()
    KEYS: ClassVar[Dict[str, Tuple[str, Parser]]] = {}
    LISTED: ClassVar[Tuple[Tuple[str, str], ...]] = ()

    def _strip_prefix(self, name: str) -> str:
        for prefix in self.PREFIXES:
            if name.startswith(prefix):
                return name[len(prefix):]
        return name

    def set_parameter(self, name: str, value: str) -> Optional[bool]:
        key = self._strip_prefix(name.strip())
        if key not in self.KEYS:
            return None
        attr, parser = self.KEYS[key]
        ok, parsed = parser(value)
        if ok:
            setattr(self, attr, parsed)
        return ok

    def parameters(self) -> List[Tuple[str, str]]:
        prefix = self.PREFIXES[0] if self.PREFIXES else ""
        return [(prefix + key, format_value(getattr(self, attr))) for key, attr in self.LISTED]


# --------------------------------
# Image edge distance
# --------------------------------
@dataclass
class EdgeDistanceParams(ParameterSet):
    edge_type: EdgeType = EdgeType.EXTREMUM
    padding: float = -math.inf
    min_intensity: float = -math.inf
    max_intensity: float = math.inf
    min_gradient: float = 0.0
    max_distance: float = 0.0
    step_length: float = 0.0
    median_filter_radius: int = 0
    distance_smoothing: int = 0
    magnitude_smoothing: int = 2
    white_matter_window_width: int = 0
    grey_matter_window_width: int = 0

    PREFIXES: ClassVar[Tuple[str, ...]] = (
        "Image edge distance ",
        "Intensity edge distance ",
        "Edge distance ",
    )
    KEYS: ClassVar[Dict[str, Tuple[str, Parser]]] = {
        "Type": ("edge_type", parse_edge_type),
        "Mode": ("edge_type", parse_edge_type),
        "Maximum": ("max_distance", parse_float),
        "Maximum distance": ("max_distance", parse_float),
        "Step length": ("step_length", parse_float),
        "Intensity threshold": ("padding", parse_float),
        "Padding": ("padding", parse_float),
        "Lower intensity threshold": ("min_intensity", parse_float),
        "Lower threshold": ("min_intensity", parse_float),
        "Lower intensity": ("min_intensity", parse_float),
        "Minimum intensity": ("min_intensity", parse_float),
        "Upper intensity threshold": ("max_intensity", parse_float),
        "Upper intensity": ("max_intensity", parse_float),
        "Maximum intensity": ("max_intensity", parse_float),
        "Minimum gradient": ("min_gradient", parse_float),
        "Minimum gradient magnitude": ("min_gradient", parse_float),
        "Median filtering": ("median_filter_radius", parse_int),
        "Median filter radius": ("median_filter_radius", parse_int),
        "Smoothing iterations": ("distance_smoothing", parse_int),
        "Distance smoothing": ("distance_smoothing", parse_int),
        "Distance smoothing iterations": ("distance_smoothing", parse_int),
        "Magnitude smoothing": ("magnitude_smoothing", parse_int),
        "Magnitude smoothing iterations": ("magnitude_smoothing", parse_int),
        "Local white matter window width": ("white_matter_window_width", parse_int),
        "Local grey matter window width": ("grey_matter_window_width", parse_int),
    }
    LISTED: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("Type", "edge_type"),
        ("Maximum", "max_distance"),
        ("Step length", "step_length"),
        ("Intensity threshold", "padding"),
        ("Lower intensity", "min_intensity"),
        ("Upper intensity", "max_intensity"),
        ("Minimum gradient magnitude", "min_gradient"),
        ("Median filter radius", "median_filter_radius"),
        ("Smoothing iterations", "distance_smoothing"),
        ("Magnitude smoothing", "magnitude_smoothing"),
        ("Local white matter window width", "white_matter_window_width"),
        ("Local grey matter window width", "grey_matter_window_width"),
    )

    def __post_init__(self):
        self.edge_type = coerce_edge_type(self.edge_type)

    def set_parameter(self, name: str, value: str) -> Optional[bool]:
        key = self._strip_prefix(name.strip())
        # Window radius r maps to width 2r + 1
        if key in (
            "Local white matter window radius",
            "Local grey matter window radius",
            "Local window radius",
            "Local window width",
        ):
            ok, number = parse_int(value)
            if not ok:
                return False
            width = number if key.endswith("width") else 2 * number + 1
            if "white" in key or key.startswith("Local window"):
                self.white_matter_window_width = width
            if "grey" in key or key.startswith("Local window"):
                self.grey_matter_window_width = width
            return True
        return super().set_parameter(name, value)

    @property
    def needs_tissue_statistics(self) -> bool:
        return self.edge_type == EdgeType.NEONATAL_WHITE_SURFACE

    @property
    def has_intensity_range(self) -> bool:
        return not (math.isinf(self.min_intensity) and math.isinf(self.max_intensity))

    @property
    def has_padding(self) -> bool:
        return not math.isinf(self.padding)

    def copy(self) -> "EdgeDistanceParams":
        return EdgeDistanceParams(**{f.name: getattr(self, f.name) for f in fields(self)})


# --------------------------------
# Implicit surface distance
# --------------------------------
@dataclass
class ImplicitSurfaceParams(ParameterSet):
    distance_measure: DistanceMeasure = DistanceMeasure.MINIMUM
    offset: float = 0.0
    max_distance: float = 0.0

    PREFIXES: ClassVar[Tuple[str, ...]] = ("Implicit surface distance ",)
    KEYS: ClassVar[Dict[str, Tuple[str, Parser]]] = {
        "Measure": ("distance_measure", parse_distance_measure),
        "measure": ("distance_measure", parse_distance_measure),
        "Offset": ("offset", parse_float),
        "offset": ("offset", parse_float),
        "Maximum": ("max_distance", parse_float),
        "Maximum distance": ("max_distance", parse_float),
        "maximum distance": ("max_distance", parse_float),
    }
    LISTED: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("measure", "distance_measure"),
        ("offset", "offset"),
        ("maximum distance", "max_distance"),
    )

    def __post_init__(self):
        if not isinstance(self.distance_measure, DistanceMeasure):
            if isinstance(self.distance_measure, str):
                self.distance_measure = DistanceMeasure.from_string(self.distance_measure)
            else:
                try:
                    self.distance_measure = DistanceMeasure(int(self.distance_measure))
                except (TypeError, ValueError):
                    raise ValueError(
                        f"Invalid distance measure value: {self.distance_measure!r}"
                    ) from None
