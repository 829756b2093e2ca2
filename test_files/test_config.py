import math

import pytest

from surface_forces.config import (
    DistanceMeasure,
    EdgeDistanceParams,
    EdgeType,
    ImplicitSurfaceParams,
    coerce_edge_type,
    parse_edge_type,
    parse_float,
)


def test_edge_type_spellings():
    assert EdgeType.from_string("Closest Maximum") == EdgeType.CLOSEST_MAXIMUM
    assert EdgeType.from_string("localminimum") == EdgeType.CLOSEST_MINIMUM
    assert EdgeType.from_string("max") == EdgeType.CLOSEST_MAXIMUM
    assert EdgeType.from_string("Neonatal T2-w cGM/CSF") == EdgeType.NEONATAL_PIAL_SURFACE
    assert EdgeType.from_string("  strongest extremum ") == EdgeType.STRONGEST_EXTREMUM


def test_edge_type_names_parse_back():
    for edge_type in EdgeType:
        assert EdgeType.from_string(str(edge_type)) == edge_type


def test_invalid_edge_type():
    with pytest.raises(ValueError):
        EdgeType.from_string("steepest")
    with pytest.raises(ValueError):
        coerce_edge_type(42)
    assert parse_edge_type("steepest")[0] is False
    assert coerce_edge_type(5) == EdgeType.STRONGEST_MAXIMUM


def test_parse_float_auto():
    ok, value = parse_float("auto")
    assert ok and math.isnan(value)
    assert parse_float("1.5") == (True, 1.5)
    assert parse_float("abc")[0] is False


def test_edge_distance_defaults():
    params = EdgeDistanceParams()
    assert params.edge_type == EdgeType.EXTREMUM
    assert params.magnitude_smoothing == 2
    assert params.median_filter_radius == 0
    assert math.isinf(params.padding)
    assert not params.has_intensity_range
    assert not params.has_padding
    assert not params.needs_tissue_statistics


def test_edge_distance_prefixed_keys():
    params = EdgeDistanceParams()
    assert params.set_parameter("Edge distance Type", "closest maximum") is True
    assert params.edge_type == EdgeType.CLOSEST_MAXIMUM
    assert params.set_parameter("Image edge distance Maximum distance", "3") is True
    assert params.max_distance == 3.0
    assert params.set_parameter("Intensity edge distance Padding", "10") is True
    assert params.padding == 10.0
    assert params.has_padding
    assert params.set_parameter("Lower intensity", "auto") is True
    assert math.isnan(params.min_intensity)
    assert params.set_parameter("Median filtering", "2") is True
    assert params.median_filter_radius == 2


def test_window_radius_and_width():
    params = EdgeDistanceParams()
    assert params.set_parameter("Local white matter window radius", "2") is True
    assert params.white_matter_window_width == 5
    assert params.grey_matter_window_width == 0
    assert params.set_parameter("Local window width", "7") is True
    assert params.white_matter_window_width == 7
    assert params.grey_matter_window_width == 7
    assert params.set_parameter("Local grey matter window width", "9") is True
    assert params.grey_matter_window_width == 9


def test_rejected_and_unknown_keys():
    params = EdgeDistanceParams()
    assert params.set_parameter("Padding", "abc") is False
    assert math.isinf(params.padding)
    assert params.set_parameter("Type", "steepest") is False
    assert params.edge_type == EdgeType.EXTREMUM
    assert params.set_parameter("Smoothing kernel", "3") is None


def test_parameters_listing():
    params = EdgeDistanceParams(edge_type="neonatal white", max_distance=2.5)
    listed = dict(params.parameters())
    assert listed["Image edge distance Type"] == "Neonatal T2-w WM/cGM"
    assert listed["Image edge distance Maximum"] == "2.5"
    assert listed["Image edge distance Upper intensity"] == "inf"
    assert params.needs_tissue_statistics


def test_params_copy_is_independent():
    params = EdgeDistanceParams(padding=3.0)
    clone = params.copy()
    clone.padding = 4.0
    assert params.padding == 3.0


def test_implicit_surface_params():
    params = ImplicitSurfaceParams()
    assert params.distance_measure == DistanceMeasure.MINIMUM
    assert params.set_parameter("Implicit surface distance measure", "normal") is True
    assert params.distance_measure == DistanceMeasure.NORMAL
    assert params.set_parameter("Offset", "-1.5") is True
    assert params.offset == -1.5
    assert params.set_parameter("measure", "sideways") is False
    assert params.set_parameter("Type", "closest maximum") is None
    listed = dict(params.parameters())
    assert listed["Implicit surface distance measure"] == "Normal"
    with pytest.raises(ValueError):
        ImplicitSurfaceParams(distance_measure=7)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
