import numpy as np
import pytest

from surface_forces.config import ConfigurationError
from surface_forces.force import (
    ForceContext,
    apply_parameters,
    create_energy_term,
    list_energy_terms,
    register_energy_term,
)
from surface_forces.surface import DeformableSurface


def _triangle():
    return DeformableSurface(np.eye(3), np.array([[0, 1, 2]]))


def test_point_data_and_modification_time():
    surface = _triangle()
    ctx = ForceContext(surface, "Test", 2.0)
    data = ctx.add_point_data("Distance")
    assert data.shape == (3,)
    assert ctx.add_point_data("Distance") is data
    assert ctx.add_point_data("Vectors", components=3).shape == (3, 3)
    assert not ctx.is_up_to_date("Distance")
    ctx.set_point_data("Distance", [1.0, 2.0, 3.0])
    assert ctx.is_up_to_date("Distance")
    surface.modified()
    assert not ctx.is_up_to_date("Distance")
    assert ctx.get_point_data("Missing") is None
    with pytest.raises(KeyError):
        ctx.point_data("Missing")
    with pytest.raises(ConfigurationError):
        ctx.set_point_data("Distance", np.zeros(4))


def test_gradient_accumulation():
    ctx = ForceContext(_triangle())
    ctx.reset_gradient()[:] = 1.0
    buffer = np.ones(9)
    ctx.accumulate_gradient(buffer, 0.5)
    np.testing.assert_allclose(buffer, 1.5)
    with pytest.raises(ConfigurationError):
        ctx.accumulate_gradient(np.zeros(6), 1.0)
    assert np.all(ctx.reset_gradient() == 0.0)


def test_gradient_accumulation_into_strided_buffers():
    ctx = ForceContext(_triangle())
    ctx.reset_gradient()[:] = 2.0
    storage = np.zeros((3, 6))
    ctx.accumulate_gradient(storage[:, ::2], 1.0)
    np.testing.assert_allclose(storage[:, ::2], 2.0)
    np.testing.assert_allclose(storage[:, 1::2], 0.0)
    # A flat strided buffer cannot be reshaped in place
    with pytest.raises(ConfigurationError):
        ctx.accumulate_gradient(np.zeros(18)[::2], 1.0)


def test_context_parameters():
    ctx = ForceContext(_triangle(), "Edge", 1.0)
    assert ctx.set_parameter("Weight", "0.5") is True
    assert ctx.set_parameter("Weight", "heavy") is False
    assert ctx.set_parameter("Name", "Other") is True
    assert ctx.set_parameter("Padding", "1") is None
    assert ctx.parameters() == [("Name", "Other"), ("Weight", "0.5")]


def test_registry():
    assert {"edge-distance", "implicit-surface"} <= set(list_energy_terms())
    with pytest.raises(KeyError):
        create_energy_term("curvature", _triangle())

    class Unnamed:
        pass

    with pytest.raises(ValueError):
        register_energy_term(Unnamed)


def test_apply_parameters_raises_on_rejected_value():
    term = create_energy_term("implicit-surface", _triangle(), None)
    apply_parameters(term, {"Offset": "1.5"})
    assert term.params.offset == 1.5
    with pytest.raises(ConfigurationError):
        apply_parameters(term, {"Offset": "high"})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
