import json

import meshio
import nibabel as nib
import numpy as np
import pytest

from surface_forces.cli import main, parse_args, parse_param_pairs
from surface_forces.config import ConfigurationError


@pytest.fixture
def inputs(tmp_path, sphere_surface, blob_image, sphere_sdf):
    mesh_path = tmp_path / "white.vtk"
    meshio.write(mesh_path, sphere_surface(8.0).to_meshio())
    image_path = tmp_path / "t2w.nii.gz"
    nib.save(nib.Nifti1Image(blob_image.data.astype(np.float32), np.eye(4)), str(image_path))
    sdf_path = tmp_path / "sdf.nii.gz"
    nib.save(nib.Nifti1Image(sphere_sdf.data.astype(np.float32), np.eye(4)), str(sdf_path))
    return mesh_path, image_path, sdf_path


def test_parse_param_pairs():
    assert parse_param_pairs(["Type = closest maximum", "Padding=5"]) == {
        "Type": "closest maximum",
        "Padding": "5",
    }
    assert parse_param_pairs(None) == {}
    with pytest.raises(ConfigurationError):
        parse_param_pairs(["Padding"])


def test_parse_args():
    args = parse_args(["-v", "implicit-surface", "--mesh", "a.vtk", "--distance-image", "d.nii", "--offset", "1"])
    assert args.verbose
    assert args.command == "implicit-surface"
    assert args.offset == 1.0
    assert args.weight == 1.0


def test_edge_distance_command(inputs, tmp_path):
    mesh_path, image_path, _ = inputs
    output = tmp_path / "out" / "edges.vtk"
    main([
        "edge-distance", "--mesh", str(mesh_path), "--image", str(image_path),
        "--type", "strongest minimum", "--param", "Median filtering=1", "-o", str(output),
    ])
    mesh = meshio.read(output)
    assert {"Distance", "Magnitude", "Force", "status"} <= set(mesh.point_data)
    assert np.all(mesh.point_data["Distance"] > 1.0)
    metadata = json.loads(output.with_suffix(".json").read_text())
    assert metadata["force"] == "Image edge distance"
    assert metadata["parameters"]["Image edge distance Type"] == "StrongestMinimum"
    assert metadata["active_points"] == metadata["number_of_points"]
    assert 1.0 < metadata["penalty"] < 3.0


def test_implicit_surface_command_default_output(inputs):
    mesh_path, _, sdf_path = inputs
    main(["implicit-surface", "--mesh", str(mesh_path), "--distance-image", str(sdf_path), "--measure", "normal"])
    output = mesh_path.with_name("white_implicit-surface.vtk")
    mesh = meshio.read(output)
    np.testing.assert_allclose(mesh.point_data["NormalImplicitSurfaceDistance"], -2.0, atol=0.2)


def test_invalid_parameter_value(inputs):
    mesh_path, image_path, _ = inputs
    with pytest.raises(ConfigurationError):
        main(["edge-distance", "--mesh", str(mesh_path), "--image", str(image_path), "--param", "Padding=abc"])


def test_missing_mesh(tmp_path):
    with pytest.raises(FileNotFoundError):
        main(["implicit-surface", "--mesh", str(tmp_path / "none.vtk"), "--distance-image", "d.nii"])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
