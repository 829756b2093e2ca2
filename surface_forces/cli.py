"""
Command line entry point: evaluate a surface force once on a mesh and write
the per-vertex results.

    surface-forces edge-distance --mesh white.vtk --image t2w.nii.gz \
        --param "Type=neonatal white" --white-matter-mask wm.nii.gz -o out.vtk
    surface-forces implicit-surface --mesh white.vtk --distance-image sdf.nii.gz
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from .config import ConfigurationError
from .force import apply_parameters, create_energy_term
from .image import ImageVolume
from .mesh_utils import save_mesh_with_metadata
from .surface import DeformableSurface

logger = logging.getLogger(__name__)


def parse_param_pairs(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Split repeated "Key=Value" arguments."""
    params: Dict[str, str] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ConfigurationError(f"Expected Key=Value, got {pair!r}")
        key, value = pair.split("=", 1)
        params[key.strip()] = value.strip()
    return params


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="surface-forces",
        description="Evaluate an external surface force on a triangulated mesh.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    edge = sub.add_parser("edge-distance", help="Force towards intensity edges along the normals.")
    edge.add_argument("--mesh", required=True, help="Surface mesh (any meshio format).")
    edge.add_argument("--image", required=True, help="Intensity image (NIfTI).")
    edge.add_argument("--foreground-mask", help="Optional image foreground mask.")
    edge.add_argument("--white-matter-mask", help="White matter mask for the neonatal white surface edge type.")
    edge.add_argument("--grey-matter-mask", help="Grey matter mask for the neonatal white surface edge type.")
    edge.add_argument("--type", dest="edge_type", help="Edge type, e.g. 'closest maximum'.")
    edge.add_argument("--max-distance", type=float, help="Maximum search distance in world units.")

    implicit = sub.add_parser("implicit-surface", help="Force towards the iso-surface of a distance image.")
    implicit.add_argument("--mesh", required=True, help="Surface mesh (any meshio format).")
    implicit.add_argument("--distance-image", required=True, help="Signed distance image (NIfTI).")
    implicit.add_argument("--measure", help="Distance measure: minimum or normal.")
    implicit.add_argument("--offset", type=float, help="Iso-value of the target surface.")

    for p in (edge, implicit):
        p.add_argument(
            "--param",
            action="append",
            metavar="KEY=VALUE",
            help="Force parameter, may be repeated (e.g. 'Magnitude smoothing=4').",
        )
        p.add_argument("--weight", type=float, default=1.0, help="Weight of the force term.")
        p.add_argument("--output", "-o", help="Output mesh (default: <mesh>_<command>.vtk).")
    return parser.parse_args(argv)


def _load_mask(path: Optional[str], image: ImageVolume) -> Optional[ImageVolume]:
    if not path:
        return None
    mask = ImageVolume.load(path)
    if not mask.has_spatial_attributes_of(image):
        raise ConfigurationError(f"Mask {path} does not match the intensity image lattice")
    return mask


def _build_term(args: argparse.Namespace, surface: DeformableSurface):
    params = {}
    if args.command == "edge-distance":
        image = ImageVolume.load(args.image)
        if args.foreground_mask:
            fg = _load_mask(args.foreground_mask, image)
            image = ImageVolume(image.data, image.affine, fg.data)
        term = create_energy_term(
            "edge-distance",
            surface,
            image,
            white_matter_mask=_load_mask(args.white_matter_mask, image),
            grey_matter_mask=_load_mask(args.grey_matter_mask, image),
            weight=args.weight,
        )
        if args.edge_type:
            params["Type"] = args.edge_type
        if args.max_distance is not None:
            params["Maximum distance"] = str(args.max_distance)
    else:
        image = ImageVolume.load(args.distance_image)
        term = create_energy_term("implicit-surface", surface, image, weight=args.weight)
        if args.measure:
            params["Measure"] = args.measure
        if args.offset is not None:
            params["Offset"] = str(args.offset)
    params.update(parse_param_pairs(args.param))
    apply_parameters(term, params)
    return term


def run(args: argparse.Namespace) -> Path:
    mesh_path = Path(args.mesh)
    if not mesh_path.exists():
        raise FileNotFoundError(f"Mesh not found: {mesh_path}")
    surface = DeformableSurface.read(mesh_path)
    term = _build_term(args, surface)
    ctx = term.context

    term.initialize()
    term.update(gradient=True)
    value = term.evaluate()
    gradient = np.zeros(3 * surface.number_of_points, dtype=np.float64)
    term.evaluate_gradient(gradient, 1.0, ctx.weight)
    logger.info(f"{ctx.name}: penalty = {value:.6g} (weight {ctx.weight:g})")

    point_data = {name: ctx.point_data(name).copy() for name in ctx.point_data_names()}
    point_data["Force"] = -gradient.reshape(-1, 3)

    output = Path(args.output) if args.output else mesh_path.with_name(f"{mesh_path.stem}_{args.command}.vtk")
    metadata = {
        "force": ctx.name,
        "mesh": str(mesh_path),
        "penalty": value,
        "number_of_points": surface.number_of_points,
        "active_points": int(surface.status.sum()),
        "parameters": dict(term.parameters()),
    }
    save_mesh_with_metadata(surface.to_meshio(point_data), output, metadata)
    return output


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    run(args)


if __name__ == "__main__":
    main()
