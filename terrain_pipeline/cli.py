#!/usr/bin/env python3
"""
Command-line interface for the terrain pipeline.

Usage:
    # Show footprint size, optimal zoom and tile count
    python -m terrain_pipeline.cli info --area khao_yai

    # Build a mesh and contour lines for custom bounds
    python -m terrain_pipeline.cli build --bounds "101.0132,14.3970,101.0224,14.4035" -o terrain.glb

    # Ellipse footprint, satellite texture, exaggerated 3x
    python -m terrain_pipeline.cli build --area phu_kradueng --shape ellipse \\
        --base-map "Google Satellite" --exaggeration 300 -o plateau.glb

    # List available areas and palettes
    python -m terrain_pipeline.cli areas
    python -m terrain_pipeline.cli palettes
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .errors import TerrainError
from .geometry import GeographicBounds


def _parse_bounds(args: argparse.Namespace) -> Optional[GeographicBounds]:
    """Bounds from --bounds or --area (None if neither given)."""
    from .areas import get_area_bounds

    if getattr(args, "bounds", None):
        parts = [float(x) for x in args.bounds.split(",")]
        if len(parts) != 4:
            raise ValueError("--bounds must be west,south,east,north")
        return GeographicBounds.from_wgs84(*parts)
    if getattr(args, "area", None):
        return get_area_bounds(args.area)
    return None


def cmd_info(args: argparse.Namespace) -> int:
    """Show footprint size and tile requirements."""
    from .config import TerrainConfig
    from .geometry import estimate_tile_count, geodesic_dimensions, optimal_zoom, visible_bounds

    config = TerrainConfig()
    try:
        bounds = _parse_bounds(args) or config.bounds
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    dims = geodesic_dimensions(bounds)
    zoom = optimal_zoom(bounds, config.lod.target_resolution, config.sources.dem_max_zoom)
    lat, lon = bounds.center

    print("Footprint:")
    print(f"  West: {bounds.lon_min}")
    print(f"  South: {bounds.lat_min}")
    print(f"  East: {bounds.lon_max}")
    print(f"  North: {bounds.lat_max}")
    print(f"  Center: {lat:.6f}, {lon:.6f}")
    print(f"  Size: {dims.width_meters:.0f} m x {dims.height_meters:.0f} m")

    print("\nElevation tiles:")
    print(f"  Source: {config.sources.dem_url}")
    print(f"  Optimal zoom: {zoom}")
    print(f"  Tiles at z{zoom}: {estimate_tile_count(bounds, zoom)}")

    if args.distance is not None:
        visible = visible_bounds(bounds, args.distance, plan_size=config.mesh.plan_size)
        print(f"\nVisible at distance {args.distance:g}:")
        print(f"  W={visible.lon_min:.6f}, S={visible.lat_min:.6f}, E={visible.lon_max:.6f}, N={visible.lat_max:.6f}")

    return 0


def cmd_areas(args: argparse.Namespace) -> int:
    """List predefined areas."""
    from .areas import AREAS
    from .geometry import estimate_tile_count, optimal_zoom

    print("Predefined areas:\n")
    for key, area in AREAS.items():
        bounds = area.geographic_bounds
        zoom = optimal_zoom(bounds)
        tiles = estimate_tile_count(bounds, zoom)
        lat, lon = bounds.center
        print(f"  {key:16s}  z{zoom:<2d} ~{tiles:3d} tiles  {area.description}")
        print(f"  {'':16s}  center {lat:.4f}, {lon:.4f}  --bounds \"{area.bounds_arg}\"")

    print("\nUsage: python -m terrain_pipeline.cli build --area <name>")
    return 0


def cmd_palettes(args: argparse.Namespace) -> int:
    """List colour palettes."""
    from .config import DEFAULT_PALETTE, PALETTES

    print("Colour palettes:\n")
    for name, colors in PALETTES.items():
        marker = "*" if name == DEFAULT_PALETTE else " "
        print(f"  {marker} {name:10s}  {' '.join(colors)}")
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    """Fetch elevation, build the mesh and contour lines, export them."""
    from .config import ContourConfig, SourceConfig, TerrainConfig
    from .contours import to_feature_collection
    from .pipeline import TerrainPipeline
    from .shapes import ShapeKind
    from .tile_compositor import TileCompositor

    try:
        bounds = _parse_bounds(args)
        config = TerrainConfig(
            shape=ShapeKind.parse(args.shape),
            palette=args.palette,
            sources=SourceConfig(base_map=args.base_map),
            contours=ContourConfig(
                enabled=not args.no_contours,
                interval=args.interval,
                major_interval=args.major_interval,
            ),
            workers=args.workers,
            cache_dir=Path(args.cache_dir) if args.cache_dir else None,
        )
    except (ValueError, TerrainError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if bounds is not None:
        config = replace(config, bounds=bounds)
    if args.resolution:
        config = replace(config, mesh=replace(config.mesh, default_resolution_cap=args.resolution))

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)

    compositor = TileCompositor(config, progress=not args.quiet)
    try:
        with TerrainPipeline(config, compositor=compositor) as pipeline:
            pipeline.update_settings(exaggeration_percent=args.exaggeration)
            snapshot = pipeline.load(args.zoom)

            mesh = snapshot.mesh
            print(f"Zoom: {snapshot.lod.dem_zoom}")
            print(f"Elevation: {snapshot.grid.min_height:.1f} .. {snapshot.grid.max_height:.1f} m")
            print(f"Mesh: {mesh.grid_width}x{mesh.grid_height} grid, {mesh.vertex_count} vertices, {mesh.face_count} faces")

            mesh.to_trimesh().export(output)
            print(f"Saved mesh to: {output}")

            if snapshot.imagery is not None:
                from PIL import Image

                texture_path = output.with_name(f"{output.stem}_texture.png")
                Image.fromarray(snapshot.imagery.pixels).save(texture_path)
                print(f"Saved texture to: {texture_path}")
                print(f"  offset={snapshot.imagery.offset}, repeat={snapshot.imagery.repeat}")

            if snapshot.contours is not None:
                contours_path = Path(args.contours) if args.contours else output.with_suffix(".contours.geojson")
                with open(contours_path, "w") as f:
                    json.dump(to_feature_collection(snapshot.contours, pipeline.plan_mapping), f)
                print(f"Contours: {len(snapshot.contours.levels)} levels, {len(snapshot.contours.labels)} labels")
                print(f"Saved contours to: {contours_path}")

        return 0

    except TerrainError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Terrain mesh and contour pipeline for Terrarium elevation tiles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Info command
    info_parser = subparsers.add_parser("info", help="Show footprint size and tile requirements")
    info_parser.add_argument("--area", help="Predefined area name (see 'areas' command)")
    info_parser.add_argument("--bounds", help="Bounds as west,south,east,north")
    info_parser.add_argument("--distance", type=float, help="Camera distance in plan units for visible bounds")

    # Areas command
    subparsers.add_parser("areas", help="List predefined areas")

    # Palettes command
    subparsers.add_parser("palettes", help="List colour palettes")

    # Build command
    build_parser = subparsers.add_parser("build", help="Build terrain mesh and contours")
    build_parser.add_argument("--area", help="Predefined area name (see 'areas' command)")
    build_parser.add_argument("--bounds", help="Bounds as west,south,east,north")
    build_parser.add_argument("--zoom", type=int, help="DEM zoom level (default: optimal for bounds)")
    build_parser.add_argument("--shape", choices=["rectangle", "ellipse"], default="rectangle",
                              help="Footprint shape")
    build_parser.add_argument("--palette", default="Terrain", help="Colour palette (see 'palettes' command)")
    build_parser.add_argument("--base-map", help="Texture with a base map instead of the palette")
    build_parser.add_argument("--exaggeration", type=float, default=200.0,
                              help="Vertical exaggeration in percent (default: 200)")
    build_parser.add_argument("--resolution", type=int, help="Maximum mesh samples per axis")
    build_parser.add_argument("--interval", type=float, default=10.0, help="Contour interval in meters")
    build_parser.add_argument("--major-interval", type=float, default=50.0,
                              help="Major contour interval in meters")
    build_parser.add_argument("--no-contours", action="store_true", help="Skip contour extraction")
    build_parser.add_argument("--contours", help="Contour GeoJSON output path")
    build_parser.add_argument("--output", "-o", default="terrain.glb",
                              help="Mesh output path (.glb, .ply, .obj, .stl)")
    build_parser.add_argument("--cache-dir", help="Tile cache directory")
    build_parser.add_argument("--workers", type=int, default=8, help="Parallel tile downloads")
    build_parser.add_argument("-q", "--quiet", action="store_true", help="No progress bar")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "info":
        return cmd_info(args)
    elif args.command == "areas":
        return cmd_areas(args)
    elif args.command == "palettes":
        return cmd_palettes(args)
    elif args.command == "build":
        return cmd_build(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
