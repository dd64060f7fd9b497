#!/usr/bin/env python3
"""Extract RenderWare DFF models to glTF format.

Usage:
    python extract_models.py <input> [-o <output>] [--textures <dir>] [--info]

Examples:
    # Extract a single file
    python extract_models.py infernus.dff -o ./output

    # Extract all DFF files from a directory, linking textures found in ./txd
    python extract_models.py ./models/ -o ./output --textures ./txd

    # Print frames, geometries and atomics without exporting
    python extract_models.py infernus.dff --info
"""
import argparse
import os
import sys
from pathlib import Path

from dff_loader import DFFLoader
from dff_textures import DirectoryTextureLookup
from dff_types import Clump
from gltf_exporter import GLTFExporter


def print_info(path: Path, clump: Clump):
    """Print a summary of a loaded clump."""
    print(f"File: {path}")
    print(f"Frames: {len(clump.frames)}")
    for frame in clump.frames:
        depth = clump.get_hierarchy_depth(frame)
        parent = "-" if frame.parent is None else frame.parent
        print(f"  {'  ' * depth}[{frame.index}] {frame.name or '(unnamed)'} parent={parent}")

    print(f"Geometries: {len(clump.geometries)}")
    for index, geometry in enumerate(clump.geometries):
        print(f"  [{index}] vertices={geometry.vertex_count} "
              f"triangles={geometry.triangle_count} "
              f"materials={geometry.material_count} "
              f"uv_sets={len(geometry.uv_sets)}"
              f"{' normals' if geometry.has_normals else ''}"
              f"{' prelit' if geometry.colors is not None else ''}")
        for material in geometry.materials:
            for texture in material.textures:
                state = "found" if texture.resolved else "missing"
                mask = f" mask={texture.mask_name}" if texture.mask_name else ""
                print(f"      texture {texture.name}{mask} ({state})")

    print(f"Atomics: {len(clump.atomics)}")
    for index, atomic in enumerate(clump.atomics):
        print(f"  [{index}] frame={atomic.frame_index} geometry={atomic.geometry_index} "
              f"flags=0x{atomic.flags:X}")


def main():
    parser = argparse.ArgumentParser(
        description="Extract RenderWare DFF models to glTF format"
    )
    parser.add_argument(
        "input",
        help="Input DFF file or directory containing DFF files",
    )
    parser.add_argument(
        "-o", "--output",
        default="./output",
        help="Output directory for glTF files (default: ./output)",
    )
    parser.add_argument(
        "-t", "--textures",
        help="Directory with extracted texture images to link into the glTF files",
    )
    parser.add_argument(
        "--info",
        action="store_true",
        help="Print model structure instead of exporting",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output",
    )

    args = parser.parse_args()

    # Collect input files
    input_path = Path(args.input)
    if input_path.is_file():
        files = [input_path]
    elif input_path.is_dir():
        files = sorted(p for p in input_path.glob("**/*") if p.suffix.lower() == ".dff")
        if not files:
            print(f"No DFF files found in {input_path}", file=sys.stderr)
            return 1
    else:
        print(f"Input not found: {args.input}", file=sys.stderr)
        return 1

    loader = DFFLoader()
    if args.textures:
        lookup = DirectoryTextureLookup(args.textures, recursive=True)
        loader.set_texture_lookup_callback(lookup)
        if args.verbose:
            print(f"Indexed {len(lookup)} textures in {args.textures}")

    if not args.info:
        os.makedirs(args.output, exist_ok=True)

    success_count = 0
    fail_count = 0

    for dff_file in files:
        try:
            clump = loader.load_from_memory(dff_file.read_bytes())
            if args.info:
                print_info(dff_file, clump)
            else:
                output_file = Path(args.output) / f"{dff_file.stem}.glb"
                GLTFExporter(clump, name=dff_file.stem).export(output_file)
                if args.verbose:
                    print(f"Exported: {dff_file} -> {output_file}")
            success_count += 1
        except (ValueError, OSError) as e:
            print(f"Failed: {dff_file} - {e}", file=sys.stderr)
            fail_count += 1

    # Summary
    total = success_count + fail_count
    if args.info:
        print(f"\nRead {success_count}/{total} files")
    else:
        print(f"\nExtracted {success_count}/{total} files to {args.output}")

    return 0 if fail_count == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
