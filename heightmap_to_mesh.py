import argparse
import logging
import os
import sys
from dataclasses import dataclass

import numpy as np
from numba import jit

from heightmap_common import (DEFAULT_BOX, DEFAULT_ENCODING, ENCODINGS, Box, ParseError,
                              ValidationError, check_input_path, check_output_path,
                              configure_logging, shield_negative_numbers,
                              sort_arguments)


@dataclass
class ScalarGrid:
    values: np.ndarray   # (height, width), row-major
    vmin: float
    vmax: float
    samples_read: int

    @property
    def width(self):
        return self.values.shape[1]

    @property
    def height(self):
        return self.values.shape[0]


def read_heightmap(stream, width, height, encoding=DEFAULT_ENCODING):
    """Read width*height raw samples from a binary stream.

    A short source is not an error: cells past the last complete sample stay zero, and
    vmin/vmax only cover the samples actually read (both 0 when nothing was read).
    """
    if encoding.text:
        raise ValidationError(f"Text encoding {encoding.name} can not be read as a heightmap!")

    count = width * height
    itemsize = encoding.dtype.itemsize
    data = stream.read(count * itemsize)
    read = len(data) // itemsize

    values = np.zeros(count, dtype=np.float64)
    vmin = vmax = 0.0
    if read:
        samples = np.frombuffer(data[:read * itemsize], dtype=encoding.dtype).astype(np.float64)
        if not np.all(np.isfinite(samples)):
            raise ParseError("The heightmap contains non-finite samples!")
        values[:read] = samples
        vmin, vmax = float(samples.min()), float(samples.max())
    if read < count:
        logging.warning("Heightmap ended after %d of %d samples, zero-filling the rest", read, count)

    return ScalarGrid(values.reshape(height, width), vmin, vmax, read)


@jit(nopython=True)
def generate_vertices(heightmap, vmin, vmax, low, high):
    height, width = heightmap.shape
    vertices = np.zeros((height * width, 3))
    span = vmax - vmin

    for y in range(height):
        w = y / (height - 1) if height > 1 else 0.0
        for x in range(width):
            u = x / (width - 1) if width > 1 else 0.0
            t = (heightmap[y, x] - vmin) / span if span > 0.0 else 0.0
            idx = y * width + x
            vertices[idx, 0] = low[0] + u * (high[0] - low[0])
            vertices[idx, 1] = low[1] + t * (high[1] - low[1])
            vertices[idx, 2] = low[2] + w * (high[2] - low[2])

    return vertices


@jit(nopython=True)
def generate_faces(width, height):
    # 1-based, two triangles per quad sharing the same diagonal
    faces = np.zeros(((height - 1) * (width - 1) * 2, 3), dtype=np.int64)

    k = 0
    for i in range(1, width * height - width + 1):
        if i % width == 0:
            continue
        faces[k, 0] = i
        faces[k, 1] = i + 1
        faces[k, 2] = i + width
        faces[k + 1, 0] = i + 1
        faces[k + 1, 1] = i + width + 1
        faces[k + 1, 2] = i + width
        k += 2

    return faces


def heightmap_to_vertices(grid, box=DEFAULT_BOX):
    if grid.width < 2 or grid.height < 2:
        raise ValidationError("The heightmap needs at least 2x2 samples to make a mesh!")
    return generate_vertices(grid.values, grid.vmin, grid.vmax, box.low, box.high)


def write_obj(stream, vertices, faces):
    for x, y, z in vertices.tolist():
        stream.write(f"v {x!r} {y!r} {z!r}\n")
    for a, b, c in faces.tolist():
        stream.write(f"f {a} {b} {c}\n")


def mesh_output_path(path, fmt):
    """open3d picks the writer from the extension, so make it match ``fmt``."""
    if os.path.splitext(path)[1].lower() == '.' + fmt:
        return path
    return f"{path}.{fmt}"


def export_mesh(path, vertices, faces, fmt):
    try:
        import open3d as o3d
    except ImportError as e:
        raise RuntimeError(
            "PLY/STL export requires open3d. Install with: pip install open3d"
        ) from e

    path = mesh_output_path(path, fmt)
    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(vertices)
    mesh.triangles = o3d.utility.Vector3iVector((faces - 1).astype(np.int32))
    if fmt == 'stl':
        mesh.compute_triangle_normals()
    if not o3d.io.write_triangle_mesh(path, mesh):
        raise OSError(f"Failed to write mesh: {path}")
    return path


@dataclass
class Params:
    hmap: str = ''
    obj: str = ''
    size: tuple = ()
    box: Box = DEFAULT_BOX
    encoding: object = DEFAULT_ENCODING


def parse_cli(tokens):
    args = sort_arguments(tokens, size_slots=2, corner_slots=6, keywords=ENCODINGS)

    p = Params()
    if args.paths:
        p.hmap = args.paths[0]
    if len(args.paths) > 1:
        p.obj = args.paths[1]
    p.size = tuple(args.sizes)
    if args.corners:
        if len(args.corners) != 6:
            raise ValidationError("The target box needs three low and three high values!")
        p.box = Box.validated(args.corners[:3], args.corners[3:])
    if args.keywords:
        p.encoding = ENCODINGS[args.keywords[-1]]
    return p


def validate_params(p):
    check_input_path(p.hmap, "heightmap")
    check_output_path(p.obj, "mesh")
    if len(p.size) != 2 or min(p.size) < 2:
        raise ValidationError("The heightmap size parameter is invalid!")
    if p.encoding.text:
        raise ValidationError(f"The heightmap sample type {p.encoding.name} is not a binary one!")


def convert(p, fmt='obj'):
    width, height = p.size

    logging.info("Read heightmap file...")
    with open(p.hmap, 'rb') as f:
        grid = read_heightmap(f, width, height, p.encoding)
    logging.info("Samples read: %d of %d", grid.samples_read, width * height)
    logging.info("Min height: %g", grid.vmin)
    logging.info("Max height: %g", grid.vmax)

    logging.info("Create point cloud...")
    logging.debug("Target box: %s; %s", p.box.low, p.box.high)
    vertices = heightmap_to_vertices(grid, p.box)
    faces = generate_faces(width, height)

    logging.info("Dump object file...")
    path = p.obj
    if fmt == 'obj':
        with open(path, 'w') as f:
            write_obj(f, vertices, faces)
    else:
        path = export_mesh(path, vertices, faces, fmt)

    return path, vertices, faces


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Convert a raw binary heightmap to a Wavefront OBJ mesh',
        epilog='Example:\n  heightmap-to-mesh terrain.r16 terrain.obj 4096 4096 -1 0 -1 1 0.25 1',
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('params', nargs='+', metavar='ARG',
                        help='HMAP OBJ SIZE_X SIZE_Y in any order, then optionally the target box '
                             'LOW_X LOW_Y LOW_Z HIGH_X HIGH_Y HIGH_Z and the sample type '
                             '(u8, u16, u32, f32; default: u16)')
    parser.add_argument('--format', choices=['obj', 'ply', 'stl'], default='obj',
                        help='Output format (default: obj; ply and stl need open3d and get the '
                             'matching extension appended when the output path lacks it)')
    parser.add_argument('--verbose', action='store_true',
                        help='Enable verbose logging')

    args = parser.parse_intermixed_args(shield_negative_numbers(argv))
    configure_logging(args.verbose)

    try:
        p = parse_cli(args.params)
        validate_params(p)
    except ValidationError as e:
        parser.error(str(e))

    try:
        path, vertices, faces = convert(p, args.format)
    except (ParseError, ValidationError, RuntimeError, OSError) as e:
        logging.error("%s", e)
        return 1

    print(f"Mesh saved to: {path}")
    print(f"Vertices: {len(vertices)}")
    print(f"Triangles: {len(faces)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
