import argparse
import logging
import math
import sys
from dataclasses import dataclass
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from numba import jit

from heightmap_common import (AXIS_LETTERS, DEFAULT_ENCODING, ENCODINGS, OBJ_CAPACITY_CHUNK, Axis,
                              ParseError, ValidationError, check_input_path, check_output_path,
                              configure_logging, shield_negative_numbers,
                              sort_arguments)

# Relative distance under which a scaled coordinate counts as sitting on a cell boundary
SNAP_TOLERANCE = 1e-9


@dataclass
class PointCloud:
    vertices: np.ndarray            # (n, 3)
    low: Optional[np.ndarray]       # None while empty
    high: Optional[np.ndarray]

    @property
    def is_empty(self):
        return len(self.vertices) == 0


def read_obj(stream, capacity=0):
    """Stream the vertex records of a Wavefront OBJ text.

    Only lines starting with "v " are looked at; the first three numbers on them are
    x, y and z. ``capacity`` is a size hint for the vertex buffer, which grows as needed.
    """
    vertices = np.empty((max(capacity, OBJ_CAPACITY_CHUNK), 3))
    count = 0

    for lineno, line in enumerate(stream, 1):
        if not line.startswith('v '):
            continue

        fields = line.split()[1:4]
        if len(fields) < 3:
            raise ParseError(f"Line {lineno}: a vertex needs three coordinates: {line.strip()!r}")
        try:
            point = [float(f) for f in fields]
        except ValueError as e:
            raise ParseError(f"Line {lineno}: {e}") from e
        if not all(math.isfinite(v) for v in point):
            raise ParseError(f"Line {lineno}: non-finite vertex coordinate: {line.strip()!r}")

        if count == len(vertices):
            vertices = np.concatenate((vertices, np.empty_like(vertices)))
        vertices[count] = point
        count += 1

    vertices = vertices[:count].copy()
    if not count:
        return PointCloud(vertices, None, None)
    return PointCloud(vertices, vertices.min(axis=0), vertices.max(axis=0))


@jit(nopython=True)
def process_points(vertices, min_bound, max_bound, size, height_axis):
    scale = np.zeros(3)
    cells = 1
    for a in range(3):
        if a == height_axis:
            continue
        cells *= size[a]
        extent = max_bound[a] - min_bound[a]
        if extent > 0.0:
            scale[a] = (size[a] - 1) / extent

    heightmap = np.zeros(cells)

    # Sequential on purpose: when points share a cell the later one wins
    for i in range(vertices.shape[0]):
        index = 0
        mul = 1
        for a in range(3):
            if a == height_axis:
                continue
            c = (vertices[i, a] - min_bound[a]) * scale[a]
            # Snap values a rounding error away from a cell boundary onto it
            r = float(math.floor(c + 0.5))
            if abs(c - r) < SNAP_TOLERANCE * max(1.0, abs(r)):
                c = r
            index += int(np.trunc(c)) * mul
            mul *= size[a]
        if index < 0 or index >= cells:
            raise IndexError("A vertex falls outside of the heightmap grid")
        heightmap[index] = vertices[i, height_axis]

    return heightmap


def planar_axes(axis):
    return [a for a in Axis if a != axis]


def rasterize(cloud, size, axis, bounds=None):
    """Bin the cloud into a (rows, cols) grid of raw displacement values.

    Columns follow the first planar axis and rows the second one. ``bounds`` is a
    (low, high) pair overriding the cloud's own box.
    """
    low, high = bounds if bounds is not None else (cloud.low, cloud.high)
    if low is None:
        raise ParseError("The mesh has no vertices to rasterize!")

    cols, rows = (size[a] for a in planar_axes(axis))
    heightmap = process_points(cloud.vertices,
                               np.asarray(low, dtype=np.float64),
                               np.asarray(high, dtype=np.float64),
                               np.asarray(size, dtype=np.int64),
                               int(axis))
    return heightmap.reshape(rows, cols)


def quantize_heights(grid, low, high, size, axis, encoding):
    extent = high[axis] - low[axis]
    scale = (size[axis] - 1) / extent if extent > 0 else 0.0
    values = (np.asarray(grid, dtype=np.float64) - low[axis]) * scale

    if encoding.is_float:
        return values.astype(encoding.dtype)
    # Truncate, then let the narrowing integer cast wrap (300 -> 44 for u8)
    return np.trunc(values).astype(np.int64).astype(encoding.dtype)


def write_heightmap(stream, values, encoding):
    values = np.ascontiguousarray(values, dtype=encoding.dtype)
    if not encoding.text:
        stream.write(values.tobytes())
        return
    if encoding.is_float:
        text = ''.join(str(v) for v in values.ravel())
    else:
        text = ''.join(str(v) for v in values.ravel().tolist())
    stream.write(text.encode('ascii'))


def save_preview(grid, path, colormap='gray'):
    plt.imsave(path, grid, cmap=colormap)


@dataclass
class Params:
    obj: str = ''
    hmap: str = ''
    size: tuple = ()
    axis: Optional[Axis] = None
    encoding: object = DEFAULT_ENCODING


def parse_cli(tokens):
    keywords = set(ENCODINGS) | AXIS_LETTERS
    args = sort_arguments(tokens, size_slots=3, corner_slots=0, keywords=keywords)

    p = Params()
    if args.paths:
        p.obj = args.paths[0]
    if len(args.paths) > 1:
        p.hmap = args.paths[1]
    p.size = tuple(args.sizes)

    axes = {Axis.from_letter(k) for k in args.keywords if k in AXIS_LETTERS}
    if len(axes) == 1:
        p.axis = axes.pop()
    elif axes:
        raise ValidationError("The heightmap displacement axis parameter is invalid!")

    encodings = [k for k in args.keywords if k in ENCODINGS]
    if encodings:
        p.encoding = ENCODINGS[encodings[-1]]
    return p


def validate_params(p):
    check_input_path(p.obj, "Wavefront *.obj")
    check_output_path(p.hmap, "heightmap")
    if len(p.size) != len(Axis):
        raise ValidationError("The heightmap size parameter is invalid!")
    if p.axis is None:
        raise ValidationError("The heightmap displacement axis parameter is invalid!")


def convert(p, preview=None, colormap='gray'):
    logging.info("Read obj file...")
    capacity = int(np.prod([p.size[a] for a in planar_axes(p.axis)]))
    logging.debug("Vertex capacity hint: %d", capacity)
    with open(p.obj, 'r') as f:
        cloud = read_obj(f, capacity)
    if cloud.is_empty:
        raise ParseError(f"No vertices found in {p.obj}")
    logging.info("Parsed vertices: %d", len(cloud.vertices))
    logging.info("Bounding box: %s; %s", cloud.low, cloud.high)

    logging.info("Fit into grid...")
    grid = rasterize(cloud, p.size, p.axis)

    logging.info("Dump heights...")
    values = quantize_heights(grid, cloud.low, cloud.high, p.size, p.axis, p.encoding)
    with open(p.hmap, 'wb') as f:
        write_heightmap(f, values, p.encoding)

    if preview:
        save_preview(grid, preview, colormap)
        logging.info("Preview saved to: %s", preview)

    return values


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Convert a Wavefront OBJ point cloud to a raw heightmap',
        epilog='Example:\n  mesh-to-heightmap terrain.obj terrain.r16 y 4097 0xFFFF 4097',
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('params', nargs='+', metavar='ARG',
                        help='OBJ HMAP x|y|z SIZE_X SIZE_Y SIZE_Z in any order, optionally followed '
                             'by the output type (u8, u16, u32, f32 or their text variants '
                             'tu8, tu16, tu32, tf32; default: u16)')
    parser.add_argument('--preview', default=None,
                        help='Also save a colormapped image of the grid to this path')
    parser.add_argument('--colormap', default='gray',
                        help='Matplotlib colormap for the preview (default: gray)')
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
        values = convert(p, args.preview, args.colormap)
    except (ParseError, IndexError, OSError, ValueError) as e:
        logging.error("%s", e)
        return 1

    print(f"Heightmap saved to: {p.hmap}")
    print(f"Samples: {values.size} ({p.encoding.name})")
    return 0


if __name__ == '__main__':
    sys.exit(main())
