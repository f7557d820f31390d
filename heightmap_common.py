import logging
import math
import os
import sys
from dataclasses import dataclass
from enum import IntEnum

import numpy as np


class ValidationError(Exception):
    pass


class ParseError(Exception):
    pass


class Axis(IntEnum):
    X = 0
    Y = 1
    Z = 2

    @classmethod
    def from_letter(cls, letter):
        return cls[letter.upper()]


AXIS_LETTERS = frozenset([a.name.lower() for a in Axis] + [a.name for a in Axis])


@dataclass(frozen=True)
class Encoding:
    name: str
    dtype: np.dtype
    text: bool

    @property
    def is_float(self):
        return self.dtype.kind == 'f'


ENCODINGS = {}
for _name, _dtype in (('u8', np.uint8), ('u16', np.uint16), ('u32', np.uint32), ('f32', np.float32)):
    ENCODINGS[_name] = Encoding(_name, np.dtype(_dtype), False)
    ENCODINGS['t' + _name] = Encoding('t' + _name, np.dtype(_dtype), True)

DEFAULT_ENCODING = ENCODINGS['u16']

# Initial vertex buffer when no size hint is available
OBJ_CAPACITY_CHUNK = 4096


@dataclass(frozen=True)
class Box:
    """Axis aligned box, one low/high entry per Axis."""
    low: np.ndarray
    high: np.ndarray

    @classmethod
    def validated(cls, low, high):
        low = np.asarray(low, dtype=np.float64)
        high = np.asarray(high, dtype=np.float64)
        if low.shape != (len(Axis),) or high.shape != (len(Axis),):
            raise ValidationError("The bounding box needs exactly three low and three high values!")
        if not (np.all(np.isfinite(low)) and np.all(np.isfinite(high))):
            raise ValidationError("The bounding box values must be finite numbers!")
        for axis in Axis:
            if not low[axis] < high[axis]:
                raise ValidationError(
                    f"The bounding box is invalid on axis {axis.name}: "
                    f"{low[axis]} is not below {high[axis]}!")
        return cls(low, high)


DEFAULT_BOX = Box.validated((-0.5, 0.0, -0.5), (0.5, 0.5, 0.5))


def parse_number(token):
    """Decimal or 0x-prefixed integer, then a finite float; None for anything else.

    "inf" and "nan" are not numbers here, so files with those names stay usable as paths.
    """
    try:
        return int(token, 0)
    except ValueError:
        pass
    try:
        value = float(token)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def shield_negative_numbers(argv=None):
    """Keep tokens such as -1e-3 positional.

    argparse only recognises plain negative numbers like -1 or -0.5; anything else
    starting with "-" would be taken for an unknown option. A leading space keeps the
    token positional and int()/float() ignore it.
    """
    if argv is None:
        argv = sys.argv[1:]
    return [" " + a if a.startswith("-") and parse_number(a) is not None else a for a in argv]


@dataclass
class SortedArguments:
    paths: list
    sizes: list
    corners: list
    keywords: list


def sort_arguments(tokens, size_slots, corner_slots, keywords):
    """Distribute free-form CLI tokens into their slots.

    Keywords are matched first. Integers fill the size slots in the order they are met;
    once those are full, any number goes to the corner slots (low corner, then high
    corner). Floats always go to the corner slots. Whatever is left is a path: input
    first, output second.
    """
    args = SortedArguments([], [], [], [])
    for token in tokens:
        if token in keywords:
            args.keywords.append(token)
            continue
        number = parse_number(token)
        if number is None:
            if len(args.paths) == 2:
                raise ValidationError(f"Unexpected argument: {token}")
            args.paths.append(token)
        elif isinstance(number, int) and len(args.sizes) < size_slots:
            if number < 1:
                raise ValidationError("The heightmap size parameter is invalid!")
            args.sizes.append(number)
        elif len(args.corners) < corner_slots:
            args.corners.append(float(number))
        else:
            raise ValidationError(f"Unexpected numeric argument: {token}")
    return args


def check_input_path(path, what):
    if not path or not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise ValidationError(f"An input {what} file was not opened!")


def check_output_path(path, what):
    if not path:
        raise ValidationError(f"An output {what} file was not opened!")
    if os.path.exists(path):
        ok = os.path.isfile(path) and os.access(path, os.W_OK)
    else:
        parent = os.path.dirname(os.path.abspath(path))
        ok = os.path.isdir(parent) and os.access(parent, os.W_OK)
    if not ok:
        raise ValidationError(f"An output {what} file was not opened!")


def configure_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)-8s %(message)s",
    )
