"""
loaders.py
~~~~~~~~~~

Pattern sets from a directory of PNG images.

The directory holds one sub directory per class, each containing the
PNG samples of that class::

    patterns/
     |- circle/
     |   |- a.png
     |   `- b.png
     `- cross/
         `- c.png

Class codes follow the sorted order of the class directories that
contain at least one valid image. The first image read fixes width,
height and bytes per pixel; any image of a different shape, or one that
cannot be decoded, is skipped with a warning. Samples are read at 8 bits
per channel, so bytes per pixel equals the number of channels.
"""

import os
import logging
from typing import List, Optional, Tuple

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.image as mpimg

from caveboy.errors import CaveboyError, DataError, ResourceError
from caveboy.patterns import PatternSet, pixels_to_pattern

logger = logging.getLogger(__name__)

PNG_SUFFIX = '.png'


def decode_png(path: str) -> Tuple[np.ndarray, int, int, int]:
    """
    Decode one PNG into raw 8 bit channel data.

    matplotlib hands PNG samples back as floats in [0, 1], so every
    channel is requantized to one byte: 16 bit images lose their low
    byte and the reported bytes per pixel is the channel count (1 for
    gray, 2 for gray plus alpha, 3 for RGB, 4 for RGBA).

    Returns:
        tuple: (uint8 data, width, height, bytes per pixel)
    """
    image = mpimg.imread(path, format='png')
    if image.dtype != np.uint8:
        image = np.round(np.clip(image, 0.0, 1.0) * 255).astype(np.uint8)
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    height, width, channels = image.shape
    return np.ascontiguousarray(image), width, height, channels


def _class_dirs(dir_path: str) -> List[str]:
    try:
        entries = sorted(os.listdir(dir_path))
    except OSError as e:
        raise ResourceError.from_os_error('open', dir_path, e, kind='patternset directory') from e
    return [name for name in entries
            if not name.startswith('.') and os.path.isdir(os.path.join(dir_path, name))]


def _png_files(class_path: str) -> List[str]:
    return sorted(name for name in os.listdir(class_path)
                  if len(name) > len(PNG_SUFFIX) and name.endswith(PNG_SUFFIX)
                  and os.path.isfile(os.path.join(class_path, name)))


def scan_pattern_directory(dir_path: str, normalize: bool = False) -> PatternSet:
    """
    Read every valid PNG under ``dir_path`` into a pattern set.

    Args:
        dir_path: Root directory with one sub directory per class
        normalize: Rescale pixel values into [-1, 1]

    Raises:
        ResourceError: If the root directory cannot be listed
        DataError: If no valid image was found
    """
    pattern_set = PatternSet()
    shape = None

    for class_name in _class_dirs(dir_path):
        class_path = os.path.join(dir_path, class_name)
        try:
            files = _png_files(class_path)
        except OSError as e:
            logger.warning(f"Couldn't open patterns dir: '{class_path}': {e.strerror}")
            continue
        if not files:
            logger.warning(f"Empty patterns dir: '{class_path}'")
            continue

        samples = []
        for file_name in files:
            png_path = os.path.join(class_path, file_name)
            try:
                data, width, height, bpp = decode_png(png_path)
            except (OSError, ValueError, SyntaxError) as e:
                logger.warning(f"Couldn't open PNG image: '{png_path}': {e}")
                continue

            if shape is None:
                shape = (width, height, bpp)
                pattern_set.width, pattern_set.height, pattern_set.bpp = shape
                logger.info(f"First PNG loaded. Sizes: {width}x{height} ({bpp} Bpp)")

            if (width, height, bpp) != shape:
                logger.warning(
                    f"Ignoring PNG file '{png_path}'. It's {width}x{height} ({bpp} Bpp) "
                    f"instead of {shape[0]}x{shape[1]} ({shape[2]} Bpp) as it should be."
                )
                continue
            samples.append(pixels_to_pattern(data, bpp))

        if not samples:
            logger.warning(f"No valid PNG file was read from '{class_path}' dir.")
            continue

        code = pattern_set.add_class(class_name)
        for values in samples:
            pattern_set.add(values, code)

    if len(pattern_set) == 0:
        raise DataError(f"No valid pattern found under '{dir_path}'")
    if normalize:
        pattern_set.normalize()

    logger.info(
        f"Pattern loading finished. {len(pattern_set)} patterns in "
        f"{pattern_set.n_out} class(es) read from '{dir_path}'"
    )
    return pattern_set


def load_pattern_directory(dir_path: str, normalize: bool = False) -> Optional[PatternSet]:
    """
    Like :func:`scan_pattern_directory` but logs failures.

    Returns:
        PatternSet or None if nothing could be loaded
    """
    try:
        return scan_pattern_directory(dir_path, normalize)
    except CaveboyError as e:
        logger.error(f"Failed to load patternset '{dir_path}': {e}")
        return None
