"""
Multi-page TIFF reading and writing with Pillow.

Stacks are (Y, X, Z) arrays; every z becomes one TIFF page.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
from PIL import Image, ImageSequence

logger = logging.getLogger(__name__)

_PAGE_MODES = {
    np.dtype(np.uint8): "L",
    np.dtype(np.uint16): "I;16",
    np.dtype(np.float32): "F",
}


def _page_image(page: np.ndarray) -> Image.Image:
    if page.dtype not in _PAGE_MODES:
        raise ValueError(f"unsupported TIFF sample type {page.dtype}")
    # fromarray picks the mode listed above from the dtype
    return Image.fromarray(np.ascontiguousarray(page))


def save_stack_as_tiff(stack: np.ndarray, path: Union[str, Path], overwrite: bool = False) -> Optional[Path]:
    """
    Write a (Y, X, Z) stack as a multi-page TIFF.

    Args:
        stack: uint8, uint16 or float32 volume (Y, X, Z); a 2D array is
               written as a single page
        path: Output file; parent directories are created
        overwrite: Replace an existing file instead of skipping it

    Returns:
        The written path, or None if the file already existed and
        overwrite is off
    """
    path = Path(path)
    if path.exists() and not overwrite:
        logger.warning(f"{path.resolve()} already exists. Refusing to overwrite.")
        return None

    stack = np.asarray(stack)
    if stack.ndim == 2:
        stack = stack[:, :, np.newaxis]
    if stack.ndim != 3 or stack.shape[2] == 0:
        raise ValueError(f"expected a non-empty (Y, X, Z) stack, got shape {stack.shape}")

    path.parent.mkdir(parents=True, exist_ok=True)

    pages = [_page_image(stack[:, :, z]) for z in range(stack.shape[2])]
    pages[0].save(path, format="TIFF", save_all=True, append_images=pages[1:])

    logger.info(f"Saved {path} ({stack.shape[2]} pages, {stack.dtype})")
    return path


def load_tiff_stack(path: Union[str, Path], dtype=None) -> np.ndarray:
    """
    Read every page of a TIFF into a (Y, X, Z) array.

    Args:
        path: TIFF file
        dtype: Optional output dtype (default: the pages' own type)

    Returns:
        3D numpy array (Y, X, Z)
    """
    with Image.open(path) as img:
        pages = [np.array(page) for page in ImageSequence.Iterator(img)]

    for index, page in enumerate(pages):
        if page.ndim != 2:
            raise ValueError(f"{path}: page {index} is not a single-channel image (shape {page.shape})")

    shapes = {page.shape for page in pages}
    if len(shapes) != 1:
        raise ValueError(f"{path}: TIFF pages have different shapes {sorted(shapes)}")

    stack = np.stack(pages, axis=2)
    if dtype is not None:
        stack = stack.astype(dtype)
    return stack
