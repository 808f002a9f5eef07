"""
En-face reprojection of averaged OCT stacks.

The averaged stack is (Y, X, Z): Y is depth inside a B-scan, X the lateral
position and Z the B-scan index. The en-face view has one image per depth
row Y, each showing the X-Z plane resampled to a square.
"""

import numpy as np
import cv2


def enface_slice(volume, y):
    """
    X-Z plane at depth row y, with the B-scan order reversed.

    Args:
        volume: 3D volume (Y, X, Z)
        y: Depth row

    Returns:
        2D float32 array (Z, X) where [z, x] = volume[y, x, Z - z - 1]
    """
    return np.ascontiguousarray(volume[y, :, ::-1].T, dtype=np.float32)


def to_enface(volume, inverted):
    """
    Reproject a (Y, X, Z) stack into en-face sections.

    Args:
        volume: 3D float volume (Y, X, Z)
        inverted: Scan direction flag; True emits sections for y ascending,
                  False for y descending

    Returns:
        float32 volume (S, S, Y) with S = max(X, Z), bilinearly resampled
    """
    Y, X, Z = volume.shape
    size = max(X, Z)

    rows = range(Y) if inverted else range(Y - 1, -1, -1)

    enface = np.zeros((size, size, Y), dtype=np.float32)
    for i, y in enumerate(rows):
        section = enface_slice(volume, y)
        if section.shape != (size, size):
            section = cv2.resize(section, (size, size), interpolation=cv2.INTER_LINEAR)
        enface[:, :, i] = section

    return enface
