"""
Helper functions for averaging and shifting 2D B-scans.

Zero is the background value throughout: a pixel equal to 0 carries no
signal and never enters an average.
"""

import numpy as np
import cv2


def z_project_mean(bscans):
    """
    Average aligned replicate B-scans, ignoring background pixels.

    Args:
        bscans: Sequence of 2D B-scans (Y, X) of identical shape, or a
                3D array (Y, X, N) with the replicates along the last axis

    Returns:
        averaged: float32 (Y, X) array; each pixel is the mean of the
                  non-zero inputs at that location, 0.0 where every input is 0
    """
    if isinstance(bscans, np.ndarray) and bscans.ndim == 3:
        stack = bscans.astype(np.float64)
    else:
        if len(bscans) == 0:
            raise ValueError("z_project_mean needs at least one B-scan")
        shapes = {np.shape(b) for b in bscans}
        if len(shapes) != 1:
            raise ValueError(f"B-scans must share one shape, got {sorted(shapes)}")
        stack = np.stack([np.asarray(b, dtype=np.float64) for b in bscans], axis=2)

    signal = stack != 0
    total = np.sum(stack, axis=2, where=signal)
    count = np.count_nonzero(signal, axis=2)

    averaged = np.zeros(total.shape, dtype=np.float64)
    np.divide(total, count, out=averaged, where=count > 0)
    return averaged.astype(np.float32)


def shift_bscan_2d(bscan, dx, dy):
    """
    Apply 2D shift to a single B-scan using OpenCV.

    Args:
        bscan: 2D B-scan (Y, X)
        dx: X-axis shift in pixels (lateral, positive = right)
        dy: Y-axis shift in pixels (depth, positive = down)

    Returns:
        shifted_bscan: Shifted float32 B-scan with same shape (Y, X);
                       uncovered pixels are background (0)
    """
    if abs(dx) < 0.01 and abs(dy) < 0.01:
        return np.asarray(bscan, dtype=np.float32).copy()

    H, W = bscan.shape

    M = np.float32([[1, 0, dx], [0, 1, dy]])

    shifted = cv2.warpAffine(
        np.asarray(bscan, dtype=np.float32),
        M,
        (W, H),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0
    )

    return shifted
