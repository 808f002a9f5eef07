"""
Conversion of floating-point composites to 8-bit.
"""

import numpy as np


def intensity_range(volume):
    """
    Background-aware intensity range.

    Returns:
        (min_val, max_val): smallest strictly positive value and largest
        value overall, or None if the volume holds no signal
    """
    volume = np.asarray(volume)
    positive = volume[volume > 0]
    if positive.size == 0:
        return None
    return float(positive.min()), float(volume.max())


def to_8bit(volume):
    """
    Rescale a float volume to uint8 using the background-aware range.

    Zero stays zero. Any other value v becomes round((v - min_val) * 255 /
    (max_val - min_val)), rounded half up and clamped to [0, 255]. When all
    signal pixels share one value they map to 255.

    Args:
        volume: float array of any shape

    Returns:
        uint8 array of the same shape
    """
    volume = np.asarray(volume, dtype=np.float64)
    result = np.zeros(volume.shape, dtype=np.uint8)

    value_range = intensity_range(volume)
    if value_range is None:
        return result
    min_val, max_val = value_range

    signal = volume != 0
    if max_val <= min_val:
        result[signal] = 255
        return result

    scale = 255.0 / (max_val - min_val)
    scaled = np.floor((volume[signal] - min_val) * scale + 0.5)
    result[signal] = np.clip(scaled, 0, 255).astype(np.uint8)
    return result
