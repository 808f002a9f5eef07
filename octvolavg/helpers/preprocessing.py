"""
Volume preprocessing: cropping B-scans and checking replicate shapes.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from ..errors import DimensionError, GroupConsistencyError
from .cancellation import CancellationToken, check_cancelled
from .oct_reader import Frame, Volume

logger = logging.getLogger(__name__)


def crop_volume(volume: Volume, crop_top: int, crop_bottom: int,
                token: Optional[CancellationToken] = None) -> Volume:
    """
    Drop rows from the top and bottom of every frame.

    Args:
        volume: Volume to crop (left untouched)
        crop_top: Number of rows to remove from the top
        crop_bottom: Number of rows to remove from the bottom
        token: Optional cancellation token, polled once per frame

    Returns:
        New Volume with height - crop_top - crop_bottom rows per frame, or the
        input volume itself when there is nothing to crop
    """
    if crop_top < 0 or crop_bottom < 0:
        raise DimensionError(volume.name, volume.height, crop_top, crop_bottom)
    if crop_top + crop_bottom == 0:
        return volume
    if crop_top + crop_bottom >= volume.height:
        raise DimensionError(volume.name, volume.height, crop_top, crop_bottom)

    rows = slice(crop_top, volume.height - crop_bottom)
    frames = []
    for frame in volume.frames:
        check_cancelled(token, f"cropping {volume.name}")
        doppler = None if frame.doppler is None else np.array(frame.doppler[rows, :])
        frames.append(Frame(
            index=frame.index,
            intensity=np.array(frame.intensity[rows, :]),
            doppler=doppler,
            timestamp=frame.timestamp,
        ))

    logger.debug(f"Cropped {volume.name}: {volume.height} -> {volume.height - crop_top - crop_bottom} rows")
    return Volume(header=volume.header, frames=tuple(frames), name=volume.name)


class VolumePreprocessor:
    """
    Crops replicate volumes with fixed top/bottom margins.
    """

    def __init__(self, crop_top: int = 0, crop_bottom: int = 0):
        """
        Args:
            crop_top: Rows to remove from the top of each B-scan
            crop_bottom: Rows to remove from the bottom of each B-scan
        """
        self.crop_top = crop_top
        self.crop_bottom = crop_bottom

    def process(self, volume: Volume, token: Optional[CancellationToken] = None) -> Volume:
        check_cancelled(token, f"preprocessing {volume.name}")
        return crop_volume(volume, self.crop_top, self.crop_bottom, token=token)


class GroupShapeValidator:
    """
    Checks, one replicate at a time, that every volume of a group has the
    same (width, height, depth) as the first one seen.
    """

    def __init__(self, group_name: str):
        self.group_name = group_name
        self.shape: Optional[Tuple[int, int, int]] = None
        self.reference_name: Optional[str] = None

    def check(self, volume: Volume):
        if self.shape is None:
            self.shape = volume.shape
            self.reference_name = volume.name
            return

        for dimension, expected, found in zip(("width", "height", "depth"), self.shape, volume.shape):
            if expected != found:
                raise GroupConsistencyError(
                    self.group_name, dimension, expected, found, self.reference_name, volume.name
                )
