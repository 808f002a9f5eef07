"""
Step 2: Slice Averaging

Averages each aligned slice set into one B-scan and assembles the
composite (Y, X, Z) stack.
"""

import numpy as np

from ..helpers.bscan_averaging import z_project_mean
from ..helpers.cancellation import check_cancelled


def perform_slice_averaging(aligned_sets, shape, token=None):
    """
    Build the composite volume from aligned slice sets.

    Args:
        aligned_sets: Iterable of (z, aligned_bscans) as produced by
                      perform_replicate_alignment
        shape: (Y, X, Z) of the composite
        token: Optional cancellation token

    Returns:
        composite: float32 volume (Y, X, Z)
    """
    composite = np.zeros(shape, dtype=np.float32)
    for z, aligned in aligned_sets:
        check_cancelled(token, f"averaging frame {z + 1}")
        composite[:, :, z] = z_project_mean(aligned)
    return composite
