"""
Step 1: Replicate Alignment

Splits every replicate volume into its B-scans and registers, for each z,
the replicate B-scans against the first replicate's B-scan at that z, never
against the previous replicate.
"""

import logging

from ..helpers.cancellation import check_cancelled
from ..helpers.registration import invoke_aligner, rigid_anchor_points

logger = logging.getLogger(__name__)


class ReplicateSlices:
    """
    Per-z B-scans of every replicate in a group, in replicate order.

    slices[z][r] is the B-scan at depth index z of replicate r.

    Every replicate's frames stay in memory until their z is aligned and
    released, so peak memory is replicates x width x height x depth samples.
    """

    def __init__(self):
        self.slices = []
        self.replicates = 0

    @property
    def depth(self):
        return len(self.slices)

    def add_replicate(self, volume, token=None):
        """
        Append the B-scans of one (already validated) replicate volume.

        Args:
            volume: Volume with the group's shape
            token: Optional cancellation token, polled per frame
        """
        if not self.slices:
            self.slices = [[] for _ in range(volume.depth)]
        for z, frame in enumerate(volume.frames):
            check_cancelled(token, f"slicing {volume.name}")
            self.slices[z].append(frame.intensity)
        self.replicates += 1

    def release(self, z):
        """Drop the B-scans at z once they have been consumed."""
        self.slices[z] = None


def align_slice_set(bscans, aligner, token=None):
    """
    Register replicate B-scans at one z against the first replicate.

    Args:
        bscans: List of 2D B-scans (Y, X), first one is the reference
        aligner: Pairwise aligner
        token: Optional cancellation token, polled per replicate

    Returns:
        List of float32 B-scans; the reference is passed through as is
    """
    reference = bscans[0]
    height, width = reference.shape
    anchor_points = rigid_anchor_points(width, height)

    aligned = [reference.astype('float32')]
    for moving in bscans[1:]:
        check_cancelled(token, "pairwise alignment")
        aligned.append(invoke_aligner(aligner, reference, anchor_points, moving, expected_shape=moving.shape))
    return aligned


def perform_replicate_alignment(replicate_slices, aligner, token=None):
    """
    Yield the aligned slice set for every z, in z order.

    The B-scans of a z are released as soon as their aligned set has been
    produced.

    Args:
        replicate_slices: ReplicateSlices for the group
        aligner: Pairwise aligner
        token: Optional cancellation token, polled per z

    Yields:
        (z, aligned_bscans)
    """
    for z in range(replicate_slices.depth):
        check_cancelled(token, f"registering frame {z + 1}")
        logger.info(f"registering slices at frame {z + 1}")

        aligned = align_slice_set(replicate_slices.slices[z], aligner, token=token)
        replicate_slices.release(z)
        yield z, aligned
