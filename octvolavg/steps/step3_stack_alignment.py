"""
Step 3: Whole-Stack Alignment

Translates every averaged B-scan into registration with the middle one.
"""

import logging

from ..helpers.cancellation import check_cancelled
from ..helpers.registration import invoke_aligner

logger = logging.getLogger(__name__)


def perform_stack_alignment(composite, aligner, token=None):
    """
    Args:
        composite: float32 volume (Y, X, Z)
        aligner: Stack aligner
        token: Optional cancellation token

    Returns:
        dict containing:
            - 'volume': aligned float32 volume (Y, X, Z), original z order
            - 'reference_index': z index of the reference slice (Z // 2)
    """
    check_cancelled(token, "stack alignment")
    logger.info("registering image stack")

    reference_index = composite.shape[2] // 2
    aligned = invoke_aligner(aligner, composite, reference_index, expected_shape=composite.shape)

    return {
        'volume': aligned,
        'reference_index': reference_index,
    }
