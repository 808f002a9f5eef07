"""
Step 4: En-Face Conversion

Reprojects the aligned composite into en-face sections and converts both
the composite and the en-face volume to 8-bit.
"""

import logging

from ..helpers.cancellation import check_cancelled
from ..helpers.enface import to_enface
from ..helpers.normalization import to_8bit

logger = logging.getLogger(__name__)


def perform_enface_conversion(volume, inverted, token=None):
    """
    Args:
        volume: Aligned float32 composite (Y, X, Z)
        inverted: Scan direction flag (see to_enface)
        token: Optional cancellation token

    Returns:
        dict containing:
            - 'reg_avg': uint8 composite (Y, X, Z)
            - 'enface': uint8 en-face volume (S, S, Y), S = max(X, Z)
    """
    check_cancelled(token, "en-face conversion")
    logger.info("converting image to enface")
    enface = to_enface(volume, inverted)

    check_cancelled(token, "8-bit conversion")
    return {
        'reg_avg': to_8bit(volume),
        'enface': to_8bit(enface),
    }
