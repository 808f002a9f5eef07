"""
Helper functions for OCT replicate averaging

This package contains the OCT container reader/writer, volume loading and
preprocessing, registration capabilities, averaging, en-face reprojection
and TIFF output.
"""

from .cancellation import CancellationToken, check_cancelled
from .oct_reader import (
    Frame,
    FrameTimestamp,
    OCTReader,
    Volume,
    VolumeHeader,
    decode_oct,
    read_oct
)
from .oct_writer import encode_oct, write_oct
from .oct_loader import (
    OCT_IMAGE_PATTERN,
    TIFF_IMAGE_PATTERN,
    OCTVolumeLoader,
    find_replicate_groups,
    group_image_files
)
from .preprocessing import GroupShapeValidator, VolumePreprocessor, crop_volume
from .registration import (
    EccRigidAligner,
    IdentityAligner,
    IdentityStackAligner,
    PhaseCorrelationStackAligner,
    phase_shift,
    resolve_pairwise_aligner,
    resolve_stack_aligner,
    rigid_anchor_points
)
from .bscan_averaging import shift_bscan_2d, z_project_mean
from .enface import to_enface
from .normalization import to_8bit
from .tiff_io import load_tiff_stack, save_stack_as_tiff

__all__ = [
    'CancellationToken',
    'check_cancelled',
    'Frame',
    'FrameTimestamp',
    'OCTReader',
    'Volume',
    'VolumeHeader',
    'decode_oct',
    'read_oct',
    'encode_oct',
    'write_oct',
    'OCT_IMAGE_PATTERN',
    'TIFF_IMAGE_PATTERN',
    'OCTVolumeLoader',
    'find_replicate_groups',
    'group_image_files',
    'GroupShapeValidator',
    'VolumePreprocessor',
    'crop_volume',
    'EccRigidAligner',
    'IdentityAligner',
    'IdentityStackAligner',
    'PhaseCorrelationStackAligner',
    'phase_shift',
    'resolve_pairwise_aligner',
    'resolve_stack_aligner',
    'rigid_anchor_points',
    'shift_bscan_2d',
    'z_project_mean',
    'to_enface',
    'to_8bit',
    'load_tiff_stack',
    'save_stack_as_tiff',
]
