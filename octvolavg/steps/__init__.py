"""
Averaging pipeline steps, run in order for every replicate group.
"""

from .step1_replicate_alignment import (
    ReplicateSlices,
    align_slice_set,
    perform_replicate_alignment
)

from .step2_slice_averaging import perform_slice_averaging

from .step3_stack_alignment import perform_stack_alignment

from .step4_enface import perform_enface_conversion

__all__ = [
    'ReplicateSlices',
    'align_slice_set',
    'perform_replicate_alignment',
    'perform_slice_averaging',
    'perform_stack_alignment',
    'perform_enface_conversion',
]
