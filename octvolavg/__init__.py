"""
octvolavg: replicate averaging and en-face reprojection of Bioptigen OCT volumes.
"""

from .errors import (
    CancellationRequested,
    DecodeError,
    DimensionError,
    ExternalCapabilityUnavailable,
    GroupConsistencyError,
    OCTVolAvgError
)
from .config import PipelineConfig
from .helpers.cancellation import CancellationToken
from .helpers.group_executor import GroupResult
from .helpers.oct_reader import Frame, FrameTimestamp, OCTReader, Volume, VolumeHeader, read_oct
from .averaging_pipeline import AveragingPipeline, main

__version__ = "0.1.0"

__all__ = [
    'CancellationRequested',
    'DecodeError',
    'DimensionError',
    'ExternalCapabilityUnavailable',
    'GroupConsistencyError',
    'OCTVolAvgError',
    'PipelineConfig',
    'CancellationToken',
    'GroupResult',
    'Frame',
    'FrameTimestamp',
    'OCTReader',
    'Volume',
    'VolumeHeader',
    'read_oct',
    'AveragingPipeline',
    'main',
]
