"""
Pipeline configuration.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .helpers.oct_loader import INPUT_FORMATS


@dataclass
class PipelineConfig:
    """
    Settings shared by every replicate group of one run.

    Args:
        output_dir: Directory receiving one subdirectory per group (None
                    keeps results in memory only)
        crop_top: Rows removed from the top of every B-scan
        crop_bottom: Rows removed from the bottom of every B-scan
        inverted: Scan direction of the acquisition (see to_enface)
        keep_intermediate: Also save each cropped replicate under raw-images/
        pairwise_aligner: Rigid-body aligner name or "module:attr" path
        stack_aligner: Translation-only stack aligner name or "module:attr" path
        max_workers: Groups processed concurrently (1 = sequential)
        input_format: "auto", "oct" or "tiff"
        overwrite: Replace existing output files instead of skipping them
    """

    output_dir: Optional[Path] = None
    crop_top: int = 0
    crop_bottom: int = 0
    inverted: bool = False
    keep_intermediate: bool = False
    pairwise_aligner: str = "ecc-rigid"
    stack_aligner: str = "phase-correlation"
    max_workers: int = 1
    input_format: str = "auto"
    overwrite: bool = False

    def __post_init__(self):
        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)

    def validate(self):
        """Raise ValueError for settings no group could be processed with."""
        if self.crop_top < 0 or self.crop_bottom < 0:
            raise ValueError(
                f"crop values must be non-negative, got top={self.crop_top}, bottom={self.crop_bottom}"
            )
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.input_format not in INPUT_FORMATS:
            raise ValueError(f"input_format must be one of {INPUT_FORMATS}, got {self.input_format!r}")
        return self

    @classmethod
    def from_args(cls, args) -> "PipelineConfig":
        """Build a validated config from the namespace of build_arg_parser()."""
        return cls(
            output_dir=args.output_dir,
            crop_top=args.crop_top,
            crop_bottom=args.crop_bottom,
            inverted=args.inverted,
            keep_intermediate=args.keep_intermediate,
            pairwise_aligner=args.pairwise_aligner,
            stack_aligner=args.stack_aligner,
            max_workers=args.workers,
            input_format=args.format,
            overwrite=args.overwrite,
        ).validate()
