"""
OCT Replicate Averaging Pipeline

Combines repeated OCT scans of the same retinal volume into one denoised
composite and its en-face reprojection.

For every replicate group:
    1. Stream the replicate volumes, crop them and check they share one shape
    2. Register each replicate B-scan against the first replicate (per z)
    3. Average the aligned B-scans, ignoring background pixels
    4. Align the averaged stack to its middle B-scan
    5. Reproject to en-face, convert to 8-bit and save both stacks

Usage:
    octvolavg --input-dir scans/ --output-dir results/ --crop-top 40
    octvolavg --header-only scans/P01_OD_V_1.OCT
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote_plus

import numpy as np

from .config import PipelineConfig
from .errors import DecodeError, OCTVolAvgError
from .helpers.cancellation import CancellationToken, check_cancelled
from .helpers.group_executor import GroupResult, GroupTask, create_executor
from .helpers.oct_loader import INPUT_FORMATS, OCTVolumeLoader, find_replicate_groups
from .helpers.oct_reader import OCTReader, Volume
from .helpers.preprocessing import GroupShapeValidator, VolumePreprocessor
from .helpers.registration import resolve_pairwise_aligner, resolve_stack_aligner
from .helpers.tiff_io import save_stack_as_tiff
from .logging_config import setup_logging
from .steps import (
    ReplicateSlices,
    perform_enface_conversion,
    perform_replicate_alignment,
    perform_slice_averaging,
    perform_stack_alignment
)

logger = logging.getLogger(__name__)

REG_AVG_SUFFIX = "regAvgImg"
ENFACE_SUFFIX = "rotatedRegAvgImg"
INTERMEDIATE_DIR = "raw-images"


def _intermediate_stack(volume: Volume) -> np.ndarray:
    dtype = volume.frames[0].intensity.dtype
    if dtype not in (np.uint8, np.uint16, np.float32):
        dtype = np.float32
    return volume.to_stack(dtype=dtype)


class AveragingPipeline:
    """
    Runs the replicate averaging steps for one or more groups.
    """

    def __init__(self,
                 config: PipelineConfig,
                 token: Optional[CancellationToken] = None,
                 loader: Optional[OCTVolumeLoader] = None,
                 pairwise_aligner=None,
                 stack_aligner=None):
        """
        Args:
            config: Pipeline settings
            token: Cancellation token shared with the caller
            loader: Volume loader (default: OCTVolumeLoader())
            pairwise_aligner: Aligner object overriding config.pairwise_aligner
            stack_aligner: Aligner object overriding config.stack_aligner
        """
        self.config = config
        self.token = token or CancellationToken()
        self.loader = loader or OCTVolumeLoader()
        self.pairwise_aligner = pairwise_aligner
        self.stack_aligner = stack_aligner

    def resolve_aligners(self):
        """
        Returns:
            (pairwise_aligner, stack_aligner)

        Raises:
            ExternalCapabilityUnavailable: if either cannot be located
        """
        pairwise = resolve_pairwise_aligner(self.pairwise_aligner or self.config.pairwise_aligner)
        stack = resolve_stack_aligner(self.stack_aligner or self.config.stack_aligner)
        return pairwise, stack

    def group_dir(self, group_name: str) -> Optional[Path]:
        if self.config.output_dir is None:
            return None
        return self.config.output_dir / group_name

    def _save(self, stack, path, outputs, key):
        saved = save_stack_as_tiff(stack, path, overwrite=self.config.overwrite)
        if saved is not None:
            outputs[key] = saved

    def _load_replicates(self, group_name: str, files: List[Path], outputs: Dict[str, Path]):
        preprocessor = VolumePreprocessor(self.config.crop_top, self.config.crop_bottom)
        validator = GroupShapeValidator(group_name)
        replicate_slices = ReplicateSlices()
        group_dir = self.group_dir(group_name)

        for volume in self.loader.iter_volumes(files, token=self.token):
            if volume.depth == 0:
                raise DecodeError("volume has no frames", source=volume.name)

            cropped = preprocessor.process(volume, token=self.token)
            validator.check(cropped)

            if self.config.keep_intermediate and group_dir is not None:
                check_cancelled(self.token, f"saving {cropped.name}")
                path = group_dir / INTERMEDIATE_DIR / f"{quote_plus(cropped.name)}.tif"
                self._save(_intermediate_stack(cropped), path, outputs, f"{INTERMEDIATE_DIR}/{cropped.name}")

            replicate_slices.add_replicate(cropped, token=self.token)

        if validator.shape is None:
            raise OCTVolAvgError(f"group {group_name!r} has no replicate volumes")
        return replicate_slices, validator.shape

    def process_group(self, group_name: str, files: List[Path]) -> GroupResult:
        """
        Run every step for one replicate group.

        Args:
            group_name: Group identifier (used for output names)
            files: Replicate files; the first one is the registration reference

        Returns:
            Successful GroupResult with the 8-bit stacks and written paths

        Raises:
            OCTVolAvgError: any pipeline error, including CancellationRequested
        """
        check_cancelled(self.token, f"group {group_name}")
        pairwise, stack_aligner = self.resolve_aligners()

        outputs: Dict[str, Path] = {}
        replicate_slices, (width, height, depth) = self._load_replicates(group_name, files, outputs)
        logger.info(f"Group {group_name}: {replicate_slices.replicates} replicates of {width}x{height}x{depth}")

        aligned_sets = perform_replicate_alignment(replicate_slices, pairwise, token=self.token)
        composite = perform_slice_averaging(aligned_sets, (height, width, depth), token=self.token)

        aligned = perform_stack_alignment(composite, stack_aligner, token=self.token)['volume']
        products = perform_enface_conversion(aligned, self.config.inverted, token=self.token)

        check_cancelled(self.token, "saving image stacks")
        group_dir = self.group_dir(group_name)
        if group_dir is not None:
            logger.info("saving image stacks")
            self._save(products['reg_avg'], group_dir / f"{group_name}_{REG_AVG_SUFFIX}.tif", outputs, REG_AVG_SUFFIX)
            check_cancelled(self.token, "saving image stacks")
            self._save(products['enface'], group_dir / f"{group_name}_{ENFACE_SUFFIX}.tif", outputs, ENFACE_SUFFIX)

        return GroupResult(
            name=group_name,
            success=True,
            reg_avg=products['reg_avg'],
            enface=products['enface'],
            outputs=outputs,
        )

    def process_groups(self, groups: Dict[str, List[Path]]) -> List[GroupResult]:
        """
        Process groups in order, isolating failures per group.

        Args:
            groups: Group name -> replicate files

        Returns:
            One GroupResult per group attempted; groups skipped after a
            cancellation have no result
        """
        tasks = [GroupTask(name=name, files=list(files)) for name, files in groups.items()]
        executor = create_executor(max_workers=self.config.max_workers, token=self.token)
        return executor.execute(tasks, lambda task: self.process_group(task.name, task.files))

    def run(self, input_dir) -> List[GroupResult]:
        """Group the replicate files under input_dir and process every group."""
        groups = find_replicate_groups(input_dir, self.config.input_format)
        if not groups:
            logger.warning(f"No replicate files found in {input_dir}")
            return []

        logger.info(f"Found {len(groups)} replicate groups in {input_dir}")
        return self.process_groups(groups)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='octvolavg',
        description='Average replicate OCT volumes and reproject them to en-face',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Average every <subject>_O[DS]_V_*.OCT group under scans/
  octvolavg --input-dir scans/ --output-dir results/ --crop-top 40 --crop-bottom 20

  # Print the header of one container
  octvolavg --header-only scans/P01_OD_V_1.OCT
        """
    )

    parser.add_argument('--input-dir', type=Path, default=None,
                        help='Directory searched recursively for replicate files')
    parser.add_argument('--output-dir', type=Path, default=None,
                        help='Directory receiving one subdirectory per group')
    parser.add_argument('--crop-top', type=int, default=0,
                        help='Pixels to crop from the top of every B-scan')
    parser.add_argument('--crop-bottom', type=int, default=0,
                        help='Pixels to crop from the bottom of every B-scan')
    parser.add_argument('--inverted', action='store_true',
                        help='Scans were acquired in inverted direction')
    parser.add_argument('--keep-intermediate', action='store_true',
                        help='Also save each cropped replicate as a TIFF')
    parser.add_argument('--format', choices=INPUT_FORMATS, default='auto',
                        help='Input file type (default: OCT if present, else TIFF)')
    parser.add_argument('--pairwise-aligner', type=str, default='ecc-rigid',
                        help='Rigid-body aligner: ecc-rigid, identity or module:attr')
    parser.add_argument('--stack-aligner', type=str, default='phase-correlation',
                        help='Stack aligner: phase-correlation, identity or module:attr')
    parser.add_argument('--workers', type=int, default=1,
                        help='Groups processed concurrently (default: 1)')
    parser.add_argument('--overwrite', action='store_true',
                        help='Replace existing output files')
    parser.add_argument('--header-only', type=Path, default=None, metavar='FILE',
                        help='Print the header of one .OCT file and exit')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Also write the log to this file')
    parser.add_argument('--verbose', action='store_true',
                        help='Debug logging')
    return parser


def print_header(path) -> int:
    try:
        header = OCTReader().read_header(path)
    except DecodeError as e:
        logger.error(f"Cannot read header: {e}")
        return 1
    print(header.summary())
    return 0


def main(argv=None) -> int:
    """Command line entry point; returns the process exit code."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    if args.header_only is not None:
        return print_header(args.header_only)

    if args.input_dir is None:
        parser.error("--input-dir is required unless --header-only is given")
    try:
        config = PipelineConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    token = CancellationToken()

    def on_interrupt(signum, frame):
        logger.warning("Interrupt received, cancelling after the current step")
        token.cancel()

    previous_handler = signal.signal(signal.SIGINT, on_interrupt)
    try:
        results = AveragingPipeline(config, token=token).run(args.input_dir)
    except NotADirectoryError as e:
        logger.error(str(e))
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    for result in results:
        logger.info(f"  {result}")
    return 0 if all(r.success for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
