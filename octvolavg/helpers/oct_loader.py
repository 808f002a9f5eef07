"""
OCT replicate discovery and lazy volume loading.

Replicate scans follow the instrument's naming convention
<subject>_OD_V_<...>.OCT (or _OS_ for the left eye); every file sharing the
<subject>_O[DS] prefix is one replicate of the same volume.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Pattern, Union

from ..errors import DecodeError
from .cancellation import CancellationToken, check_cancelled
from .oct_reader import OCTReader, Volume
from .tiff_io import load_tiff_stack

logger = logging.getLogger(__name__)

OCT_IMAGE_PATTERN = re.compile(r"^(.+_O[DS])_V_.+.OCT$", re.IGNORECASE)
TIFF_IMAGE_PATTERN = re.compile(r"^(.+_O[DS])_V_.+.TIFF?$", re.IGNORECASE)

INPUT_FORMATS = ("auto", "oct", "tiff")


def group_image_files(input_dir: Union[str, Path], pattern: Pattern) -> Dict[str, List[Path]]:
    """
    Recursively collect files matching pattern, grouped by its first capture.

    Args:
        input_dir: Directory to search (subdirectories included)
        pattern: Compiled regex matched against file names; group 1 is the
                 replicate group name

    Returns:
        Dict of group name -> sorted file list, in the order the groups were
        first seen while walking the tree in sorted order
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise NotADirectoryError(f"{input_dir} is not a directory")

    groups: Dict[str, List[Path]] = {}
    for path in sorted(input_dir.rglob("*")):
        if not path.is_file():
            continue
        match = pattern.match(path.name)
        if match is None:
            continue
        groups.setdefault(match.group(1), []).append(path)

    for files in groups.values():
        files.sort()
    return groups


def find_replicate_groups(input_dir: Union[str, Path], input_format: str = "auto") -> Dict[str, List[Path]]:
    """
    Group replicate files, choosing OCT or TIFF inputs.

    With input_format "auto", OCT containers are used when any are present,
    TIFF stacks otherwise.
    """
    if input_format not in INPUT_FORMATS:
        raise ValueError(f"input_format must be one of {INPUT_FORMATS}, got {input_format!r}")

    if input_format in ("auto", "oct"):
        groups = group_image_files(input_dir, OCT_IMAGE_PATTERN)
        if groups or input_format == "oct":
            return groups
    return group_image_files(input_dir, TIFF_IMAGE_PATTERN)


class OCTVolumeLoader:
    """
    Loads replicate volumes one file at a time.
    """

    def __init__(self, reader: Optional[OCTReader] = None):
        """
        Args:
            reader: Container decoder used for .OCT files (default: OCTReader())
        """
        self.reader = reader or OCTReader()

    def load_volume(self, path: Union[str, Path], token: Optional[CancellationToken] = None) -> Volume:
        """
        Load one replicate, named after the file without its extension.

        Args:
            path: .OCT container or multi-page TIFF
            token: Optional cancellation token

        Returns:
            Volume
        """
        path = Path(path)
        logger.info(f"Reading {path.resolve()}")

        if path.suffix.lower() == ".oct":
            return self.reader.read(path, token=token)

        try:
            stack = load_tiff_stack(path)
            return Volume.from_stack(stack, name=path.stem)
        except OSError as e:
            raise DecodeError(f"cannot read TIFF stack: {e}", source=str(path)) from e
        except ValueError as e:
            raise DecodeError(str(e), source=str(path)) from e

    def iter_volumes(self, paths: Iterable[Union[str, Path]],
                     token: Optional[CancellationToken] = None) -> Iterator[Volume]:
        """
        Lazily yield one Volume per path, in order.

        Only the volume being yielded is held by the loader.
        """
        for path in paths:
            check_cancelled(token, "loading replicates")
            yield self.load_volume(path, token=token)
