"""
Error taxonomy for OCT volume averaging.

All errors share OCTVolAvgError so the orchestrator can isolate one failing
replicate group from its siblings with a single except clause.
"""


class OCTVolAvgError(Exception):
    """Base class for every error raised by octvolavg."""


class DecodeError(OCTVolAvgError):
    """
    Malformed or truncated OCT container.

    Args:
        message: What went wrong
        source: File name (or other identifier) of the container
        offset: Byte offset where the problem was detected
        expected: What the decoder expected to find
        found: What it actually found
    """

    def __init__(self, message, source=None, offset=None, expected=None, found=None):
        self.message = message
        self.source = source
        self.offset = offset
        self.expected = expected
        self.found = found
        super().__init__(str(self))

    def __str__(self):
        parts = [self.message]
        if self.offset is not None:
            parts.append(f"at byte offset {self.offset}")
        if self.expected is not None or self.found is not None:
            parts.append(f"(expected {self.expected!r}, found {self.found!r})")
        text = " ".join(parts)
        if self.source is not None:
            text = f"{self.source}: {text}"
        return text


class DimensionError(OCTVolAvgError):
    """Crop parameters do not fit inside the frame height."""

    def __init__(self, volume_name, height, crop_top, crop_bottom):
        self.volume_name = volume_name
        self.height = height
        self.crop_top = crop_top
        self.crop_bottom = crop_bottom
        super().__init__(
            f"cannot crop {crop_top} (top) + {crop_bottom} (bottom) pixels from "
            f"{volume_name!r} with frame height {height}"
        )


class GroupConsistencyError(OCTVolAvgError):
    """Replicates in one group disagree on their post-crop dimensions."""

    def __init__(self, group_name, dimension, expected, found, reference_volume, volume):
        self.group_name = group_name
        self.dimension = dimension
        self.expected = expected
        self.found = found
        self.reference_volume = reference_volume
        self.volume = volume
        super().__init__(
            f"group {group_name!r}: the {dimension} of {found} in {volume!r} "
            f"doesn't match the {dimension} of {expected} in {reference_volume!r}"
        )


class ExternalCapabilityUnavailable(OCTVolAvgError):
    """A registration capability could not be located or invoked."""

    def __init__(self, capability, reason):
        self.capability = capability
        self.reason = reason
        super().__init__(f"registration capability {capability!r} is unavailable: {reason}")


class CancellationRequested(OCTVolAvgError):
    """Raised when the cancellation token is set; not a real failure."""

    def __init__(self, where=None):
        self.where = where
        super().__init__("processing cancelled" + (f" during {where}" if where else ""))
