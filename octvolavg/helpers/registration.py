"""
Registration capabilities for replicate and whole-stack alignment.

Two seams are defined here:

- pairwise aligners: align(reference, anchor_points, moving) -> aligned
  B-scan, rigid-body, used to register every replicate slice against the
  first replicate's slice at the same z
- stack aligners: align(stack, reference_index) -> stack, translation
  only, used on the averaged (Y, X, Z) stack

Concrete aligners are looked up by name or by an importable
"module:attr" path so alternative solvers can be plugged in without
touching the pipeline.
"""

import importlib
import logging

import numpy as np
import cv2
from skimage.filters import window
from skimage.registration import phase_cross_correlation

from ..errors import ExternalCapabilityUnavailable, OCTVolAvgError
from .bscan_averaging import shift_bscan_2d

logger = logging.getLogger(__name__)

GOLDEN_RATIO = 0.5 * (np.sqrt(5.0) - 1.0)


def rigid_anchor_points(width, height):
    """
    Landmarks constraining a rigid-body fit to a vertical strip.

    One landmark sits at the image centre, the other two on the centre
    column at 0.25 * GOLDEN_RATIO * height from the top and from the bottom.
    Each source landmark maps onto the same position in the target.

    Args:
        width: B-scan width in pixels
        height: B-scan height in pixels

    Returns:
        List of ((source_x, source_y), (target_x, target_y)) pairs
    """
    half_width = width // 2
    half_height = height // 2
    offset = int(0.25 * GOLDEN_RATIO * height)

    landmarks = [
        (half_width, half_height),
        (half_width, offset),
        (half_width, height - offset),
    ]
    return [(point, point) for point in landmarks]


class PairwiseAligner:
    """Base class for rigid-body B-scan aligners."""

    name = "pairwise"

    def align(self, reference, anchor_points, moving):
        """
        Register moving onto reference.

        Args:
            reference: 2D reference B-scan (Y, X)
            anchor_points: Landmark pairs from rigid_anchor_points()
            moving: 2D B-scan (Y, X) to align

        Returns:
            Aligned float32 B-scan with the shape of moving
        """
        raise NotImplementedError


class StackAligner:
    """Base class for translation-only whole-stack aligners."""

    name = "stack"

    def align(self, stack, reference_index):
        """
        Translate every slice of stack into registration with one slice.

        Args:
            stack: 3D volume (Y, X, Z)
            reference_index: Z index of the slice the others are aligned to

        Returns:
            New (Y, X, Z) float32 stack, slices in the original z order
        """
        raise NotImplementedError


class IdentityAligner(PairwiseAligner):
    """Returns the moving image unchanged."""

    name = "identity"

    def align(self, reference, anchor_points, moving):
        return np.asarray(moving, dtype=np.float32).copy()


class IdentityStackAligner(StackAligner):
    name = "identity"

    def align(self, stack, reference_index):
        return np.asarray(stack, dtype=np.float32).copy()


def _unit_range(image):
    image = np.asarray(image, dtype=np.float32)
    peak = float(image.max()) if image.size else 0.0
    if peak <= 0:
        return image.copy()
    return image / peak


def _windowed(image):
    """Zero-mean the signal pixels and taper the borders with a Hann window."""
    image = np.asarray(image, dtype=np.float32)
    signal = image > 0
    if not signal.any():
        return image.copy()
    centred = np.where(signal, image - image[signal].mean(), 0.0)
    return centred * window('hann', image.shape)


def phase_shift(reference, moving, upsample_factor=10, windowed=False):
    """
    Sub-pixel translation between two B-scans by phase cross-correlation.

    Args:
        reference: 2D reference image
        moving: 2D image to register
        upsample_factor: Sub-pixel precision (1 / upsample_factor pixels)
        windowed: Zero-mean and Hann-window both images first; use when the
                  content is not periodic across the image border

    Returns:
        (dy, dx) translation that registers moving onto reference; (0, 0)
        when the estimate is not finite
    """
    if windowed:
        reference, moving = _windowed(reference), _windowed(moving)
    shift, error, phasediff = phase_cross_correlation(
        reference, moving, upsample_factor=upsample_factor
    )
    dy, dx = float(shift[0]), float(shift[1])
    if not (np.isfinite(dy) and np.isfinite(dx)):
        return 0.0, 0.0
    return dy, dx


class EccRigidAligner(PairwiseAligner):
    """
    Rigid-body alignment with OpenCV's ECC maximisation (MOTION_EUCLIDEAN).

    The initial warp is fitted to the anchor landmarks and offset by a coarse
    phase-correlation translation; ECC then refines it against the image
    content, ignoring background (zero) pixels of the moving image. If ECC
    fails to converge the initial warp is used as is.
    """

    name = "ecc-rigid"

    def __init__(self, max_iterations=200, epsilon=1e-6, gauss_filter_size=3, upsample_factor=10):
        self.criteria = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, max_iterations, epsilon)
        self.gauss_filter_size = gauss_filter_size
        self.upsample_factor = upsample_factor

    @staticmethod
    def landmark_warp(anchor_points):
        """Similarity transform fitted to the landmark pairs (identity if degenerate)."""
        warp = np.eye(2, 3, dtype=np.float32)
        if len(anchor_points) < 2:
            return warp

        source = np.float32([pair[0] for pair in anchor_points])
        target = np.float32([pair[1] for pair in anchor_points])
        fitted, _ = cv2.estimateAffinePartial2D(source, target)
        if fitted is None:
            return warp
        return fitted.astype(np.float32)

    def coarse_translation(self, reference, moving):
        """
        Returns:
            (tx, ty) offset of the moving image content relative to reference
        """
        dy, dx = phase_shift(reference, moving, self.upsample_factor, windowed=True)
        return -dx, -dy

    def initial_warp(self, reference, anchor_points, moving):
        warp = self.landmark_warp(anchor_points)
        tx, ty = self.coarse_translation(reference, moving)
        warp[0, 2] += tx
        warp[1, 2] += ty
        return warp

    def align(self, reference, anchor_points, moving):
        reference = np.asarray(reference, dtype=np.float32)
        moving = np.asarray(moving, dtype=np.float32)
        H, W = moving.shape

        if not np.any(reference) or not np.any(moving):
            return moving.copy()

        initial = self.initial_warp(reference, anchor_points, moving)
        logger.debug(f"  initial translation tx={initial[0, 2]:.2f}, ty={initial[1, 2]:.2f}")
        mask = (moving > 0).astype(np.uint8)
        try:
            _, warp = cv2.findTransformECC(
                _unit_range(reference), _unit_range(moving), initial.copy(),
                cv2.MOTION_EUCLIDEAN, self.criteria, mask, self.gauss_filter_size
            )
        except cv2.error as e:
            logger.warning(f"ECC alignment did not converge, using initial warp: {e}")
            warp = initial

        aligned = cv2.warpAffine(
            moving,
            warp,
            (W, H),
            flags=cv2.INTER_LINEAR + cv2.WARP_INVERSE_MAP,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=0
        )
        return aligned


class PhaseCorrelationStackAligner(StackAligner):
    """
    Translation-only slice alignment with scikit-image phase cross-correlation.

    Slices without signal (all background) are passed through unchanged.
    """

    name = "phase-correlation"

    def __init__(self, upsample_factor=10):
        self.upsample_factor = upsample_factor

    def estimate_shift(self, reference, moving):
        """
        Returns:
            (dy, dx) translation that registers moving onto reference
        """
        return phase_shift(reference, moving, self.upsample_factor)

    def align(self, stack, reference_index):
        stack = np.asarray(stack, dtype=np.float32)
        Y, X, Z = stack.shape
        reference = stack[:, :, reference_index]
        aligned = stack.copy()

        if not np.any(reference):
            logger.warning(f"Reference slice {reference_index} has no signal, skipping stack alignment")
            return aligned

        for z in range(Z):
            if z == reference_index or not np.any(stack[:, :, z]):
                continue
            dy, dx = self.estimate_shift(reference, stack[:, :, z])
            logger.debug(f"  slice {z}: shift dy={dy:.2f}, dx={dx:.2f}")
            aligned[:, :, z] = shift_bscan_2d(stack[:, :, z], dx, dy)

        return aligned


PAIRWISE_ALIGNERS = {
    EccRigidAligner.name: EccRigidAligner,
    IdentityAligner.name: IdentityAligner,
}

STACK_ALIGNERS = {
    PhaseCorrelationStackAligner.name: PhaseCorrelationStackAligner,
    IdentityStackAligner.name: IdentityStackAligner,
}


def _resolve(spec, builtins, kind):
    if not isinstance(spec, str):
        capability = spec
        label = type(spec).__name__
    elif spec in builtins:
        return builtins[spec]()
    elif ":" in spec:
        label = spec
        module_name, _, attr = spec.partition(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ExternalCapabilityUnavailable(spec, f"cannot import module {module_name!r}: {e}") from e
        try:
            capability = getattr(module, attr)
        except AttributeError as e:
            raise ExternalCapabilityUnavailable(spec, f"module {module_name!r} has no attribute {attr!r}") from e
        if isinstance(capability, type):
            try:
                capability = capability()
            except Exception as e:
                raise ExternalCapabilityUnavailable(spec, f"cannot instantiate {attr!r}: {e}") from e
    else:
        known = ", ".join(sorted(builtins))
        raise ExternalCapabilityUnavailable(spec, f"unknown {kind} aligner (built-in: {known}; or use module:attr)")

    if not callable(getattr(capability, "align", None)):
        raise ExternalCapabilityUnavailable(label, f"{kind} aligner has no callable align()")
    return capability


def resolve_pairwise_aligner(spec):
    """
    Locate a rigid-body aligner.

    Args:
        spec: Built-in name ("ecc-rigid", "identity"), "module:attr" path,
              or an object with an align(reference, anchor_points, moving) method

    Returns:
        Aligner instance

    Raises:
        ExternalCapabilityUnavailable: if it cannot be located
    """
    return _resolve(spec, PAIRWISE_ALIGNERS, "pairwise")


def resolve_stack_aligner(spec):
    """
    Locate a translation-only stack aligner.

    Args:
        spec: Built-in name ("phase-correlation", "identity"), "module:attr"
              path, or an object with an align(stack, reference_index) method

    Returns:
        Aligner instance

    Raises:
        ExternalCapabilityUnavailable: if it cannot be located
    """
    return _resolve(spec, STACK_ALIGNERS, "stack")


def aligner_label(aligner):
    return getattr(aligner, "name", type(aligner).__name__)


def invoke_aligner(aligner, *args, expected_shape=None):
    """
    Call aligner.align(*args), reporting solver failures as an unavailable
    capability.

    Args:
        aligner: Pairwise or stack aligner
        *args: Arguments for align()
        expected_shape: Shape the result must have, if given

    Returns:
        float32 array returned by the aligner
    """
    try:
        result = aligner.align(*args)
    except OCTVolAvgError:
        raise
    except Exception as e:
        raise ExternalCapabilityUnavailable(aligner_label(aligner), f"align() failed: {e}") from e

    result = np.asarray(result, dtype=np.float32)
    if expected_shape is not None and result.shape != tuple(expected_shape):
        raise ExternalCapabilityUnavailable(
            aligner_label(aligner),
            f"align() returned shape {result.shape}, expected {tuple(expected_shape)}"
        )
    return result
