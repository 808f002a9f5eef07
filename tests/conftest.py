import logging

import numpy as np
import pytest

from octvolavg.helpers.oct_reader import Frame, FrameTimestamp, Volume, VolumeHeader
from octvolavg.helpers.oct_writer import write_oct


def build_volume(width=6, height=5, depth=3, name="vol", seed=0, doppler=False,
                 timestamps=False, header=None, low=1, high=4000):
    """Volume of random non-zero uint16 samples with the given frame size."""
    rng = np.random.default_rng(seed)
    frames = []
    for z in range(depth):
        intensity = rng.integers(low, high, size=(height, width)).astype(np.uint16)
        doppler_grid = rng.integers(0, 65535, size=(height, width)).astype(np.uint16) if doppler else None
        timestamp = FrameTimestamp(2012, 5, 3, 16, 14, 30, 12, (100 * z) % 1000) if timestamps else None
        frames.append(Frame(index=z, intensity=intensity, doppler=doppler_grid, timestamp=timestamp))
    if header is None:
        header = VolumeHeader(version=104, description="synthetic scan", doppler_flag=doppler)
    return Volume(header=header, frames=tuple(frames), name=name)


@pytest.fixture
def make_volume():
    return build_volume


@pytest.fixture
def write_replicates(tmp_path):
    """Write replicate volumes as .OCT files named <group>_V_<n>.OCT."""
    def write(group, volumes, directory=None):
        directory = directory or tmp_path / "scans"
        directory.mkdir(parents=True, exist_ok=True)
        paths = []
        for i, volume in enumerate(volumes, start=1):
            path = directory / f"{group}_V_{i}.OCT"
            write_oct(volume, path)
            paths.append(path)
        return paths
    return write


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logging.getLogger("octvolavg").handlers.clear()
