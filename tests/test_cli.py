import pytest

from octvolavg.averaging_pipeline import main
from octvolavg.helpers.oct_reader import VolumeHeader
from octvolavg.helpers.oct_writer import write_oct


def test_header_only_prints_summary(tmp_path, capsys, make_volume):
    path = tmp_path / "P01_OD_V_1.OCT"
    write_oct(make_volume(depth=3, header=VolumeHeader(version=104, description="fovea")), path)

    assert main(["--header-only", str(path)]) == 0

    out = capsys.readouterr().out
    assert "Frame Count: 3" in out
    assert "Description: fovea" in out


def test_header_only_bad_file(tmp_path):
    path = tmp_path / "broken.OCT"
    path.write_bytes(b"\x00\x01")

    assert main(["--header-only", str(path)]) == 1


def test_runs_pipeline(tmp_path, make_volume, write_replicates):
    write_replicates("P01_OD", [make_volume(seed=1), make_volume(seed=2)])
    log_file = tmp_path / "run.log"

    code = main([
        "--input-dir", str(tmp_path / "scans"), "--output-dir", str(tmp_path / "out"),
        "--pairwise-aligner", "identity", "--stack-aligner", "identity",
        "--log-file", str(log_file),
    ])

    assert code == 0
    assert (tmp_path / "out" / "P01_OD" / "P01_OD_rotatedRegAvgImg.tif").exists()
    log = log_file.read_text()
    assert "registering slices at frame 1" in log
    assert "registering image stack" in log
    assert "converting image to enface" in log
    assert "saving image stacks" in log


def test_failed_group_sets_exit_code(tmp_path, make_volume, write_replicates):
    write_replicates("P01_OD", [make_volume(height=5)])

    code = main([
        "--input-dir", str(tmp_path / "scans"), "--crop-top", "5",
        "--pairwise-aligner", "identity", "--stack-aligner", "identity",
    ])

    assert code == 1


def test_missing_input_dir_is_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 2


def test_negative_crop_is_usage_error(tmp_path):
    with pytest.raises(SystemExit):
        main(["--input-dir", str(tmp_path), "--crop-top", "-1"])


def test_input_dir_must_exist(tmp_path):
    assert main(["--input-dir", str(tmp_path / "missing")]) == 1
