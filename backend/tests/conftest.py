"""
Shared fixtures for encoder process tests.

The fake encoders are small executable Python scripts that stand in for the
ffmpeg binary. They receive the same argument vector ffmpeg would and write
their output to the last argument.
"""

import sys
import textwrap
from pathlib import Path

import pytest


# Smallest byte string that passes the ISO BMFF header check.
MP4_HEADER = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2"

WRITE_MP4 = f"""
pathlib.Path(args[-1]).write_bytes({MP4_HEADER!r} + b"\\x00" * 64)
"""

FAIL_WITH_STDERR = """
sys.stderr.write("Input #0, mov,mp4\\n")
sys.stderr.write("cam.mp4: Invalid data found when processing input\\n")
sys.exit(1)
"""

SLEEP = """
time.sleep(30)
"""


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def make_encoder(tmp_path: Path):
    """Factory that writes an executable fake encoder with the given body."""
    counter = {"n": 0}

    def factory(body: str) -> str:
        counter["n"] += 1
        path = tmp_path / "bin" / f"fake-ffmpeg-{counter['n']}"
        path.parent.mkdir(exist_ok=True)
        path.write_text(
            f"#!{sys.executable}\n"
            "import pathlib, signal, sys, time\n"
            "args = sys.argv[1:]\n" + textwrap.dedent(body)
        )
        path.chmod(0o755)
        return str(path)

    return factory


@pytest.fixture
def writing_encoder(make_encoder) -> str:
    """Exits 0 after writing a minimal mp4 to its last argument."""
    return make_encoder(WRITE_MP4)


@pytest.fixture
def failing_encoder(make_encoder) -> str:
    """Exits 1 with an ffmpeg-like diagnostic on stderr."""
    return make_encoder(FAIL_WITH_STDERR)


@pytest.fixture
def sleeping_encoder(make_encoder) -> str:
    """Runs until it is terminated."""
    return make_encoder(SLEEP)
