from pathlib import Path

import pytest


@pytest.fixture
def symlinks_supported(tmp_path: Path) -> bool:
    try:
        target = tmp_path / "symlink-probe-target"
        target.mkdir()
        link = tmp_path / "symlink-probe-link"
        link.symlink_to(target)
        link.unlink()
        target.rmdir()
        return True
    except (OSError, NotImplementedError):
        return False
