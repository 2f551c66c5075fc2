"""Tests for FileStatsCache."""

import os
import time
from pathlib import Path

from pkgprune import FileStatsCache


def test_file_stats_cache(tmp_path: Path) -> None:
    """FileStatsCache should return sizes and timestamps and cache the stat result."""
    file = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file.write_text("data")

    now = time.time()
    os.utime(file, (now - 120, now - 60))

    cache = FileStatsCache()
    assert cache.get_file_bytes(file) == len("data")
    assert cache.get_file_seconds(file, "atime") == int(now - 120)
    assert cache.get_file_seconds(file, "mtime") == int(now - 60)

    # Cached: still available after the file is gone
    file.unlink()
    assert cache.get_file_bytes(file) == len("data")
