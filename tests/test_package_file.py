"""Tests for parsing package file names."""

from pathlib import Path

import pytest

from pkgprune import PackageFile


@pytest.mark.parametrize(
    "file_name, name, version, release, arch",
    [
        ("foo-1.0-1-x86_64.pkg.tar.zst", "foo", "1.0", "1", "x86_64"),
        ("my-cool-lib-1.2.3-4-x86_64.pkg.tar.zst", "my-cool-lib", "1.2.3", "4", "x86_64"),
        ("python-pip-24.0-1-any.pkg.tar.xz", "python-pip", "24.0", "1", "any"),
        ("linux-firmware-20240312.3f6c2c3-1-any.pkg.tar", "linux-firmware", "20240312.3f6c2c3", "1", "any"),
        ("systemd-1:255.4-2-x86_64.pkg.tar.zst", "systemd", "1:255.4", "2", "x86_64"),
        ("glibc-2.39-1.1-aarch64.pkg.tar.gz", "glibc", "2.39", "1.1", "aarch64"),
    ],
)
def test_parse_package_file(file_name: str, name: str, version: str, release: str, arch: str) -> None:
    package = PackageFile.parse(file_name)
    assert package is not None
    assert (package.name, package.version, package.release, package.arch) == (name, version, release, arch)
    assert package.identity == (name, arch)
    assert package.evr == f"{version}-{release}"


def test_parse_strips_directories_but_keeps_path(tmp_path: Path) -> None:
    path = tmp_path / "some-dir-1.0" / "foo-bar-2.1-3-any.pkg.tar.zst"
    package = PackageFile.parse(path)
    assert package is not None
    assert package.name == "foo-bar"
    assert package.path == str(path)


@pytest.mark.parametrize(
    "file_name",
    [
        "foo.pkg.tar.zst",
        "1.0-1-x86_64.pkg.tar.zst",  # no name
        "foo-1.0-x86_64.pkg.tar.zst",  # only three segments
        "foo-1.0-1-x86_64",  # no extension boundary
        "foo-1.0-1-.pkg.tar.zst",  # empty arch
        "foo--1-x86_64.pkg.tar.zst",  # empty version
        "-1.0-1-x86_64.pkg.tar.zst",  # empty name
        "",
    ],
)
def test_parse_malformed_returns_none(file_name: str) -> None:
    assert PackageFile.parse(file_name) is None
