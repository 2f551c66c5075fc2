# mypy: ignore-errors
"""Tests for the final actions (delete, move, list, dry run, sudo) and handle_exception."""

import os
import subprocess
from pathlib import Path

import pytest

import pkgprune
from pkgprune import ConfigNamespace, ExternalCommandError, Logger, LogLevel, apply_action, handle_exception, needs_privileges, run_deletion, run_escalated, run_move, summarize


def _make_args(**overrides):
    defaults = dict(
        dryrun=False,
        move=None,
        remove=False,
        list_only=None,
        force=False,
        use_sudo=False,
        verbose=LogLevel.INFO,
    )
    defaults.update(overrides)
    return ConfigNamespace(**defaults)


def test_run_deletion(tmp_path, capsys) -> None:
    file_path = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file_path.write_text("data")
    args = _make_args(remove=True, verbose=LogLevel.DEBUG)
    assert run_deletion(file_path, args, Logger(args)) is True
    assert not file_path.exists()
    assert "DELETING: foo-1.0-1-any.pkg.tar.zst" in capsys.readouterr().err


def test_warning_for_file_not_deleted(tmp_path, capsys, monkeypatch):
    protected = tmp_path / "protected-1.0-1-any.pkg.tar.zst"
    normal = tmp_path / "normal-1.0-1-any.pkg.tar.zst"
    protected.write_text("do not delete")
    normal.write_text("delete me")

    original_unlink = pkgprune.Path.unlink

    def unlink_with_permission_error(self, *args, **kwargs):
        if self == protected:
            raise OSError("simulated permission error")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(pkgprune.Path, "unlink", unlink_with_permission_error)

    args = _make_args(remove=True)
    logger = Logger(args)

    assert run_deletion(protected, args, logger) is False
    assert protected.exists()
    err = capsys.readouterr().err
    assert "[WARN]" in err
    assert "Error while deleting file" in err
    assert protected.name in err

    assert run_deletion(normal, args, logger) is True
    assert not normal.exists()


def test_run_move(tmp_path) -> None:
    target = tmp_path / "target"
    target.mkdir()
    file_path = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file_path.write_text("data")
    args = _make_args(move=str(target))
    assert run_move(file_path, args, Logger(args)) is True
    assert not file_path.exists()
    assert (target / file_path.name).read_text() == "data"


def test_run_move_existing_target_needs_force(tmp_path, capsys) -> None:
    target = tmp_path / "target"
    target.mkdir()
    (target / "foo-1.0-1-any.pkg.tar.zst").write_text("old")
    file_path = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file_path.write_text("new")

    args = _make_args(move=str(target))
    assert run_move(file_path, args, Logger(args)) is False
    assert file_path.exists()
    assert "already exists (use --force to overwrite)" in capsys.readouterr().err

    args.force = True
    assert run_move(file_path, args, Logger(args)) is True
    assert (target / file_path.name).read_text() == "new"


def test_apply_action_list_only(tmp_path, capsys) -> None:
    files = [tmp_path / "a-1-1-any.pkg.tar", tmp_path / "b-1-1-any.pkg.tar"]
    for file in files:
        file.write_text("x")
    args = _make_args(list_only="\0", verbose=LogLevel.ERROR)
    assert apply_action(files, tmp_path, args, Logger(args)) == files
    assert capsys.readouterr().out == "".join(str(file.absolute()) + "\0" for file in files)
    assert all(file.exists() for file in files)


def test_apply_action_dry_run(tmp_path, capsys) -> None:
    file_path = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file_path.write_text("x")
    args = _make_args(dryrun=True, verbose=LogLevel.DEBUG)
    assert apply_action([file_path], tmp_path, args, Logger(args)) == [file_path]
    assert file_path.exists()
    assert "DRY-RUN: foo-1.0-1-any.pkg.tar.zst" in capsys.readouterr().err


def test_apply_action_remove_reports_only_deleted(tmp_path) -> None:
    ok = tmp_path / "ok-1.0-1-any.pkg.tar.zst"
    ok.write_text("x")
    missing = tmp_path / "missing-1.0-1-any.pkg.tar.zst"
    args = _make_args(remove=True)
    assert apply_action([ok, missing], tmp_path, args, Logger(args)) == [ok]
    assert not ok.exists()


def test_apply_action_escalates_with_sudo(tmp_path, monkeypatch, capsys) -> None:
    files = [tmp_path / "foo-1.0-1-any.pkg.tar.zst", tmp_path / "foo-1.1-1-any.pkg.tar.zst"]
    calls = []

    monkeypatch.setattr(pkgprune, "needs_privileges", lambda directories: True)
    monkeypatch.setattr(pkgprune.subprocess, "run", lambda command, **kwargs: calls.append(command) or subprocess.CompletedProcess(command, 0))

    args = _make_args(remove=True, use_sudo=True, force=True)
    assert apply_action(files, tmp_path, args, Logger(args)) == files
    assert calls == [["sudo", "rm", "-f", "--", str(files[0]), str(files[1])]]
    assert "escalating privileges with sudo" in capsys.readouterr().err

    calls.clear()
    args = _make_args(remove=True, use_sudo=True)
    apply_action(files, tmp_path, args, Logger(args))
    assert calls == [["sudo", "rm", "--", str(files[0]), str(files[1])]]


@pytest.mark.parametrize("force, flag", [(False, "-n"), (True, "-f")])
def test_escalated_move_honours_force(tmp_path, monkeypatch, force, flag) -> None:
    files = [tmp_path / "foo-1.0-1-any.pkg.tar.zst", tmp_path / "foo-1.0-1-any.pkg.tar.zst.sig"]
    calls = []

    monkeypatch.setattr(pkgprune, "needs_privileges", lambda directories: True)
    monkeypatch.setattr(pkgprune.subprocess, "run", lambda command, **kwargs: calls.append(command) or subprocess.CompletedProcess(command, 0))

    args = _make_args(move="/srv/old", use_sudo=True, force=force)
    apply_action(files, tmp_path, args, Logger(args))
    assert calls == [["sudo", "mv", flag, "--", str(files[0]), str(files[1]), "/srv/old"]]


def test_apply_action_without_operation_fails(tmp_path) -> None:
    file_path = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file_path.write_text("x")
    args = _make_args()
    with pytest.raises(ValueError, match="No operation selected"):
        apply_action([file_path], tmp_path, args, Logger(args))
    assert file_path.exists()


def test_apply_action_list_only_with_empty_separator(tmp_path, capsys) -> None:
    file_path = tmp_path / "foo-1.0-1-any.pkg.tar.zst"
    file_path.write_text("x")
    args = _make_args(list_only="", verbose=LogLevel.ERROR)
    assert apply_action([file_path], tmp_path, args, Logger(args)) == [file_path]
    assert file_path.exists()
    assert capsys.readouterr().out == str(file_path.absolute())


def test_run_escalated_failure(monkeypatch) -> None:
    def failing_run(command, **kwargs):
        raise subprocess.CalledProcessError(1, command)

    monkeypatch.setattr(pkgprune.subprocess, "run", failing_run)
    args = _make_args()
    with pytest.raises(ExternalCommandError, match="failed with exit code 1"):
        run_escalated(["rm", "--", "/x"], Logger(args))


def test_needs_privileges(tmp_path) -> None:
    assert needs_privileges([tmp_path]) is False
    if os.geteuid() != 0:
        readonly = tmp_path / "readonly"
        readonly.mkdir()
        readonly.chmod(0o555)
        try:
            assert needs_privileges([tmp_path, readonly]) is True
        finally:
            readonly.chmod(0o755)


@pytest.mark.parametrize(
    "overrides, expected",
    [
        (dict(dryrun=True), "finished dry run: 1 candidates (disk space saved: 1.5K)"),
        (dict(remove=True), "finished: 1 packages removed (disk space saved: 1.5K)"),
        (dict(move="/tmp"), "finished: 1 packages moved (disk space saved: 1.5K)"),
    ],
)
def test_summarize(overrides, expected, capsys) -> None:
    args = _make_args(**overrides)
    processed = [Path("foo-1.0-1-any.pkg.tar.zst"), Path("foo-1.0-1-any.pkg.tar.zst.sig")]
    summarize(processed, 1536, args, Logger(args))
    assert expected in capsys.readouterr().err


def test_summarize_nothing_found(capsys) -> None:
    args = _make_args(dryrun=True)
    summarize([], 0, args, Logger(args))
    assert "no candidate packages found for pruning" in capsys.readouterr().err


def test_handle_exception_exits_and_outputs(capsys) -> None:
    """handle_exception should print the message (and optionally stacktrace) and exit with the given code."""
    with pytest.raises(SystemExit) as exc:
        handle_exception(ValueError("boom"), exit_code=3, stacktrace=False)
    assert exc.value.code == 3
    captured = capsys.readouterr()
    assert "[ERROR]" in captured.err
    assert "boom" in captured.err


def test_handle_exception_prefix(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        handle_exception(RuntimeError("bad"), exit_code=9, stacktrace=False, prefix="UNEXPECTED ERROR")
    assert exc.value.code == 9
    assert "[UNEXPECTED ERROR] bad" in capsys.readouterr().err
