import io
import sys

import pytest
import zstandard

import mtzst
from mtzst import EXIT_ERROR, EXIT_OK, EXIT_WARNING, Mode, main, split_level_flags


@pytest.fixture(autouse=True)
def one_thread(monkeypatch):
    monkeypatch.setenv("MTZST_THREADS", "1")


def _parse(argv):
    level, rest = split_level_flags(argv)
    return mtzst.options_from_args(mtzst.build_argparser().parse_args(rest), level)


def test_level_digits_accumulate():
    assert split_level_flags(["-1", "-9", "a"]) == (19, ["a"])


def test_level_flag_not_taken_from_option_values():
    assert split_level_flags(["-T", "4", "-5", "f"]) == (5, ["-T", "4", "f"])
    assert split_level_flags(["--", "-3"]) == (None, ["--", "-3"])


def test_options_are_clamped():
    opts = _parse(["-99", "-T", "0", "-i", "5000", "x"])
    assert opts.level == mtzst.LEVEL_MAX
    assert opts.threads == 1
    assert opts.iterations == mtzst.MAX_ITERATIONS


def test_last_mode_flag_wins():
    assert _parse(["-d", "-t", "x"]).mode is Mode.TEST
    assert _parse(["-l", "-z", "x"]).mode is Mode.COMPRESS


def test_defaults():
    opts = _parse([])
    assert opts.mode is Mode.COMPRESS
    assert opts.level == mtzst.LEVEL_DEF
    assert opts.suffix == mtzst.DEF_SUFFIX
    assert opts.threads == 1
    assert opts.bufsize == 0
    assert opts.verbosity == 1
    assert not opts.keep


def test_bufsize_in_mib_and_verbosity():
    opts = _parse(["-b", "2", "-v", "-v", "-v"])
    assert opts.bufsize == 2 * mtzst.MIB
    assert opts.verbosity == 2
    assert _parse(["-q"]).verbosity == 0


def test_stdout_and_output_imply_keep():
    assert _parse(["-c"]).keep
    assert _parse(["-o", "out.zst"]).keep


def test_invalid_options_rejected():
    with pytest.raises(mtzst.UsageError):
        mtzst.BatchOptions(threads=0)
    with pytest.raises(mtzst.UsageError):
        mtzst.BatchOptions(suffix="")
    with pytest.raises(mtzst.UsageError):
        mtzst.BatchOptions(iterations=0)


def test_threads_env_fallback(monkeypatch):
    monkeypatch.setenv("MTZST_THREADS", "lots")
    assert mtzst.default_threads() >= 1
    monkeypatch.setenv("MTZST_THREADS", " 6 ")
    assert mtzst.default_threads() == 6


def test_headline(capsys):
    assert main(["-H"]) == EXIT_OK
    assert capsys.readouterr().err == mtzst.HEADLINE + "\n"


def test_version_and_license(capsys):
    assert main(["-V"]) == EXIT_OK
    assert "mtzst version" in capsys.readouterr().out
    assert main(["-L"]) == EXIT_OK
    assert "WITHOUT ANY WARRANTY" in capsys.readouterr().out


def test_help_exits_ok(capsys):
    assert main(["-h"]) == EXIT_OK
    assert "usage:" in capsys.readouterr().out


def test_unknown_flag_is_usage_error(capsys):
    assert main(["--bogus"]) == EXIT_ERROR


def test_compress_then_decompress_files(cwd):
    (cwd / "a.txt").write_bytes(b"abc" * 1000)
    assert main(["-k", "-9", "a.txt"]) == EXIT_OK
    assert (cwd / "a.txt").exists()
    assert (cwd / "a.txt.zst").exists()
    (cwd / "a.txt").unlink()
    assert main(["-d", "a.txt.zst"]) == EXIT_OK
    assert (cwd / "a.txt").read_bytes() == b"abc" * 1000
    assert not (cwd / "a.txt.zst").exists()


def test_custom_suffix_and_missing_file(cwd, capsys):
    (cwd / "a.txt").write_bytes(b"abc")
    assert main(["-S", ".zz", "a.txt", "missing.txt"]) == EXIT_ERROR
    assert (cwd / "a.txt.zz").exists()
    assert "missing.txt" in capsys.readouterr().err


def test_skipped_file_exit_warning(cwd):
    (cwd / "a.zst").write_bytes(b"abc")
    assert main(["a.zst"]) == EXIT_WARNING


def test_stdin_iterations_usage_error(monkeypatch, capsys):
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(b"data")))
    assert main(["-i", "3"]) == EXIT_ERROR
    assert "standard input" in capsys.readouterr().err
    assert sys.stdin.buffer.tell() == 0


def test_test_mode_verbose(cwd, capsys):
    (cwd / "f.zst").write_bytes(zstandard.ZstdCompressor().compress(b"payload"))
    assert main(["-t", "-v", "f.zst"]) == EXIT_OK
    assert "f.zst: OK" in capsys.readouterr().err
    assert (cwd / "f.zst").exists()
