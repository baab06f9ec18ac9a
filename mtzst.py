"""mtzst: gzip-compatible command-line front end for multithreaded zstd.

mtzst compresses and decompresses files (or standard input) with the zstd
engine from the ``zstandard`` package. Input is pulled from files in
buffer-sized chunks; every chunk becomes one independent zstd frame, so the
output is a plain concatenation of frames that any zstd decoder can read.

Per-file workflow (gzip semantics):
- ``mtzst FILE...``       compress FILE to FILE.zst and remove FILE
- ``mtzst -d FILE.zst``   decompress to FILE and remove FILE.zst
- ``mtzst -l FILE.zst``   list compressed/uncompressed sizes
- ``mtzst -t FILE.zst``   test integrity (decode into a discard sink)
- ``mtzst -c`` / ``-o``   write everything to one stream, keep the sources

A failing file never aborts the batch. The exit code reflects the worst
outcome seen:
  0  all files OK
  1  at least one file failed (or a usage error)
  2  at least one file was skipped with a warning, none failed

Benchmarking:
  -i N        replay the whole file list N times
  --timings   print one semicolon-separated stats line to stderr
  -H          print the column names of that line and exit
"""

from __future__ import annotations

import argparse
import io
import os
import re
import resource
import shutil
import stat
import sys
import time
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import BinaryIO, Callable, List, Optional, Sequence, TextIO, Tuple

import zstandard as zstd

# -----------------------------
# Versioning
# -----------------------------
TOOL_VERSION = "0.1.0"
PROGNAME = "mtzst"
ENGINE_VERSION = ".".join(str(x) for x in zstd.ZSTD_VERSION)
VERSION_STR = f"{TOOL_VERSION} (zstd {ENGINE_VERSION})"
__version__ = TOOL_VERSION

LICENSE_TEXT = f"""{PROGNAME} {TOOL_VERSION}
Copyright (c) mtzst authors.

This program is free software; you can redistribute it and/or modify it
under the terms of the MIT License. It is distributed in the hope that it
will be useful, but WITHOUT ANY WARRANTY; without even the implied warranty
of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE."""

# -----------------------------
# Defaults / knobs
# -----------------------------
LEVEL_MIN = 1
LEVEL_MAX = zstd.MAX_COMPRESSION_LEVEL
LEVEL_DEF = 3

THREAD_MAX = 128
MAX_ITERATIONS = 1000

MIB = 1024 * 1024
BUFSIZE_MIN = 1 * MIB
BUFSIZE_MAX = 64 * MIB
DEF_DECODE_BUFSIZE = 1 * MIB

DEF_SUFFIX = ".zst"
MALFORMED_SUFFIX = ".out"

STDIN = "-"
STDOUT_NAME = "(stdout)"
NULL_NAME = "(null)"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_WARNING = 2

HEADLINE = "Level;Threads;InSize;OutSize;Frames;Real;User;Sys;MaxMem"
LIST_HEADER = "  compressed  uncompressed  ratio uncompressed_name"


def default_threads() -> int:
    """
    Default engine thread count.

    ``MTZST_THREADS`` (integer) overrides the detected CPU count.
    """
    v = os.environ.get("MTZST_THREADS")
    if v:
        try:
            return int(v.strip())
        except ValueError:
            return os.cpu_count() or 1
    return os.cpu_count() or 1


# -----------------------------
# Outcomes / errors
# -----------------------------
class Mode(Enum):
    COMPRESS = "compress"
    DECOMPRESS = "decompress"
    LIST = "list"
    TEST = "test"


class Severity(IntEnum):
    OK = 0
    WARNING = 1
    ERROR = 2


class MtzstError(Exception):
    severity = Severity.ERROR


class UsageError(MtzstError):
    """Bad flags or operands; fatal to the whole run."""


class InputError(MtzstError):
    """Missing or irregular source file."""


class OverwritePolicyWarning(MtzstError):
    """Declined overwrite or source already suffixed; the file is skipped."""
    severity = Severity.WARNING


class EngineError(MtzstError):
    """Opaque failure reported by the compression engine."""


class ResourceError(MtzstError):
    """A file handle could not be opened, written or closed."""


class OutcomeTally:
    __slots__ = ("ok", "warnings", "errors")

    def __init__(self) -> None:
        self.ok = 0
        self.warnings = 0
        self.errors = 0

    def add(self, severity: Severity) -> None:
        if severity is Severity.ERROR:
            self.errors += 1
        elif severity is Severity.WARNING:
            self.warnings += 1
        else:
            self.ok += 1

    @property
    def worst(self) -> Severity:
        if self.errors:
            return Severity.ERROR
        if self.warnings:
            return Severity.WARNING
        return Severity.OK

    @property
    def exit_code(self) -> int:
        return {
            Severity.OK: EXIT_OK,
            Severity.WARNING: EXIT_WARNING,
            Severity.ERROR: EXIT_ERROR,
        }[self.worst]


# -----------------------------
# Reporting
# -----------------------------
def _stderr(msg: str) -> None:
    sys.stderr.write(msg + "\n")
    sys.stderr.flush()


class Reporter:
    """Per-file diagnostics on stderr; verbosity 0 is quiet, 2 is verbose."""

    def __init__(self, verbosity: int = 1) -> None:
        self.verbosity = verbosity

    def error(self, path: str, msg: str) -> None:
        if self.verbosity > 0:
            _stderr(f"{PROGNAME}: {path}: {msg}")

    def warning(self, path: str, msg: str) -> None:
        if self.verbosity > 0:
            _stderr(f"{PROGNAME}: {path}: warning: {msg}")

    def info(self, msg: str) -> None:
        if self.verbosity > 1:
            _stderr(msg)


# -----------------------------
# Options
# -----------------------------
@dataclass(frozen=True)
class BatchOptions:
    mode: Mode = Mode.COMPRESS
    threads: int = 1
    level: int = LEVEL_DEF
    bufsize: int = 0  # bytes; 0 = engine default
    suffix: str = DEF_SUFFIX
    force: bool = False
    keep: bool = False
    verbosity: int = 1
    iterations: int = 1
    to_stdout: bool = False
    output_path: Optional[str] = None
    timings: bool = False

    def __post_init__(self) -> None:
        if not (1 <= self.threads <= THREAD_MAX):
            raise UsageError(f"thread count must be 1..{THREAD_MAX}, got {self.threads}")
        if not (LEVEL_MIN <= self.level <= LEVEL_MAX):
            raise UsageError(f"compression level must be {LEVEL_MIN}..{LEVEL_MAX}, got {self.level}")
        if not (1 <= self.iterations <= MAX_ITERATIONS):
            raise UsageError(f"iterations must be 1..{MAX_ITERATIONS}, got {self.iterations}")
        if self.bufsize < 0:
            raise UsageError("buffer size must not be negative")
        if not self.suffix or os.sep in self.suffix:
            raise UsageError(f"invalid suffix {self.suffix!r}")


# -----------------------------
# Naming policy
# -----------------------------
def has_suffix(name: str, suffix: str) -> bool:
    return name.endswith(suffix)


def add_suffix(name: str, suffix: str) -> str:
    return name + suffix


def remove_suffix(name: str, suffix: str) -> str:
    # unknown or empty suffix: keep the whole name and mark it
    if suffix and name.endswith(suffix):
        return name[:-len(suffix)]
    return name + MALFORMED_SUFFIX


# -----------------------------
# Overwrite guard
# -----------------------------
def confirm(question: str, prompt_in: TextIO, prompt_out: TextIO) -> bool:
    """
    Ask a yes/no question, one line at a time.

    Anything other than y/yes/n/no (case-insensitive) asks again. End of
    input counts as "no".
    """
    while True:
        prompt_out.write(question)
        prompt_out.flush()
        line = prompt_in.readline()
        if not line:
            prompt_out.write("\n")
            return False
        answer = line.strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False


def may_write(path: str, force: bool,
              prompt_in: Optional[TextIO] = None,
              prompt_out: Optional[TextIO] = None) -> bool:
    """Whether `path` may be (over)written. No prompt input means we cannot ask."""
    if force:
        return True
    try:
        with open(path, "rb"):
            pass
    except FileNotFoundError:
        return True
    except OSError:
        return False
    if prompt_in is None:
        return False
    return confirm(f"{PROGNAME}: {path} already exists; overwrite (y/n)? ",
                   prompt_in, prompt_out if prompt_out is not None else sys.stderr)


# -----------------------------
# Stream bridge
# -----------------------------
class StreamBridge:
    """Exposes a binary stream as the engine's fill/drain callbacks and counts bytes moved."""
    __slots__ = ("stream", "count")

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.count = 0

    def fill(self, buffer) -> int:
        n = self.stream.readinto(buffer) or 0
        self.count += n
        return n

    def drain(self, buffer) -> int:
        n = self.stream.write(buffer)
        if n is None:
            n = memoryview(buffer).nbytes
        self.count += n
        return n


class NullSink(io.RawIOBase):
    """Discard sink for list/test runs; every write succeeds."""

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        return memoryview(b).nbytes


# -----------------------------
# Engine (zstandard)
# -----------------------------
def default_bufsize(level: int) -> int:
    """Input chunk size for `level`: four zstd windows, clamped to 1..64 MiB."""
    params = zstd.ZstdCompressionParameters.from_level(level)
    return min(BUFSIZE_MAX, max(BUFSIZE_MIN, 4 << params.window_log))


class EncodeContext:
    def __init__(self, threads: int, level: int, bufsize: int) -> None:
        self.threads = threads
        self.level = level
        self.bufsize = bufsize if bufsize > 0 else default_bufsize(level)
        self.bytes_in = 0
        self.bytes_out = 0
        self.frames = 0
        # threads=0 keeps zstd in blocking single-thread mode
        self._cctx: Optional[zstd.ZstdCompressor] = zstd.ZstdCompressor(
            level=level,
            threads=threads if threads > 1 else 0,
            write_checksum=True,
            write_content_size=True,
        )


class DecodeContext:
    def __init__(self, threads: int, bufsize: int) -> None:
        # zstd decodes on one thread; the count is kept for reporting only
        self.threads = threads
        self.bufsize = bufsize if bufsize > 0 else DEF_DECODE_BUFSIZE
        self.bytes_in = 0
        self.bytes_out = 0
        self.frames = 0
        self._dctx: Optional[zstd.ZstdDecompressor] = zstd.ZstdDecompressor()


def create_encode_context(threads: int, level: int, bufsize: int) -> EncodeContext:
    try:
        return EncodeContext(threads, level, bufsize)
    except (zstd.ZstdError, ValueError, MemoryError) as e:
        raise EngineError(f"Allocating ctx failed! ({e})") from e


def create_decode_context(threads: int, bufsize: int) -> DecodeContext:
    try:
        return DecodeContext(threads, bufsize)
    except (zstd.ZstdError, ValueError, MemoryError) as e:
        raise EngineError(f"Allocating ctx failed! ({e})") from e


def release_context(ctx) -> None:
    if isinstance(ctx, EncodeContext):
        ctx._cctx = None
    elif isinstance(ctx, DecodeContext):
        ctx._dctx = None


FillFn = Callable[[memoryview], int]
DrainFn = Callable[[bytes], int]


def _pull(fill: FillFn, view: memoryview) -> int:
    try:
        return fill(view)
    except OSError as e:
        raise EngineError(f"read error: {e.strerror or e}") from e


def _push(drain: DrainFn, data) -> None:
    try:
        n = drain(data)
    except OSError as e:
        raise EngineError(f"write error: {e.strerror or e}") from e
    if n != len(data):
        raise EngineError("write error: short write")


def _encode(ctx: EncodeContext, fill: FillFn, drain: DrainFn) -> None:
    if ctx._cctx is None:
        raise EngineError("context already released")
    view = memoryview(bytearray(ctx.bufsize))
    while True:
        n = _pull(fill, view)
        if not n:
            break
        ctx.bytes_in += n
        frame = ctx._cctx.compress(view[:n])
        _push(drain, frame)
        ctx.bytes_out += len(frame)
        ctx.frames += 1


ZSTD_MAGIC = 0xFD2FB528
SKIPPABLE_MAGIC = 0x184D2A50


class FrameScanner:
    """
    Walks zstd frame and block headers as compressed bytes go by.

    Only headers are parsed; block payloads are skipped by length. This
    gives the frame count and tells whether the stream stopped inside a
    frame, without holding any decompressed data.
    """

    def __init__(self) -> None:
        self.frames = 0
        self._state = "magic"
        self._buf = bytearray()
        self._skip = 0
        self._rest = 0
        self._checksum = False

    @property
    def in_frame(self) -> bool:
        return self._state != "magic" or self._skip > 0 or bool(self._buf)

    def _need(self) -> int:
        if self._state == "fhd":
            return 1
        if self._state == "header":
            return self._rest
        if self._state == "block":
            return 3
        return 4  # magic, skippable size

    def feed(self, data) -> None:
        view = memoryview(data)
        pos = 0
        while pos < len(view):
            if self._skip:
                step = min(self._skip, len(view) - pos)
                self._skip -= step
                pos += step
                self._settle()
                continue
            need = self._need()
            take = min(need - len(self._buf), len(view) - pos)
            self._buf += view[pos:pos + take]
            pos += take
            if len(self._buf) == need:
                self._advance()

    def _settle(self) -> None:
        if self._state == "end" and not self._skip:
            self.frames += 1
            self._state = "magic"

    def _advance(self) -> None:
        head = bytes(self._buf)
        self._buf.clear()
        state = self._state
        if state == "magic":
            magic = int.from_bytes(head, "little")
            if magic == ZSTD_MAGIC:
                self._state = "fhd"
            elif magic & 0xFFFFFFF0 == SKIPPABLE_MAGIC:
                self._state = "skippable"
            else:
                raise EngineError("Unknown frame descriptor")
        elif state == "skippable":
            # skippable frames carry no data and are not counted
            self._skip = int.from_bytes(head, "little")
            self._state = "magic"
        elif state == "fhd":
            fhd = head[0]
            single = bool(fhd & 0x20)
            self._checksum = bool(fhd & 0x04)
            fcs = (1 if single else 0, 2, 4, 8)[fhd >> 6]
            did = (0, 1, 2, 4)[fhd & 0x03]
            self._rest = (0 if single else 1) + did + fcs
            self._state = "header" if self._rest else "block"
        elif state == "header":
            self._state = "block"
        else:
            bh = int.from_bytes(head, "little")
            kind = (bh >> 1) & 0x03
            if kind == 3:
                raise EngineError("Corrupted block detected")
            # RLE blocks store a single byte
            self._skip = 1 if kind == 1 else bh >> 3
            if bh & 0x01:
                self._skip += 4 if self._checksum else 0
                self._state = "end"
        self._settle()


class _FillSource:
    """File-like ``read()`` over a fill callback for the zstd stream reader."""

    def __init__(self, fill: FillFn, bufsize: int, scanner: FrameScanner) -> None:
        self.fill = fill
        self.view = memoryview(bytearray(bufsize))
        self.scanner = scanner
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        view = self.view if size < 0 else self.view[:size]
        n = _pull(self.fill, view)
        data = bytes(view[:n])
        self.count += n
        self.scanner.feed(data)
        return data


def _decode(ctx: DecodeContext, fill: FillFn, drain: DrainFn) -> None:
    if ctx._dctx is None:
        raise EngineError("context already released")
    scanner = FrameScanner()
    source = _FillSource(fill, ctx.bufsize, scanner)
    reader = ctx._dctx.stream_reader(
        source, read_size=ctx.bufsize, read_across_frames=True, closefd=False
    )
    try:
        # each read yields at most bufsize bytes, however large the frame
        while True:
            out = reader.read(ctx.bufsize)
            if not out:
                break
            _push(drain, out)
            ctx.bytes_out += len(out)
    finally:
        reader.close()
        ctx.bytes_in = source.count
        ctx.frames = scanner.frames
    if scanner.in_frame:
        raise EngineError("truncated input")


def run_context(ctx, fill: FillFn, drain: DrainFn) -> Optional[str]:
    """Move all data from `fill` through the engine into `drain`.

    Returns None on success, otherwise the engine's error message.
    """
    try:
        if isinstance(ctx, EncodeContext):
            _encode(ctx, fill, drain)
        else:
            _decode(ctx, fill, drain)
    except zstd.ZstdError as e:
        return str(e)
    except EngineError as e:
        return str(e)
    return None


# -----------------------------
# Jobs
# -----------------------------
class JobState(Enum):
    INIT = 1
    INPUT_RESOLVED = 2
    OUTPUT_RESOLVED = 3
    AUTHORIZED = 4
    TRANSCODING = 5
    SUCCEEDED = 6
    FAILED = 7
    SKIPPED = 8


@dataclass
class Job:
    source: str
    mode: Mode
    output: Optional[str] = None
    bytes_in: int = 0
    bytes_out: int = 0
    frames: int = 0
    error: Optional[str] = None
    state: JobState = JobState.INIT

    @property
    def severity(self) -> Severity:
        if self.state is JobState.FAILED:
            return Severity.ERROR
        if self.state is JobState.SKIPPED:
            return Severity.WARNING
        return Severity.OK

    @property
    def compressed_size(self) -> int:
        return self.bytes_out if self.mode is Mode.COMPRESS else self.bytes_in

    @property
    def uncompressed_size(self) -> int:
        return self.bytes_in if self.mode is Mode.COMPRESS else self.bytes_out

    @property
    def ratio(self) -> float:
        """Space saving in percent."""
        raw = self.uncompressed_size
        if not raw:
            return 0.0
        return 100.0 * (1.0 - self.compressed_size / float(raw))


@dataclass
class OutputTarget:
    """One stream shared by every job of a run (``-c`` or ``-o FILE``)."""
    name: str
    stream: BinaryIO
    standard: bool
    interactive: bool = False


def _is_console(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except ValueError:
        return False


class FileJob:
    """
    Runs one source through the engine.

    INIT -> INPUT_RESOLVED -> OUTPUT_RESOLVED -> AUTHORIZED -> TRANSCODING
    and then SUCCEEDED, FAILED or SKIPPED. Every step raises an MtzstError
    subclass to leave the happy path; run() turns that into the terminal
    state and the cleanup runs exactly once afterwards.
    """

    def __init__(
        self,
        source: str,
        options: BatchOptions,
        reporter: Optional[Reporter] = None,
        *,
        target: Optional[OutputTarget] = None,
        stdin: Optional[BinaryIO] = None,
        prompt_in: Optional[TextIO] = None,
        prompt_out: Optional[TextIO] = None,
    ) -> None:
        self.job = Job(source=source, mode=options.mode)
        self.options = options
        self.reporter = reporter if reporter is not None else Reporter(options.verbosity)
        self.target = target
        self.stdin = stdin
        self.prompt_in = prompt_in
        self.prompt_out = prompt_out
        self._fin: Optional[BinaryIO] = None
        self._fout: Optional[BinaryIO] = None
        self._owns_fin = False
        self._owns_fout = False
        self._created_output = False
        self._cleaned = False

    @property
    def _discard(self) -> bool:
        return self.options.mode in (Mode.LIST, Mode.TEST)

    def run(self) -> Job:
        job = self.job
        try:
            self._resolve_input()
            self._resolve_output()
            self._authorize()
            self._open_streams()
            self._transcode()
        except MtzstError as e:
            job.error = str(e)
            job.state = JobState.SKIPPED if e.severity is Severity.WARNING else JobState.FAILED
        else:
            job.state = JobState.SUCCEEDED
        finally:
            self._cleanup()
        self._report()
        return job

    # -- steps --

    def _resolve_input(self) -> None:
        job = self.job
        if job.source != STDIN:
            try:
                st = os.stat(job.source)
            except FileNotFoundError:
                raise InputError("No such file or directory") from None
            except OSError as e:
                raise InputError(e.strerror or str(e)) from e
            if stat.S_ISDIR(st.st_mode):
                raise InputError("is a directory -- ignored")
            if not stat.S_ISREG(st.st_mode):
                raise InputError("is not a regular file -- ignored")
        job.state = JobState.INPUT_RESOLVED

    def _resolve_output(self) -> None:
        job, opts = self.job, self.options
        if self._discard:
            job.output = NULL_NAME
        elif self.target is not None:
            if self.target.interactive and not opts.force:
                kind = "compressed" if opts.mode is Mode.COMPRESS else "decompressed"
                raise ResourceError(f"refusing to write {kind} data to a terminal (use -f to force)")
            job.output = self.target.name
        elif job.source == STDIN:
            raise ResourceError("standard input needs an output stream")
        elif opts.mode is Mode.COMPRESS:
            if has_suffix(job.source, opts.suffix) and not opts.force:
                raise OverwritePolicyWarning(f"already has {opts.suffix} suffix -- unchanged")
            job.output = add_suffix(job.source, opts.suffix)
        else:
            job.output = remove_suffix(job.source, opts.suffix)
        job.state = JobState.OUTPUT_RESOLVED

    def _authorize(self) -> None:
        job = self.job
        if not self._discard and self.target is None:
            if not may_write(job.output, self.options.force, self.prompt_in, self.prompt_out):
                raise OverwritePolicyWarning(f"{job.output} already exists; not overwritten")
        job.state = JobState.AUTHORIZED

    def _open_streams(self) -> None:
        job = self.job
        if job.source == STDIN:
            self._fin = self.stdin if self.stdin is not None else sys.stdin.buffer
        else:
            try:
                self._fin = open(job.source, "rb")
            except OSError as e:
                raise ResourceError(e.strerror or str(e)) from e
            self._owns_fin = True

        if self._discard:
            self._fout = NullSink()
            self._owns_fout = True
        elif self.target is not None:
            self._fout = self.target.stream
        else:
            try:
                self._fout = open(job.output, "wb")
            except OSError as e:
                raise ResourceError(f"{job.output}: {e.strerror or e}") from e
            self._owns_fout = True
            self._created_output = True

    def _transcode(self) -> None:
        job, opts = self.job, self.options
        job.state = JobState.TRANSCODING
        src = StreamBridge(self._fin)
        dst = StreamBridge(self._fout)
        if opts.mode is Mode.COMPRESS:
            ctx = create_encode_context(opts.threads, opts.level, opts.bufsize)
        else:
            ctx = create_decode_context(opts.threads, opts.bufsize)
        try:
            err = run_context(ctx, src.fill, dst.drain)
        finally:
            job.frames = ctx.frames
            job.bytes_in = src.count
            job.bytes_out = dst.count
            release_context(ctx)
        if err is not None:
            raise EngineError(err)
        self._finish_output()

    def _finish_output(self) -> None:
        try:
            if self._owns_fout:
                self._fout.close()
            else:
                self._fout.flush()
        except OSError as e:
            raise ResourceError(f"{self.job.output}: {e.strerror or e}") from e

    # -- cleanup --

    def _cleanup(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        job = self.job
        if self._owns_fin:
            self._close(self._fin, job.source)
        if self._owns_fout:
            self._close(self._fout, job.output)

        if job.state is JobState.SUCCEEDED and self._created_output:
            self._copy_metadata()
            if not self.options.keep:
                self._remove(job.source)
        elif job.state is JobState.FAILED and self._created_output:
            self._remove(job.output)

    def _close(self, stream, name: str) -> None:
        try:
            stream.close()
        except OSError as e:
            self.reporter.warning(name, f"close failed: {e.strerror or e}")

    def _remove(self, path: str) -> None:
        try:
            os.remove(path)
        except OSError as e:
            self.reporter.warning(path, f"cannot remove: {e.strerror or e}")

    def _copy_metadata(self) -> None:
        try:
            shutil.copystat(self.job.source, self.job.output)
        except OSError as e:
            self.reporter.warning(self.job.output, f"cannot copy timestamps: {e.strerror or e}")

    def _report(self) -> None:
        job, rep = self.job, self.reporter
        if job.state is JobState.FAILED:
            rep.error(job.source, job.error or "failed")
        elif job.state is JobState.SKIPPED:
            rep.warning(job.source, job.error or "skipped")
        elif job.mode is Mode.TEST:
            rep.info(f"{job.source}: OK")
        elif job.mode in (Mode.COMPRESS, Mode.DECOMPRESS):
            if self._created_output:
                verb = "created" if self.options.keep else "replaced with"
                rep.info(f"{job.source}:\t{job.ratio:5.1f}% -- {verb} {job.output}")
            else:
                rep.info(f"{job.source}:\t{job.ratio:5.1f}%")


# -----------------------------
# Stats
# -----------------------------
def _secs_ms(seconds: float) -> str:
    sec, ms = divmod(int(round(seconds * 1000)), 1000)
    return f"{sec}.{ms:03d}"


class StatsCollector:
    """Batch-wide timing plus the first job's counters."""

    def __init__(self, level: int, threads: int) -> None:
        self.level = level
        self.threads = threads
        self.first: Optional[Tuple[int, int, int]] = None
        self.real = 0.0
        self.user = 0.0
        self.sys = 0.0
        self.maxrss = 0
        self._t0: Optional[float] = None

    def start(self) -> None:
        self._t0 = time.perf_counter()

    def record(self, job: Job) -> None:
        if self.first is None:
            self.first = (job.bytes_in, job.bytes_out, job.frames)

    def finish(self) -> None:
        if self._t0 is not None:
            self.real = time.perf_counter() - self._t0
        ru = resource.getrusage(resource.RUSAGE_SELF)
        self.user = ru.ru_utime
        self.sys = ru.ru_stime
        self.maxrss = int(ru.ru_maxrss)

    def format_line(self) -> str:
        bytes_in, bytes_out, frames = self.first or (0, 0, 0)
        return ";".join([
            str(self.level), str(self.threads),
            str(bytes_in), str(bytes_out), str(frames),
            _secs_ms(self.real), _secs_ms(self.user), _secs_ms(self.sys),
            str(self.maxrss),
        ])


# -----------------------------
# Batch runner
# -----------------------------
def _printable(name: str) -> str:
    """Undecodable bytes in a file name as \\xNN escapes, safe for any stdout encoding."""
    enc = getattr(sys.stdout, "encoding", None) or "utf-8"
    name = os.fsencode(name).decode("utf-8", "backslashreplace")
    return name.encode(enc, "backslashreplace").decode(enc)


class BatchRunner:
    def __init__(
        self,
        options: BatchOptions,
        *,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        prompt_in: Optional[TextIO] = None,
        prompt_out: Optional[TextIO] = None,
    ) -> None:
        self.options = options
        self.reporter = Reporter(options.verbosity)
        self.stdin = stdin if stdin is not None else sys.stdin.buffer
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.prompt_in = prompt_in if prompt_in is not None else sys.stdin
        self.prompt_out = prompt_out if prompt_out is not None else sys.stderr
        self.tally = OutcomeTally()
        level = options.level if options.mode is Mode.COMPRESS else 0
        self.stats = StatsCollector(level, options.threads)
        self._listed = 0

    def run(self, sources: Sequence[str]) -> int:
        sources = list(sources) or [STDIN]
        self._check_usage(sources)

        opts = self.options
        if opts.iterations > 1 and not opts.keep:
            # later iterations replay the same sources
            opts = replace(opts, keep=True)

        # the data stream cannot double as the prompt stream
        prompt_in = None if STDIN in sources else self.prompt_in

        self.stats.start()
        target = self._open_target(prompt_in)
        if target is None and self.tally.worst is not Severity.OK:
            return self.tally.exit_code
        try:
            for i in range(opts.iterations):
                if i:
                    self._rewind(target)
                for source in sources:
                    fj = FileJob(
                        source, opts, self.reporter,
                        target=self._target_for(source, target),
                        stdin=self.stdin,
                        prompt_in=prompt_in,
                        prompt_out=self.prompt_out,
                    )
                    job = fj.run()
                    self.stats.record(job)
                    self.tally.add(job.severity)
                    self._summarize(job)
        finally:
            if target is not None and not target.standard:
                target.stream.close()
        self.stats.finish()
        if opts.timings:
            _stderr(self.stats.format_line())
        return self.tally.exit_code

    def _check_usage(self, sources: List[str]) -> None:
        opts = self.options
        if STDIN not in sources:
            return
        if opts.iterations > 1:
            raise UsageError("cannot repeat iterations (-i) when reading standard input")
        if _is_console(self.stdin) and not opts.force:
            if opts.mode is Mode.COMPRESS:
                raise UsageError("refusing to read data from a terminal (use -f to force)")
            raise UsageError("compressed data not read from a terminal (use -f to force)")

    def _open_target(self, prompt_in: Optional[TextIO]) -> Optional[OutputTarget]:
        opts = self.options
        if opts.mode in (Mode.LIST, Mode.TEST):
            return None
        if opts.output_path is not None:
            path = opts.output_path
            if not may_write(path, opts.force, prompt_in, self.prompt_out):
                self.reporter.warning(path, "already exists; not overwritten")
                self.tally.add(Severity.WARNING)
                return None
            try:
                stream = open(path, "wb")
            except OSError as e:
                self.reporter.error(path, e.strerror or str(e))
                self.tally.add(Severity.ERROR)
                return None
            return OutputTarget(name=path, stream=stream, standard=False)
        if opts.to_stdout:
            return self._stdout_target()
        return None

    def _stdout_target(self) -> OutputTarget:
        return OutputTarget(
            name=STDOUT_NAME,
            stream=self.stdout,
            standard=True,
            interactive=_is_console(self.stdout),
        )

    def _target_for(self, source: str, shared: Optional[OutputTarget]) -> Optional[OutputTarget]:
        # without -c or -o only the standard input job writes to stdout
        if shared is None and source == STDIN and self.options.mode not in (Mode.LIST, Mode.TEST):
            return self._stdout_target()
        return shared

    def _rewind(self, target: Optional[OutputTarget]) -> None:
        if target is None or target.standard:
            return
        if target.stream.seekable():
            target.stream.seek(0)
            target.stream.truncate()

    def _summarize(self, job: Job) -> None:
        if job.mode is not Mode.LIST or job.state is not JobState.SUCCEEDED:
            return
        if self._listed == 0:
            print(LIST_HEADER)
        self._listed += 1
        name = STDOUT_NAME if job.source == STDIN else remove_suffix(job.source, self.options.suffix)
        print(f"{job.compressed_size:12d} {job.uncompressed_size:13d} {job.ratio:5.1f}% {_printable(name)}")


# -----------------------------
# CLI
# -----------------------------
_LEVEL_FLAG = re.compile(r"^-(\d+)$")


def split_level_flags(argv: Sequence[str]) -> Tuple[Optional[int], List[str]]:
    """
    Pull bare-digit level flags (``-1`` .. ``-19``) out of argv.

    Digits accumulate across flags, so ``-1 -9`` means level 19. Option
    values (``-T 4``) and anything after ``--`` are left alone.
    """
    level: Optional[int] = None
    rest: List[str] = []
    takes_value = {"-T", "--threads", "-i", "--iterations", "-b", "--bufsize",
                   "-S", "--suffix", "-o", "--output"}
    expect_value = False
    done = False
    for arg in argv:
        if done or expect_value:
            rest.append(arg)
            expect_value = False
            continue
        if arg == "--":
            done = True
            rest.append(arg)
            continue
        m = _LEVEL_FLAG.match(arg)
        if m:
            digits = m.group(1)
            level = int(digits) if level is None else int(f"{level}{digits}")
            continue
        expect_value = arg in takes_value
        rest.append(arg)
    return level, rest


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog=PROGNAME,
        add_help=False,
        usage=f"{PROGNAME} [options] [-#] [FILE...]",
        description="Compress or decompress FILEs with multithreaded zstd (gzip-compatible flags). "
                    "With no FILE, or when FILE is -, read standard input.",
    )
    g = ap.add_argument_group("mode (last one wins)")
    g.add_argument("-z", "--compress", dest="mode", action="store_const", const=Mode.COMPRESS,
                   default=Mode.COMPRESS, help="compress (default)")
    g.add_argument("-d", "--decompress", dest="mode", action="store_const", const=Mode.DECOMPRESS,
                   help="decompress")
    g.add_argument("-l", "--list", dest="mode", action="store_const", const=Mode.LIST,
                   help="list compressed file contents")
    g.add_argument("-t", "--test", dest="mode", action="store_const", const=Mode.TEST,
                   help="test compressed file integrity")

    ap.add_argument("-c", "--stdout", dest="to_stdout", action="store_true",
                    help="write on standard output, keep original files")
    ap.add_argument("-o", "--output", dest="output", default=None, metavar="FILE",
                    help="write all output to FILE, keep original files")
    ap.add_argument("-f", "--force", action="store_true",
                    help="overwrite files, compress suffixed files, write to a terminal")
    ap.add_argument("-k", "--keep", action="store_true", help="keep (don't delete) input files")
    ap.add_argument("-q", "--quiet", action="store_true", help="suppress all per-file messages")
    ap.add_argument("-v", "--verbose", action="count", default=0, help="verbose mode")
    ap.add_argument("-S", "--suffix", default=DEF_SUFFIX, metavar="SUF",
                    help=f"use suffix SUF on compressed files (default: {DEF_SUFFIX})")
    ap.add_argument("-T", "--threads", type=int, default=None, metavar="N",
                    help=f"number of compression threads (1-{THREAD_MAX}, default: #cores or $MTZST_THREADS)")
    ap.add_argument("-b", "--bufsize", type=int, default=0, metavar="N",
                    help="input chunk size in MiB (default: auto)")
    ap.add_argument("-i", "--iterations", type=int, default=1, metavar="N",
                    help=f"replay the file list N times for benchmarking (1-{MAX_ITERATIONS})")
    ap.add_argument("--timings", action="store_true",
                    help="print timings and memory usage to stderr")
    ap.add_argument("-H", "--headline", action="store_true",
                    help="print the headline for the timing values and exit")
    ap.add_argument("-V", "--version", action="store_true", help="show version and exit")
    ap.add_argument("-L", "--license", action="store_true", help="show license and exit")
    ap.add_argument("-h", "--help", action="help", help="show this help and exit")
    ap.add_argument("files", nargs="*", metavar="FILE")
    return ap


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


def options_from_args(args: argparse.Namespace, level: Optional[int]) -> BatchOptions:
    threads = args.threads if args.threads is not None else default_threads()
    bufsize = args.bufsize * MIB if args.bufsize > 0 else 0
    verbosity = 0 if args.quiet else min(2, 1 + args.verbose)
    return BatchOptions(
        mode=args.mode,
        threads=_clamp(threads, 1, THREAD_MAX),
        level=_clamp(level if level is not None else LEVEL_DEF, LEVEL_MIN, LEVEL_MAX),
        bufsize=bufsize,
        suffix=args.suffix,
        force=args.force,
        keep=args.keep or args.to_stdout or args.output is not None,
        verbosity=verbosity,
        iterations=_clamp(args.iterations, 1, MAX_ITERATIONS),
        to_stdout=args.to_stdout,
        output_path=args.output,
        timings=args.timings,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    level, rest = split_level_flags(argv)
    try:
        args = build_argparser().parse_args(rest)
    except SystemExit as e:
        # argparse exits 0 for -h and 2 for bad flags
        return EXIT_OK if not e.code else EXIT_ERROR

    if args.headline:
        _stderr(HEADLINE)
        return EXIT_OK
    if args.version:
        print(f"{PROGNAME} version {VERSION_STR}")
        return EXIT_OK
    if args.license:
        print(LICENSE_TEXT)
        return EXIT_OK

    try:
        options = options_from_args(args, level)
        return BatchRunner(options).run(args.files)
    except UsageError as e:
        _stderr(f"{PROGNAME}: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
