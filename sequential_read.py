#!/usr/bin/env python3
"""
Sequential Read Benchmark

Writes out a file of a certain size, closes it, then measures the performance
of repeatedly doing the following until the requested duration has elapsed:

1. Open the file.
2. Read it from start to end with a configurable buffer size.

Features:
- Cryptographically random file contents
- Per-file and per-read(2) latency samples
- 50th/90th/98th percentile latencies (NIST method) with implied bandwidth
- Temporary file is always removed on exit

Example usage: python3 sequential_read.py --dir /mnt/test --duration 10s
"""

import os
import re
import math
import sys
import time
import argparse
import tempfile
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

import numpy as np


KIB = 1 << 10
MIB = 1 << 20
GIB = 1 << 30

NANOSECOND = 1
MICROSECOND = 1000 * NANOSECOND
MILLISECOND = 1000 * MICROSECOND
SECOND = 1000 * MILLISECOND
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE

PERCENTILES = (50, 90, 98)

# Largest chunk of random data generated at once while filling the file
WRITE_CHUNK_SIZE = MIB


# ANSI color functions for consistent output
def red(text: str) -> str:
    """Format text in red ANSI color."""
    return f"\033[0;31m{text}\033[0m"


def yellow(text: str) -> str:
    """Format text in yellow ANSI color."""
    return f"\033[0;33m{text}\033[0m"


def blue(text: str) -> str:
    """Format text in blue (cyan) ANSI color."""
    return f"\033[0;36m{text}\033[0m"


def log(message: str) -> None:
    """Print a progress message to stderr, prefixed with time and caller file:line."""
    stamp = datetime.now().strftime("%H:%M:%S.%f")
    caller = sys._getframe(1)
    source = f"{os.path.basename(caller.f_code.co_filename)}:{caller.f_lineno}"
    print(f"{blue(stamp)} {source}: {message}", file=sys.stderr)


def warn(message: str) -> None:
    """Print a warning to stderr."""
    print(yellow(f"Warning: {message}"), file=sys.stderr)


class BenchmarkError(Exception):
    """Fatal error that aborts the benchmark run."""


class ConfigError(BenchmarkError):
    """Invalid benchmark configuration."""


def percentile(vals: Sequence[int], p: int) -> int:
    """Compute the p-th percentile of sorted duration samples.

    Uses the NIST method (https://en.wikipedia.org/wiki/Percentile#NIST_method):
    rank = (p / 100) * (N + 1), interpolating linearly between neighbouring
    samples. The interpolated value is truncated toward zero, not rounded.

    The caller must guarantee that vals is sorted ascending and non-empty and
    that 0 <= p <= 100. These are only checked by assertions.

    Args:
        vals: Ascending duration samples (list or numpy array)
        p: Percentile rank in [0, 100]

    Returns:
        Percentile value in the samples' integer unit
    """
    assert len(vals) > 0, "percentile of an empty sample set"
    assert 0 <= p <= 100, f"percentile rank out of range: {p}"
    assert np.all(np.asarray(vals[:-1]) <= np.asarray(vals[1:])), "samples are not sorted"

    # Begin by computing the rank.
    n = len(vals)
    rank = (float(p) / 100) * float(n + 1)
    k = int(rank)
    d = rank - k

    if k == 0:
        return int(vals[0])

    if k >= n:
        return int(vals[n - 1])

    if 0 < k < n:
        lower = float(vals[k - 1])
        upper = float(vals[k])
        return int(lower + d * (upper - lower))

    raise ValueError("Invalid input")


def format_bytes(v: float) -> str:
    """Format a byte count using the largest fitting binary unit.

    Args:
        v: Number of bytes

    Returns:
        String such as "812.35 MiB" or "1023.00 bytes"
    """
    if math.isinf(v):
        return "+Inf GiB"
    if v >= GIB:
        return f"{v / GIB:.2f} GiB"
    if v >= MIB:
        return f"{v / MIB:.2f} MiB"
    if v >= KIB:
        return f"{v / KIB:.2f} KiB"
    return f"{v:.2f} bytes"


def _format_fraction(value: int, unit: int) -> str:
    """Render value / unit as an exact decimal without trailing zeros."""
    whole, frac = divmod(value, unit)
    if not frac:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}." + f"{frac:0{digits}d}".rstrip("0")


def format_duration(nanoseconds: int) -> str:
    """Format a nanosecond duration, e.g. "1.234ms", "15.2µs" or "1m30s"."""
    ns = int(nanoseconds)
    if ns == 0:
        return "0s"

    sign = "-" if ns < 0 else ""
    ns = abs(ns)

    if ns < MICROSECOND:
        return f"{sign}{ns}ns"
    if ns < MILLISECOND:
        return f"{sign}{_format_fraction(ns, MICROSECOND)}µs"
    if ns < SECOND:
        return f"{sign}{_format_fraction(ns, MILLISECOND)}ms"

    hours, rem = divmod(ns, HOUR)
    minutes, rem = divmod(rem, MINUTE)
    text = f"{_format_fraction(rem, SECOND)}s"
    if hours:
        text = f"{hours}h{minutes}m{text}"
    elif minutes:
        text = f"{minutes}m{text}"
    return sign + text


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r'(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)')


def parse_duration(text: str) -> float:
    """Parse a duration flag such as "5s", "250ms" or "1m30s".

    Args:
        text: Duration string

    Returns:
        Duration in seconds

    Raises:
        argparse.ArgumentTypeError: If the string is not a valid duration
    """
    value = text.strip()
    sign = 1.0
    if value[:1] in ("+", "-"):
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]

    if value == "0":
        return 0.0
    if not value:
        raise argparse.ArgumentTypeError(f"invalid duration {text!r}")

    total = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if not match:
            raise argparse.ArgumentTypeError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    return sign * total


@dataclass
class ReadConfig:
    """Configuration object for the sequential read benchmark."""

    test_dir: str
    duration: float = 5.0
    file_size: int = MIB
    read_size: int = 16 * KIB

    def __post_init__(self) -> None:
        """Validate input parameters."""
        if not self.test_dir:
            raise ConfigError("You must set --dir.")
        if self.file_size < 0:
            raise ConfigError(f"--file_size must not be negative (got {self.file_size}).")
        if self.read_size <= 0:
            raise ConfigError(f"--read_size must be positive (got {self.read_size}).")


@dataclass
class ReadSamples:
    """Elapsed-time samples in nanoseconds collected by a measurement run."""

    full_file_reads: np.ndarray
    single_read_calls: np.ndarray


@contextmanager
def temporary_test_file(test_dir: str) -> Iterator[tuple]:
    """Create a temporary file in test_dir and delete it when done.

    Args:
        test_dir: Directory within which to create the file

    Yields:
        Tuple of (open file descriptor, path)
    """
    log(f"Creating a temporary file in {test_dir}.")
    try:
        fd, path = tempfile.mkstemp(prefix="sequential_read", dir=test_dir)
    except OSError as err:
        raise BenchmarkError(f"TempFile: {err}") from err

    try:
        yield fd, path
    finally:
        log(f"Deleting {path}.")
        try:
            os.remove(path)
        except OSError as err:
            warn(f"Could not delete {path}: {err}")


class SequentialReadTester:
    """Measures open-and-read-to-EOF performance of a single file."""

    def __init__(self, config: ReadConfig):
        """Initialize the tester.

        Args:
            config: Benchmark configuration
        """
        self.config = config

    def fill_test_file(self, fd: int) -> None:
        """Write file_size random bytes to fd and close it.

        Args:
            fd: File descriptor opened for writing
        """
        log(f"Writing {self.config.file_size} random bytes.")
        try:
            handle = os.fdopen(fd, "wb")
        except OSError as err:
            os.close(fd)
            raise BenchmarkError(f"Copying random bytes: {err}") from err

        try:
            remaining = self.config.file_size
            while remaining > 0:
                chunk = os.urandom(min(remaining, WRITE_CHUNK_SIZE))
                handle.write(chunk)
                remaining -= len(chunk)
            handle.flush()
        except OSError as err:
            with suppress(OSError):
                handle.close()
            raise BenchmarkError(f"Copying random bytes: {err}") from err

        # Finish off the file.
        try:
            handle.close()
        except OSError as err:
            raise BenchmarkError(f"Closing file: {err}") from err

    def read_once(self, path: str, buf: bytearray,
                  single_read_calls: List[int]) -> int:
        """Open path and read it to end-of-stream.

        Every read call is timed and appended to single_read_calls,
        including the final one that returns zero bytes.

        Args:
            path: File to read
            buf: Read buffer; its length is the size of each read call
            single_read_calls: Collection that receives per-read samples

        Returns:
            Elapsed nanoseconds for the whole read loop
        """
        # Unbuffered, so that each readinto() is a single read(2)
        try:
            handle = open(path, "rb", buffering=0)
        except OSError as err:
            raise BenchmarkError(f"Opening file: {err}") from err

        try:
            file_start = time.perf_counter_ns()
            while True:
                read_start = time.perf_counter_ns()
                count = handle.readinto(buf)
                single_read_calls.append(time.perf_counter_ns() - read_start)
                if not count:
                    break
            elapsed = time.perf_counter_ns() - file_start
        except OSError as err:
            with suppress(OSError):
                handle.close()
            raise BenchmarkError(f"Reading: {err}") from err

        try:
            handle.close()
        except OSError as err:
            raise BenchmarkError(f"Closing file after reading: {err}") from err

        return elapsed

    def measure(self, path: str) -> ReadSamples:
        """Repeatedly read path until the configured duration has elapsed.

        At least one full pass is always made, even for a zero duration.

        Args:
            path: File to read

        Returns:
            Sorted full-file and single-read-call samples
        """
        log(f"Measuring for {format_duration(int(self.config.duration * SECOND))}...")

        full_file_reads: List[int] = []
        single_read_calls: List[int] = []
        buf = bytearray(self.config.read_size)
        limit = self.config.duration * SECOND

        overall_start = time.perf_counter_ns()
        while not full_file_reads or time.perf_counter_ns() - overall_start < limit:
            full_file_reads.append(self.read_once(path, buf, single_read_calls))

        samples = ReadSamples(
            full_file_reads=np.sort(np.asarray(full_file_reads, dtype=np.int64)),
            single_read_calls=np.sort(np.asarray(single_read_calls, dtype=np.int64)),
        )

        log(f"Read the file {len(samples.full_file_reads)} times, "
            f"using {len(samples.single_read_calls)} calls to read(2).")
        return samples

    @staticmethod
    def report_samples(name: str, bytes_per_observation: int,
                       observations: Sequence[int]) -> None:
        """Print percentile latencies and implied bandwidth for one sample set.

        Args:
            name: Header for the sample set
            bytes_per_observation: Bytes transferred by each observation
            observations: Sorted samples in nanoseconds
        """
        print(f"\n{name}:")
        for ptile in PERCENTILES:
            d = percentile(observations, ptile)
            seconds = d / SECOND
            if seconds:
                bandwidth = bytes_per_observation / seconds
            else:
                bandwidth = float("inf")

            print(f"  {ptile:02d}th ptile: {format_duration(d):>10} "
                  f"({format_bytes(bandwidth)}/s)")

    def report(self, samples: ReadSamples) -> None:
        """Print the full report to stdout."""
        self.report_samples("Full-file read times", self.config.file_size,
                            samples.full_file_reads)
        self.report_samples("read(2) latencies", self.config.read_size,
                            samples.single_read_calls)
        print("")

    def run(self) -> ReadSamples:
        """Run the benchmark.

        Creates and fills the temporary file, measures reads of it, removes
        it and prints the report.

        Returns:
            The collected samples
        """
        with temporary_test_file(self.config.test_dir) as (fd, path):
            self.fill_test_file(fd)
            samples = self.measure(path)

        self.report(samples)
        return samples


def get_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        description="Measure open-and-read-to-EOF performance of a single file"
    )

    parser.add_argument(
        "--dir", default="",
        help="Directory within which to write the file."
    )

    parser.add_argument(
        "--duration", type=parse_duration, default=5.0,
        help="How long to run, e.g. 5s, 500ms, 1m30s (default: 5s)"
    )

    parser.add_argument(
        "--file_size", type=int, default=MIB,
        help=f"Size of file to use (default: {MIB})"
    )

    parser.add_argument(
        "--read_size", type=int, default=16 * KIB,
        help=f"Size of each call to read(2) (default: {16 * KIB})"
    )

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Arguments to parse; defaults to sys.argv[1:]

    Returns:
        argparse.Namespace: The parsed command-line arguments
    """
    parser = get_argument_parser()
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the script.

    Exits with status code 1 on any configuration or filesystem error.
    """
    args = parse_args(argv)

    try:
        config = ReadConfig(
            test_dir=args.dir,
            duration=args.duration,
            file_size=args.file_size,
            read_size=args.read_size,
        )
        SequentialReadTester(config).run()
    except BenchmarkError as err:
        print(red(str(err)), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
