#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import polars as pl
import pysam
from loguru import logger
from pydantic import Field, ValidationError
from pydantic.dataclasses import dataclass as validated_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
ALIGNED_OPS = {0, 7}
MAX_CIGAR_OP = 8

# Window length for the complexity score
KMER_SIZE: int = 21

# Log a progress line after this many pairs
PROGRESS_EVERY: int = 100_000


# -------------------------------- ERRORS ----------------------------------- #


class PairFilterError(Exception):
    """
    Base class for fatal filtering errors. Each subclass carries the process
    exit code the CLI reports, plus the offending read name and the 1-based
    record position in the input stream when they are known.
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        read_name: str | None = None,
        position: int | None = None,
    ) -> None:
        self.read_name = read_name
        self.position = position
        where = []
        if read_name is not None:
            where.append(f"read '{read_name}'")
        if position is not None:
            where.append(f"record #{position}")
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)


class StreamDesyncError(PairFilterError):
    """Adjacent primary records do not form a mate pair."""

    exit_code = 3


class TruncatedPairError(PairFilterError):
    """The input ended while a mate was still waiting for its partner."""

    exit_code = 4


class MalformedRecordError(PairFilterError):
    """A record could not be decoded or failed validation."""

    exit_code = 5


class AlignmentIOError(PairFilterError):
    """Opening, reading or writing an alignment file failed."""

    exit_code = 6


# ------------------------------- DATA TYPES -------------------------------- #


@validated_dataclass(frozen=True)
class FilterConfig:
    """
    Thresholds applied to both mates of every pair.

    - complexity_threshold: minimum distinct/total k-mer ratio, in [0, 1]
    - min_mapped_threshold: minimum longest run of aligned bases (0 disables)
    - kmer_size: window length used by the complexity score
    """

    complexity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    min_mapped_threshold: int = Field(default=0, ge=0)
    kmer_size: int = Field(default=KMER_SIZE, ge=1)


class NonPrimaryPolicy(Enum):
    """What to do with secondary and supplementary records."""

    SKIP = auto()  # drop from pairing and output, count them
    REJECT = auto()  # treat as a broken stream


class UnmappedPolicy(Enum):
    """What to do with unmapped primary records."""

    PAIR = auto()  # pair and score them like any other primary record
    SKIP = auto()  # drop before pairing; a half-mapped pair then desyncs


@dataclass(frozen=True)
class PairingPolicy:
    """Which records take part in pairing."""

    non_primary: NonPrimaryPolicy = NonPrimaryPolicy.SKIP
    unmapped: UnmappedPolicy = UnmappedPolicy.PAIR


class ReadPair(NamedTuple):
    """Two mates sharing a read name, kept in input stream order."""

    first: pysam.AlignedSegment
    second: pysam.AlignedSegment

    @property
    def name(self) -> str:
        return self.first.query_name


@dataclass(frozen=True)
class ComplexityScore:
    """
    Distinct/total k-mer windows for one sequence. A score with no windows
    (sequence shorter than k) is undefined and only satisfies a threshold of
    exactly zero.
    """

    distinct: int
    total: int

    @property
    def is_defined(self) -> bool:
        return self.total > 0

    @property
    def value(self) -> float | None:
        if not self.is_defined:
            return None
        return self.distinct / self.total

    def passes(self, threshold: float) -> bool:
        """Compare against a threshold; undefined passes only at 0."""
        if not self.is_defined:
            return threshold == 0
        return self.distinct / self.total >= threshold

    def __str__(self) -> str:
        if not self.is_defined:
            return "undefined"
        return f"{self.distinct / self.total:.3f}"


class MateScore(NamedTuple):
    """Both filter metrics for a single mate."""

    complexity: ComplexityScore
    mapped_run: int


class Verdict(Enum):
    PASS = auto()
    FAIL = auto()


@dataclass
class FilterStats:
    """Running counters for one filtering pass."""

    pairs_seen: int = 0
    pairs_kept: int = 0
    pairs_failed_complexity: int = 0
    pairs_failed_mapped: int = 0
    skipped_records: int = 0

    @property
    def pairs_removed(self) -> int:
        return self.pairs_seen - self.pairs_kept

    @property
    def pass_rate(self) -> float:
        """Percentage of pairs kept, 0.0 before any pair has been seen."""
        if self.pairs_seen == 0:
            return 0.0
        return self.pairs_kept / self.pairs_seen * 100.0

    def as_row(self, config: FilterConfig) -> dict[str, int | float]:
        """Flatten counters and thresholds into one report row."""
        return {
            "pairs_seen": self.pairs_seen,
            "pairs_kept": self.pairs_kept,
            "pairs_removed": self.pairs_removed,
            "pairs_failed_complexity": self.pairs_failed_complexity,
            "pairs_failed_mapped": self.pairs_failed_mapped,
            "skipped_records": self.skipped_records,
            "pass_rate": round(self.pass_rate, 4),
            "complexity_threshold": config.complexity_threshold,
            "min_mapped_threshold": config.min_mapped_threshold,
            "kmer_size": config.kmer_size,
        }


# ----------------------------- LOGGING SETUP ------------------------------- #

# Indexed by (verbose - quiet) + 3, clamped; index 3 is the default
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE")


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Install a single stderr sink. The default level is SUCCESS; every -v
    steps towards TRACE and every -q towards CRITICAL.
    """
    logger.remove()
    index = min(max(verbose - quiet + 3, 0), len(_LOG_LEVELS) - 1)
    level_str = _LOG_LEVELS[index]
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ------------------------------- SCORING ----------------------------------- #


def longest_aligned_run(ops: Iterable[tuple[int, int]] | None) -> int:
    """
    Length of the longest stretch of consecutive aligned operations (M or =).

    Adjacent aligned runs are summed; any other operation (I, D, N, S, H, P, X)
    ends the stretch. Returns 0 for a missing, empty or unaligned CIGAR.
    """
    if not ops:
        return 0
    longest = 0
    current = 0
    for op, length in ops:
        if op in ALIGNED_OPS:
            current += length
            continue
        longest = max(longest, current)
        current = 0
    return max(longest, current)


def kmer_complexity(seq: str | None, k: int = KMER_SIZE) -> ComplexityScore:
    """
    Ratio of distinct to total k-length windows of `seq` (stride 1).

    Windows are compared as exact, case-sensitive strings, so 'N' is an
    ordinary character. Sequences shorter than `k` get an undefined score.
    """
    if k < 1:
        msg = f"k-mer size must be positive, got {k}"
        raise ValueError(msg)
    if not seq or len(seq) < k:
        return ComplexityScore(distinct=0, total=0)

    total = len(seq) - k + 1
    distinct = len({seq[i : i + k] for i in range(total)})
    return ComplexityScore(distinct=distinct, total=total)


# ------------------------------ ALIGNMENT I/O ------------------------------ #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    suffix = Path(path).suffix.lower()
    modes = {".sam": ("r", "w"), ".bam": ("rb", "wb"), ".cram": ("rc", "wc")}
    if suffix not in modes:
        msg = "Output/input must end with .sam, .bam, or .cram"
        logger.error(msg)
        raise ValueError(msg)
    read_mode, write_mode = modes[suffix]
    return write_mode if write else read_mode


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by the extension.

    Writing requires either an open AlignmentFile, whose header is copied
    losslessly via `template=`, or a header dict. CRAM needs a reference
    FASTA unless the reference can be resolved from the header.
    """
    mode = _io_mode_from_ext(path, write)

    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    logger.debug(f"Opening for {'write' if write else 'read'}: {path} (mode={mode})")
    if not write:
        return pysam.AlignmentFile(path, mode, **kwargs)

    if isinstance(template_or_header, pysam.AlignmentFile):
        return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
    if isinstance(template_or_header, dict):
        return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
    msg = (
        f"Writing to '{path}' requires a template AlignmentFile or a header dict, "
        f"got {type(template_or_header).__name__}"
    )
    logger.error(msg)
    raise ValueError(msg)


def check_sort_order(header: pysam.AlignmentHeader | dict) -> None:
    """Warn when the header does not declare queryname sort order."""
    header_dict = header if isinstance(header, dict) else header.to_dict()
    sort_order = header_dict.get("HD", {}).get("SO")
    if sort_order != "queryname":
        logger.warning(
            f"Input header declares sort order {sort_order or 'unknown'!r}, not "
            "'queryname'; mates must be adjacent (samtools sort -n).",
        )


def validate_record(record: pysam.AlignedSegment, position: int) -> None:
    """Reject records the scorer cannot interpret."""
    if not record.query_name:
        msg = "Record has no read name"
        raise MalformedRecordError(msg, position=position)
    for op, length in record.cigartuples or ():
        if not 0 <= op <= MAX_CIGAR_OP:
            msg = f"Invalid CIGAR operation code {op}"
            raise MalformedRecordError(msg, record.query_name, position)
        if length <= 0:
            msg = f"Non-positive CIGAR operation length {length}"
            raise MalformedRecordError(msg, record.query_name, position)


class RecordStream:
    """
    Sequential reader over an open alignment file.

    `next_record()` returns the next validated record, or None at end of
    stream. Decoder failures surface as MalformedRecordError carrying the
    position of the record that could not be read.
    """

    def __init__(self, alignment: Iterable[pysam.AlignedSegment]) -> None:
        self._records = iter(alignment)
        self.position = 0
        self._last_name: str | None = None

    def next_record(self) -> pysam.AlignedSegment | None:
        try:
            record = next(self._records, None)
        except (OSError, ValueError) as exc:
            msg = f"Could not decode record after '{self._last_name}': {exc}"
            raise MalformedRecordError(msg, position=self.position + 1) from exc
        if record is None:
            return None
        self.position += 1
        validate_record(record, self.position)
        self._last_name = record.query_name
        return record

    def __iter__(self) -> Iterator[pysam.AlignedSegment]:
        while (record := self.next_record()) is not None:
            yield record


class RecordSink:
    """Writer that reports failures as AlignmentIOError."""

    def __init__(self, alignment: pysam.AlignmentFile) -> None:
        self._alignment = alignment
        self.written = 0

    def write_record(self, record: pysam.AlignedSegment) -> None:
        try:
            self._alignment.write(record)
        except OSError as exc:
            msg = f"Failed to write record: {exc}"
            raise AlignmentIOError(msg, record.query_name) from exc
        self.written += 1


# ---------------------------- PAIR RECONSTRUCTION --------------------------- #


class PairState(Enum):
    IDLE = auto()
    HALF_PAIR = auto()


class PairReconstructor:
    """
    Two-state machine turning a name-sorted record stream into mate pairs.

    Only one record is ever held: the pending mate of the current pair. The
    next primary record must carry the same name, otherwise the input is not
    name-sorted and StreamDesyncError is raised. `finish()` must be called at
    end of stream to detect a dangling mate.
    """

    def __init__(self, policy: PairingPolicy | None = None) -> None:
        self.policy = policy or PairingPolicy()
        self.state = PairState.IDLE
        self.skipped = 0
        self._pending: pysam.AlignedSegment | None = None
        self._pending_position: int | None = None

    def _is_skipped(self, record: pysam.AlignedSegment, position: int) -> bool:
        if record.is_secondary or record.is_supplementary:
            if self.policy.non_primary is NonPrimaryPolicy.REJECT:
                kind = "secondary" if record.is_secondary else "supplementary"
                msg = f"Unexpected {kind} record in a primary-only stream"
                raise StreamDesyncError(msg, record.query_name, position)
            return True
        return record.is_unmapped and self.policy.unmapped is UnmappedPolicy.SKIP

    def push(self, record: pysam.AlignedSegment, position: int) -> ReadPair | None:
        """Feed one record; return a completed pair when this record closes one."""
        if self._is_skipped(record, position):
            self.skipped += 1
            logger.trace(f"Skipping record '{record.query_name}' (flag={record.flag})")
            return None

        if self.state is PairState.IDLE:
            self._pending = record
            self._pending_position = position
            self.state = PairState.HALF_PAIR
            return None

        pending = self._pending
        if record.query_name != pending.query_name:
            msg = (
                "Input is not name-sorted: expected the mate of "
                f"'{pending.query_name}' (record #{self._pending_position}) but found "
                f"'{record.query_name}'. Please sort: samtools sort -n input.bam "
                "-o name_sorted.bam"
            )
            raise StreamDesyncError(msg, record.query_name, position)
        if (record.is_read1 and pending.is_read1) or (
            record.is_read2 and pending.is_read2
        ):
            mate = "first" if record.is_read1 else "second"
            msg = f"Both records are flagged {mate}-in-pair"
            raise StreamDesyncError(msg, record.query_name, position)

        self._pending = None
        self._pending_position = None
        self.state = PairState.IDLE
        return ReadPair(pending, record)

    def finish(self) -> None:
        """Raise TruncatedPairError if a mate is still waiting for its partner."""
        if self.state is PairState.HALF_PAIR:
            msg = "Input ended before the mate of this read was seen"
            raise TruncatedPairError(
                msg,
                self._pending.query_name,
                self._pending_position,
            )


def iter_pairs(
    records: Iterable[pysam.AlignedSegment],
    reconstructor: PairReconstructor | None = None,
) -> Iterator[ReadPair]:
    """Yield complete pairs from a record stream, in stream order."""
    reconstructor = reconstructor or PairReconstructor()
    for position, record in enumerate(records, start=1):
        pair = reconstructor.push(record, position)
        if pair is not None:
            yield pair
    reconstructor.finish()


# ----------------------------- FILTER & EMIT ------------------------------- #


def score_mate(record: pysam.AlignedSegment, config: FilterConfig) -> MateScore:
    """Compute complexity and longest aligned run for one mate."""
    return MateScore(
        complexity=kmer_complexity(record.query_sequence, config.kmer_size),
        mapped_run=longest_aligned_run(record.cigartuples),
    )


def decide(
    pair: ReadPair,
    config: FilterConfig,
    scores: Sequence[MateScore] | None = None,
) -> Verdict:
    """
    PASS only when both mates clear both thresholds. Pass `scores` (one per
    mate, in pair order) to reuse metrics already computed by the caller.
    """
    if scores is None:
        scores = [score_mate(record, config) for record in pair]
    for score in scores:
        if not score.complexity.passes(config.complexity_threshold):
            return Verdict.FAIL
        if score.mapped_run < config.min_mapped_threshold:
            return Verdict.FAIL
    return Verdict.PASS


def emit_pair(pair: ReadPair, sink: RecordSink) -> None:
    """Write both mates unchanged, in the order they were read."""
    sink.write_record(pair.first)
    sink.write_record(pair.second)


def filter_pairs(
    records: Iterable[pysam.AlignedSegment],
    sink: RecordSink,
    config: FilterConfig,
    policy: PairingPolicy | None = None,
) -> FilterStats:
    """
    Stream input -> output one pair at a time, keeping pairs whose mates both
    pass the complexity and mapped-run thresholds.

    Processing behavior:
    - Secondary/supplementary records never pair; the policy decides whether
      they are skipped or abort the run
    - Unmapped primaries are paired (mapped run 0) or skipped, per policy
    - A failing pair writes nothing; a passing pair writes both mates as read

    Args:
        records: Name-sorted input records (usually a RecordStream)
        sink: Output writer
        config: Filter thresholds
        policy: Pairing policy for non-primary and unmapped records

    Returns:
        FilterStats with pair counts and per-axis failure counts

    Raises:
        StreamDesyncError, TruncatedPairError, MalformedRecordError,
        AlignmentIOError: all fatal, nothing is retried
    """
    stats = FilterStats()
    reconstructor = PairReconstructor(policy)

    for pair in iter_pairs(records, reconstructor):
        stats.pairs_seen += 1
        scores = [score_mate(record, config) for record in pair]
        verdict = decide(pair, config, scores)

        if verdict is Verdict.FAIL:
            # a pair can fail on both axes and is counted under each
            if any(not s.complexity.passes(config.complexity_threshold) for s in scores):
                stats.pairs_failed_complexity += 1
            if any(s.mapped_run < config.min_mapped_threshold for s in scores):
                stats.pairs_failed_mapped += 1

        logger.trace(
            f"Pair '{pair.name}': complexity={scores[0].complexity}/{scores[1].complexity} "
            f"mapped={scores[0].mapped_run}/{scores[1].mapped_run} -> {verdict.name}",
        )
        if verdict is Verdict.PASS:
            emit_pair(pair, sink)
            stats.pairs_kept += 1

        if stats.pairs_seen % PROGRESS_EVERY == 0:
            logger.info(
                f"Processed {stats.pairs_seen} pairs, kept {stats.pairs_kept} "
                f"({stats.pass_rate:.1f}%)",
            )

    stats.skipped_records = reconstructor.skipped
    assert sink.written == 2 * stats.pairs_kept, (
        f"Output count mismatch: wrote {sink.written} records for {stats.pairs_kept} kept pairs"
    )
    return stats


def write_stats_report(stats: FilterStats, config: FilterConfig, path: str) -> None:
    """Write the run summary as a one-row TSV."""
    try:
        pl.DataFrame([stats.as_row(config)]).write_csv(path, separator="\t")
    except OSError as exc:
        msg = f"Could not write stats report to {path}: {exc}"
        raise AlignmentIOError(msg) from exc
    logger.info(f"Saved filtering summary to {path}")


def run_filter(
    in_path: str,
    out_path: str,
    config: FilterConfig,
    policy: PairingPolicy,
    reference: str | None = None,
) -> FilterStats:
    """
    Open input and output, filter, and close both. On a fatal error the
    partial output file is removed so it cannot be mistaken for a result.
    """
    try:
        input_alignment = open_alignment(in_path, write=False, reference=reference)
    except (OSError, ValueError) as exc:
        msg = f"Cannot open input {in_path}: {exc}"
        raise AlignmentIOError(msg) from exc
    try:
        output_alignment = open_alignment(
            out_path,
            write=True,
            template_or_header=input_alignment,
            reference=reference,
        )
    except (OSError, ValueError) as exc:
        input_alignment.close()
        msg = f"Cannot open output {out_path}: {exc}"
        raise AlignmentIOError(msg) from exc

    check_sort_order(input_alignment.header)
    try:
        try:
            stats = filter_pairs(
                RecordStream(input_alignment),
                RecordSink(output_alignment),
                config,
                policy,
            )
        finally:
            output_alignment.close()
            input_alignment.close()
    except PairFilterError:
        Path(out_path).unlink(missing_ok=True)
        logger.warning(f"Removed incomplete output {out_path}")
        raise
    return stats


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Filter paired-end reads in a name-sorted SAM/BAM/CRAM by k-mer "
            "complexity and longest contiguous aligned run.\n"
            "A pair is kept only when both mates pass both filters; kept mates are "
            "written unchanged and in input order."
        ),
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        required=True,
        help="Input SAM/BAM/CRAM (must be name-sorted)",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        required=True,
        help="Output SAM/BAM/CRAM",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--stats",
        dest="stats_path",
        default=None,
        help="Write a one-row TSV summary of the run to this path",
    )

    # Thresholds
    p.add_argument(
        "-c",
        "--complexity",
        type=float,
        default=0.8,
        help=f"K-mer complexity cutoff, 0.0-1.0 (k={KMER_SIZE}, default: 0.8)",
    )
    p.add_argument(
        "-m",
        "--min-mapped",
        type=int,
        default=0,
        help="Minimum contiguous aligned bases per mate (default: 0 = disabled)",
    )

    # Pairing policy
    pairing_group = p.add_argument_group("Pairing Policy")
    pairing_group.add_argument(
        "--non-primary",
        choices=["skip", "reject"],
        default="skip",
        help=(
            "Secondary/supplementary records: skip them (default) or "
            "abort because the input should hold primaries only"
        ),
    )
    pairing_group.add_argument(
        "--unmapped",
        choices=["pair", "skip"],
        default="pair",
        help=(
            "Unmapped primaries: pair and score them (default) or skip them. "
            "Skipping breaks pairs with a single unmapped mate."
        ),
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = FilterConfig(
            complexity_threshold=args.complexity,
            min_mapped_threshold=args.min_mapped,
        )
    except ValidationError as exc:
        parser.error(f"invalid threshold: {exc}")
    policy = PairingPolicy(
        non_primary=NonPrimaryPolicy[args.non_primary.upper()],
        unmapped=UnmappedPolicy[args.unmapped.upper()],
    )

    logger.info("Filtering paired-end reads by k-mer complexity and mapped bases")
    logger.info(f"  Input: {args.in_path}")
    logger.info(f"  Output: {args.out_path}")
    logger.info(f"  Complexity cutoff: {config.complexity_threshold:.3f}")
    if config.min_mapped_threshold > 0:
        logger.info(f"  Min contiguous mapped bases: {config.min_mapped_threshold} bp")
    logger.info(f"  K-mer size: {config.kmer_size}")
    logger.debug(f"PairingPolicy: {policy}")

    try:
        stats = run_filter(
            args.in_path,
            args.out_path,
            config,
            policy,
            reference=args.reference,
        )
        if args.stats_path:
            write_stats_report(stats, config, args.stats_path)
    except PairFilterError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        sys.exit(exc.exit_code)

    logger.success(
        f"Pairs: {stats.pairs_seen} | Kept: {stats.pairs_kept} | "
        f"Removed: {stats.pairs_removed} (low complexity: "
        f"{stats.pairs_failed_complexity}, short mapped run: "
        f"{stats.pairs_failed_mapped}) | Skipped records: {stats.skipped_records} | "
        f"Pass rate: {stats.pass_rate:.2f}%",
    )


if __name__ == "__main__":
    main()
