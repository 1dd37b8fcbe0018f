# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for filter_bam_pairs testing.

Provides a pysam-free mock record for unit tests, builders for small
name-sorted SAM files, and sequences with an exactly known k-mer complexity.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from filter_bam_pairs import KMER_SIZE

# SAM flag bits
PAIRED = 0x1
UNMAPPED = 0x4
READ1 = 0x40
READ2 = 0x80
SECONDARY = 0x100
SUPPLEMENTARY = 0x800

# Proper-pair flags for a forward R1 / reverse R2
R1_FLAG = 99
R2_FLAG = 147

SAM_HEADER = "@HD\tVN:1.6\tSO:queryname\n@SQ\tSN:test_ref\tLN:1000\n"


class MockAlignedSegment:
    """Mock AlignedSegment for unit testing without pysam I/O."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ATCGATCGATCG",
        cigartuples: list[tuple[int, int]] | None = None,
        is_read1: bool = False,
        is_read2: bool = False,
        is_unmapped: bool = False,
        is_secondary: bool = False,
        is_supplementary: bool = False,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        self.cigartuples = cigartuples
        self.is_read1 = is_read1
        self.is_read2 = is_read2
        self.is_unmapped = is_unmapped
        self.is_secondary = is_secondary
        self.is_supplementary = is_supplementary

    @property
    def flag(self) -> int:
        flag = PAIRED if (self.is_read1 or self.is_read2) else 0
        for bit, is_set in (
            (UNMAPPED, self.is_unmapped),
            (READ1, self.is_read1),
            (READ2, self.is_read2),
            (SECONDARY, self.is_secondary),
            (SUPPLEMENTARY, self.is_supplementary),
        ):
            if is_set:
                flag |= bit
        return flag


def _de_bruijn(alphabet: str, n: int) -> str:
    """Cyclic sequence containing every length-n word over `alphabet` once."""
    k = len(alphabet)
    a = [0] * k * n
    out: list[int] = []

    def db(t: int, p: int) -> None:
        if t > n:
            if n % p == 0:
                out.extend(a[1 : p + 1])
        else:
            a[t] = a[t - p]
            db(t + 1, p)
            for j in range(a[t - p] + 1, k):
                a[t] = j
                db(t + 1, t)

    db(1, 1)
    return "".join(alphabet[i] for i in out)


# 256 bases; every linear 4-mer starting at positions 0..252 is unique, and no
# base repeats more than 4 times in a row
DE_BRUIJN_4 = _de_bruijn("ACGT", 4)


def sequence_with_complexity(distinct: int, total: int) -> str:
    """
    Build a sequence with exactly `total` 21-mer windows of which `distinct`
    are unique: a de Bruijn prefix, a 'C' separator, then a poly-A tail.

    Every window starting at or before the separator is unique and every
    window inside the tail is the same poly-A word, so the distinct count is
    (prefix length + 1) + 1.
    """
    assert 2 <= distinct <= total, "need 2 <= distinct <= total"
    prefix_len = distinct - 2
    assert prefix_len <= len(DE_BRUIJN_4) - 3, "prefix too long for unique 4-mers"
    tail_len = total + KMER_SIZE - 2 - prefix_len
    return DE_BRUIJN_4[:prefix_len] + "C" + "A" * tail_len


def sam_line(
    qname: str,
    flag: int,
    seq: str,
    cigar: str | None = None,
    pos: int = 100,
) -> str:
    """One SAM body line; unmapped records get '*' placement fields."""
    if flag & UNMAPPED:
        return f"{qname}\t{flag}\t*\t0\t0\t*\t*\t0\t0\t{seq}\t*\n"
    cigar = cigar or f"{len(seq)}M"
    return f"{qname}\t{flag}\ttest_ref\t{pos}\t60\t{cigar}\t=\t{pos}\t0\t{seq}\t*\n"


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def mock_segment() -> type[MockAlignedSegment]:
    """The mock record class, for building records inline."""
    return MockAlignedSegment


@pytest.fixture
def complexity_sequence() -> Callable[[int, int], str]:
    """Factory for sequences with an exact distinct/total 21-mer count."""
    return sequence_with_complexity


@pytest.fixture
def unique_sequence() -> Callable[[int], str]:
    """Factory for sequences whose 21-mers are all distinct."""

    def build(length: int) -> str:
        assert length <= len(DE_BRUIJN_4)
        return DE_BRUIJN_4[:length]

    return build


@pytest.fixture
def write_sam(temp_dir: Path) -> Callable[..., Path]:
    """
    Write a name-sorted SAM file from SAM body lines (see `sam_line`).
    Returns the path.
    """

    def write(lines: list[str], name: str = "input.sam", header: str = SAM_HEADER) -> Path:
        path = temp_dir / name
        path.write_text(header + "".join(lines))
        return path

    return write


@pytest.fixture
def line() -> Callable[..., str]:
    """Expose `sam_line` to tests."""
    return sam_line


@pytest.fixture
def passing_pair_lines(unique_sequence) -> list[str]:
    """Two mates with complexity 1.0 and a 100-base aligned run each."""
    seq = unique_sequence(100)
    return [
        sam_line("pairA", R1_FLAG, seq),
        sam_line("pairA", R2_FLAG, seq),
    ]


@pytest.fixture
def mixed_complexity_pair_lines(complexity_sequence) -> list[str]:
    """
    mate1: complexity 0.9, longest aligned run 95
    mate2: complexity 0.5, longest aligned run 95
    """
    return [
        sam_line("fragment_001", R1_FLAG, complexity_sequence(90, 100), "95M25S"),
        sam_line("fragment_001", R2_FLAG, complexity_sequence(50, 100), "95M25S"),
    ]


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
