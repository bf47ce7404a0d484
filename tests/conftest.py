# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "biopython",
#     "loguru",
#     "pydantic",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for samtom4 testing.

This module provides shared fixtures for testing samtom4.py: reference FASTA
files, SAM files built with pysam, in-memory source records and a loguru sink
that collects warnings.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the module we're testing
from samtom4 import (
    CigarOp,
    HeaderReference,
    ReferenceSequence,
    SourceAlignmentRecord,
    build_catalog,
)

CHR1_TITLE = "chr1 first test chromosome"
CHR2_TITLE = "chr2 second test chromosome"
CHR1_SEQ = "ACGTACGTAC" * 4  # 40 bp
CHR2_SEQ = "TTGGCCAATT" * 3  # 30 bp


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def fasta_references() -> list[ReferenceSequence]:
    """The two test references in FASTA order."""
    return [
        ReferenceSequence(title=CHR1_TITLE, sequence=CHR1_SEQ, index=0),
        ReferenceSequence(title=CHR2_TITLE, sequence=CHR2_SEQ, index=1),
    ]


@pytest.fixture
def header_refs() -> list[HeaderReference]:
    """SAM header view of the same references, declared in the opposite order."""
    return [
        HeaderReference(name="chr2", length=len(CHR2_SEQ)),
        HeaderReference(name="chr1", length=len(CHR1_SEQ)),
    ]


@pytest.fixture
def catalog(fasta_references, header_refs):
    """Catalog resolving short names to full FASTA titles."""
    return build_catalog(fasta_references, header_refs)


@pytest.fixture
def short_name_catalog(fasta_references, header_refs):
    """Catalog that keeps SAM header short names."""
    return build_catalog(fasta_references, header_refs, use_short_ref_names=True)


def make_record(
    cigar: list[tuple[int, int]],
    query_sequence: str | None,
    reference_name: str = "chr1",
    reference_start: int = 0,
    flag: int = 0,
    query_name: str = "read_001",
    score: int = -100,
    mapping_quality: int = 60,
    original_query_length: int = 0,
) -> SourceAlignmentRecord:
    """Build a SourceAlignmentRecord from pysam-style CIGAR tuples."""
    return SourceAlignmentRecord(
        query_name=query_name,
        reference_name=reference_name,
        cigar=tuple(CigarOp(op, ln) for op, ln in cigar),
        flag=flag,
        reference_start=reference_start,
        query_sequence=query_sequence,
        score=score,
        mapping_quality=mapping_quality,
        original_query_length=original_query_length,
    )


@pytest.fixture
def record_factory() -> Callable[..., SourceAlignmentRecord]:
    return make_record


def write_fasta(path: Path, entries: list[tuple[str, str]]) -> Path:
    """Write (title, sequence) pairs as a FASTA file."""
    with open(path, "w") as f:
        for title, sequence in entries:
            f.write(f">{title}\n")
            f.write(f"{sequence}\n")
    return path


@pytest.fixture
def reference_fasta(temp_dir: Path) -> Path:
    """Reference FASTA holding chr1 and chr2 with full titles."""
    return write_fasta(
        temp_dir / "reference.fasta",
        [(CHR1_TITLE, CHR1_SEQ), (CHR2_TITLE, CHR2_SEQ)],
    )


def create_sam_header(references: list[tuple[str, int]]) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": name, "LN": length} for name, length in references],
        "PG": [{"ID": "blasr", "PN": "blasr", "VN": "5.3"}],
    }


def write_sam(path: Path, header: dict[str, Any], reads: list[dict[str, Any]]) -> Path:
    """
    Write reads to a SAM file with pysam. Each read is a dict with qname, seq,
    cigar, ref (None for unmapped), pos and optional flag/mapq/tags.
    """
    with pysam.AlignmentFile(str(path), "w", header=header) as sam_file:
        for data in reads:
            read = pysam.AlignedSegment(sam_file.header)
            read.query_name = data["qname"]
            read.query_sequence = data["seq"]
            if data.get("ref") is None:
                read.flag = 4
                read.reference_id = -1
                read.reference_start = -1
            else:
                read.flag = data.get("flag", 0)
                read.reference_id = sam_file.get_tid(data["ref"])
                read.reference_start = data["pos"]
                read.cigartuples = data["cigar"]
                read.mapping_quality = data.get("mapq", 60)
            for tag, value in data.get("tags", {}).items():
                read.set_tag(tag, value)
            sam_file.write(read)
    return path


@pytest.fixture
def sample_reads() -> list[dict[str, Any]]:
    """
    Six reads: three convertible (forward exact, reverse with clips and indels,
    forward with one mismatch) and one each of unmapped, padded and split.
    """
    return [
        {
            "qname": "fwd_exact",
            "seq": CHR1_SEQ[4:14],
            "cigar": [(0, 10)],  # 10M
            "ref": "chr1",
            "pos": 4,
            "mapq": 60,
            "tags": {"AS": -50},
        },
        {
            "qname": "rev_clipped",
            # 3S8M2I5M4D6M2H
            "seq": "GGG" + CHR2_SEQ[2:10] + "AC" + CHR2_SEQ[10:15] + CHR2_SEQ[19:25],
            "cigar": [(4, 3), (0, 8), (1, 2), (0, 5), (2, 4), (0, 6), (5, 2)],
            "ref": "chr2",
            "pos": 2,
            "flag": 16,
            "mapq": 254,
            "tags": {"AS": -300, "XQ": 200},
        },
        {
            "qname": "fwd_mismatch",
            "seq": CHR1_SEQ[0:4] + "T",
            "cigar": [(0, 5)],  # 5M, last base mismatches
            "ref": "chr1",
            "pos": 0,
            "mapq": 20,
            "tags": {"AS": -10},
        },
        {
            "qname": "unmapped",
            "seq": "ACGTACGT",
            "ref": None,
        },
        {
            "qname": "padded",
            "seq": CHR1_SEQ[0:15],
            "cigar": [(0, 10), (6, 2), (0, 5)],  # 10M2P5M
            "ref": "chr1",
            "pos": 0,
            "tags": {"AS": -80},
        },
        {
            "qname": "split",
            "seq": CHR1_SEQ[0:5] + CHR1_SEQ[15:20],
            "cigar": [(0, 5), (3, 10), (0, 5)],  # 5M10N5M
            "ref": "chr1",
            "pos": 0,
            "tags": {"AS": -90},
        },
    ]


@pytest.fixture
def sample_sam_file(temp_dir: Path, sample_reads) -> Path:
    """SAM file whose header lists chr2 before chr1."""
    header = create_sam_header([("chr2", len(CHR2_SEQ)), ("chr1", len(CHR1_SEQ))])
    return write_sam(temp_dir / "sample.sam", header, sample_reads)


@pytest.fixture
def warning_messages() -> Iterator[list[str]]:
    """Collect the text of every WARNING-or-louder loguru message."""
    from loguru import logger

    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(sink_id)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
