#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "biopython",
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Convert SAM/BAM/CRAM alignments into blasr M4 records.

Every mapped, single-segment record is expanded against its reference into an
explicit aligned pair, rescored for matches/mismatches/indels, and written as one
M4 line. Score, mapping quality and (when blasr recorded it in the XQ tag) the
original query length are carried over from the SAM record as-is.
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum, auto
from typing import TYPE_CHECKING, NamedTuple, Protocol, TextIO

import pysam
from Bio import SeqIO
from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass as validated_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

__version__ = "0.1.0"

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
CIGAR_CHARS = "MIDNSHP=X"
REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
BOTH_CONSUME = {0, 7, 8}
INSERTION = 1
DELETION = 2
REF_SKIP = 3
SOFT_CLIP = 4
HARD_CLIP = 5
PADDING = 6

# SAM flag bit for a reverse-complemented SEQ
REVERSE_FLAG = 0x10

UNMAPPED_REFERENCE = "*"
GAP = "-"

M4_HEADER_FIELDS = (
    "qName",
    "tName",
    "score",
    "percentSimilarity",
    "qStrand",
    "qStart",
    "qEnd",
    "qLength",
    "tStrand",
    "tStart",
    "tEnd",
    "tLength",
    "mapQV",
)

_COMPLEMENT = str.maketrans(
    "ACGTURYKMBVDHNacgturykmbvdhn",
    "TGCAAYRMKVBHDNtgcaayrmkvbhdn",
)

# Emit a progress debug line after reading this many records
DEBUG_EVERY: int = 100_000


# -------------------------------- ERRORS ----------------------------------- #


class ConversionError(ValueError):
    """Base class for conditions that abort a conversion run."""


class ReferenceCountError(ConversionError):
    """The reference FASTA and the SAM header disagree on how many references exist."""


class MissingReferenceError(ConversionError):
    """A reference FASTA entry has no counterpart in the SAM header."""


class DuplicateReferenceError(ConversionError):
    """A short reference name is declared more than once."""


class UnresolvedReferenceError(ConversionError):
    """A record names a reference that is absent from the reference catalog."""


class CigarDecodeError(ConversionError):
    """A CIGAR cannot be laid out against its query and reference sequences."""


# ------------------------------- DATA TYPES -------------------------------- #


class Strand(IntEnum):
    """Strand marker, valued as printed in the M4 qStrand/tStrand columns."""

    FORWARD = 0
    REVERSE = 1


def orient(is_reverse: bool, keep_reference_forward: bool = True) -> tuple[Strand, Strand]:  # noqa: FBT001, FBT002
    """
    Return (query_strand, target_strand) for a record's reverse-complement flag.

    With the reference kept forward, a reverse-complemented record puts the query
    on the reverse strand. Otherwise the query stays forward and the target flips.
    """
    if not is_reverse:
        return Strand.FORWARD, Strand.FORWARD
    if keep_reference_forward:
        return Strand.REVERSE, Strand.FORWARD
    return Strand.FORWARD, Strand.REVERSE


def reverse_complement(seq: str) -> str:
    """Reverse-complement a nucleotide string; gap characters pass through."""
    return seq.translate(_COMPLEMENT)[::-1]


@validated_dataclass(frozen=True)
class ReferenceSequence:
    """One entry of the reference FASTA, in file order."""

    title: str = Field(min_length=1)
    sequence: str = Field()
    index: int = Field(ge=0)

    @property
    def short_name(self) -> str:
        return self.title.split()[0]

    @property
    def length(self) -> int:
        return len(self.sequence)


@validated_dataclass(frozen=True)
class HeaderReference:
    """One @SQ line of the SAM header."""

    name: str = Field(min_length=1)
    length: int = Field(ge=0)

    @classmethod
    def from_sq(cls, sq: dict) -> HeaderReference:
        return cls(name=sq["SN"], length=sq.get("LN", 0))


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int


@dataclass(frozen=True)
class SourceAlignmentRecord:
    """The fields of one SAM record that the conversion reads."""

    query_name: str
    reference_name: str
    cigar: tuple[CigarOp, ...] = ()
    flag: int = 0
    reference_start: int = 0
    query_sequence: str | None = None
    score: int = 0  # AS
    mapping_quality: int = 0
    original_query_length: int = 0  # XQ, 0 when absent

    @property
    def is_reverse(self) -> bool:
        return bool(self.flag & REVERSE_FLAG)

    @property
    def cigarstring(self) -> str:
        return "".join(f"{run.length}{CIGAR_CHARS[run.op]}" for run in self.cigar) or "*"

    @classmethod
    def from_pysam(cls, aln: pysam.AlignedSegment) -> SourceAlignmentRecord:
        """Copy the fields used downstream out of a pysam record."""
        reference_name = aln.reference_name
        if aln.is_unmapped or reference_name is None:
            reference_name = UNMAPPED_REFERENCE
        return cls(
            query_name=aln.query_name or "*",
            reference_name=reference_name,
            cigar=tuple(CigarOp(op, ln) for op, ln in aln.cigartuples or ()),
            flag=aln.flag,
            reference_start=max(aln.reference_start, 0),
            query_sequence=aln.query_sequence,
            score=int(aln.get_tag("AS")) if aln.has_tag("AS") else 0,
            mapping_quality=aln.mapping_quality,
            original_query_length=int(aln.get_tag("XQ")) if aln.has_tag("XQ") else 0,
        )


class AlignedPair(NamedTuple):
    """
    Gapped query/target strings laid out from a CIGAR.

    Query coordinates count every query base, hard-clipped ones included, in the
    order the CIGAR lists them. Target coordinates are 0-based on the forward
    reference. Ends are exclusive.
    """

    query: str
    target: str
    query_start: int
    query_end: int
    target_start: int
    target_end: int
    query_length: int


@dataclass(frozen=True)
class AlignmentStats:
    """Column classification of an aligned pair."""

    matches: int = 0
    mismatches: int = 0
    insertions: int = 0
    deletions: int = 0
    score: int = 0

    @property
    def aligned_columns(self) -> int:
        return self.matches + self.mismatches + self.insertions + self.deletions

    @property
    def percent_identity(self) -> float:
        if self.aligned_columns == 0:
            return 0.0
        return 100.0 * self.matches / self.aligned_columns


@dataclass(frozen=True)
class AlignmentCandidate:
    """One M4 row in the making."""

    query_name: str
    target_name: str
    query_strand: Strand
    target_strand: Strand
    query_start: int
    query_end: int
    query_length: int
    target_start: int
    target_end: int
    target_length: int
    aligned_query: str
    aligned_target: str
    stats: AlignmentStats = field(default_factory=AlignmentStats)
    map_qv: int = 0


@dataclass(frozen=True)
class ConversionOptions:
    """Run-wide switches for the conversion."""

    emit_header: bool = False
    use_short_ref_names: bool = False
    keep_reference_forward: bool = True


class ConversionTotals(NamedTuple):
    emitted: int = 0
    skipped_unmapped: int = 0
    skipped_padded: int = 0
    skipped_multi_segment: int = 0
    skipped_no_sequence: int = 0

    @property
    def skipped(self) -> int:
        return (
            self.skipped_unmapped
            + self.skipped_padded
            + self.skipped_multi_segment
            + self.skipped_no_sequence
        )


class ExpandCigar(Protocol):
    def __call__(
        self,
        record: SourceAlignmentRecord,
        reference: ReferenceSequence,
    ) -> AlignedPair: ...


class ScoreAlignedPair(Protocol):
    def __call__(self, aligned_query: str, aligned_target: str) -> AlignmentStats: ...


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# --------------------------- REFERENCE CATALOG ----------------------------- #


class ReferenceNameMap(dict[str, str]):
    """Short (SAM header) reference name -> full (FASTA) title."""

    def bind(self, short_name: str, full_title: str) -> None:
        """Add a binding. A short name can only ever be bound once."""
        if short_name in self:
            msg = (
                f"Found more than one reference '{short_name}' in the SAM header "
                f"(already bound to '{self[short_name]}', now '{full_title}')"
            )
            logger.error(msg)
            raise DuplicateReferenceError(msg)
        self[short_name] = full_title


@dataclass(frozen=True)
class ReferenceCatalog:
    """
    Reference sequences in FASTA order plus the name lookups over them.

    `name_map` is None when short names are used verbatim; resolution is then
    the identity.
    """

    references: tuple[ReferenceSequence, ...]
    index_by_name: dict[str, int]
    name_map: ReferenceNameMap | None = None

    def can_resolve(self, short_name: str) -> bool:
        return self.name_map is None or short_name in self.name_map

    def resolve(self, short_name: str) -> str:
        """Map a short reference name to the name printed in tName."""
        if self.name_map is None:
            return short_name
        try:
            return self.name_map[short_name]
        except KeyError:
            msg = f"Could not find '{short_name}' in the reference repository"
            logger.error(msg)
            raise UnresolvedReferenceError(msg) from None

    def lookup(self, name: str) -> ReferenceSequence:
        """Return the reference for an already-resolved name."""
        index = self.index_by_name.get(name)
        if index is None:
            msg = f"Reference '{name}' has no sequence in the reference repository"
            logger.error(msg)
            raise UnresolvedReferenceError(msg)
        return self.references[index]


def _rearrange_references(
    fasta_references: Sequence[ReferenceSequence],
    header_references: Sequence[HeaderReference],
) -> list[HeaderReference]:
    """
    Reorder the SAM header references so position i describes FASTA entry i.
    Each FASTA entry takes the first unused header entry carrying its short name.
    """
    unused = list(header_references)
    ordered: list[HeaderReference] = []
    for reference in fasta_references:
        found = next(
            (h for h in unused if h.name in (reference.short_name, reference.title)),
            None,
        )
        if found is None:
            msg = f"Reference '{reference.title}' from the FASTA is not declared in the SAM header"
            logger.error(msg)
            raise MissingReferenceError(msg)
        unused.remove(found)
        ordered.append(found)
    return ordered


def build_catalog(
    fasta_references: Sequence[ReferenceSequence],
    header_references: Sequence[HeaderReference],
    use_short_ref_names: bool = False,  # noqa: FBT001, FBT002
) -> ReferenceCatalog:
    """
    Reconcile the FASTA and SAM header views of the reference set.

    Raises ReferenceCountError when the two lists differ in size,
    ConversionError when a FASTA entry's index is not its position,
    MissingReferenceError when a FASTA entry is absent from the header, and
    DuplicateReferenceError when a short name is bound twice.
    """
    if len(fasta_references) != len(header_references):
        msg = (
            f"The reference FASTA holds {len(fasta_references)} sequences but the "
            f"SAM header declares {len(header_references)}"
        )
        logger.error(msg)
        raise ReferenceCountError(msg)

    for position, reference in enumerate(fasta_references):
        if reference.index != position:
            msg = (
                f"Reference '{reference.title}' carries index {reference.index} "
                f"but is entry {position} of the FASTA"
            )
            logger.error(msg)
            raise ConversionError(msg)

    ordered_header = _rearrange_references(fasta_references, header_references)

    for header_ref, fasta_ref in zip(ordered_header, fasta_references):
        if header_ref.length and header_ref.length != fasta_ref.length:
            logger.warning(
                f"SAM header gives '{header_ref.name}' length {header_ref.length} "
                f"but the FASTA sequence has {fasta_ref.length} bases; using the FASTA length.",
            )

    name_map: ReferenceNameMap | None = None
    if use_short_ref_names:
        resolved_names = [header_ref.name for header_ref in ordered_header]
    else:
        name_map = ReferenceNameMap()
        for header_ref, fasta_ref in zip(ordered_header, fasta_references):
            name_map.bind(header_ref.name, fasta_ref.title)
        resolved_names = [fasta_ref.title for fasta_ref in fasta_references]

    index_by_name = {
        name: fasta_ref.index for name, fasta_ref in zip(resolved_names, fasta_references)
    }
    logger.debug(
        f"Reference catalog built: {len(index_by_name)} references, "
        f"short names {'kept' if use_short_ref_names else 'resolved to FASTA titles'}",
    )
    return ReferenceCatalog(tuple(fasta_references), index_by_name, name_map)


# ----------------------------- RECORD FILTER ------------------------------- #


class Admission(Enum):
    ACCEPT = auto()
    SKIP = auto()
    FATAL = auto()


class RejectReason(Enum):
    UNMAPPED = "reference name is '*'"
    PADDED = "the padding operator 'P' is not supported"
    MULTI_SEGMENT = "the alignment has multiple segments"
    NO_SEQUENCE = "the record carries no query sequence"
    UNRESOLVED_REFERENCE = "the reference is missing from the reference repository"


class Verdict(NamedTuple):
    admission: Admission
    reason: RejectReason | None = None


def count_segments(cigar: Sequence[CigarOp]) -> int:
    """Count the runs of aligned columns separated by reference skips (N)."""
    segments = 0
    in_segment = False
    for run in cigar:
        if run.op == REF_SKIP:
            in_segment = False
        elif run.op in BOTH_CONSUME or run.op in (INSERTION, DELETION):
            if not in_segment:
                segments += 1
                in_segment = True
    return segments


def admit(record: SourceAlignmentRecord, catalog: ReferenceCatalog) -> Verdict:
    """Decide whether a record can become an M4 row."""
    if record.reference_name == UNMAPPED_REFERENCE:
        return Verdict(Admission.SKIP, RejectReason.UNMAPPED)
    if not catalog.can_resolve(record.reference_name):
        return Verdict(Admission.FATAL, RejectReason.UNRESOLVED_REFERENCE)
    if any(run.op == PADDING for run in record.cigar):
        return Verdict(Admission.SKIP, RejectReason.PADDED)
    if count_segments(record.cigar) > 1:
        return Verdict(Admission.SKIP, RejectReason.MULTI_SEGMENT)
    # SEQ '*', e.g. secondary alignments from aligners that omit it
    if record.query_sequence is None:
        return Verdict(Admission.SKIP, RejectReason.NO_SEQUENCE)
    return Verdict(Admission.ACCEPT)


# --------------------------- CANDIDATE BUILDER ----------------------------- #


def expand_cigar(  # noqa: C901, PLR0912
    record: SourceAlignmentRecord,
    reference: ReferenceSequence,
) -> AlignedPair:
    """
    Lay out the CIGAR of `record` against `reference` from its start position.

    Raises CigarDecodeError when the CIGAR walks past either sequence.
    """
    seq = record.query_sequence
    if seq is None:
        msg = f"Record '{record.query_name}' has no query sequence to align"
        logger.error(msg)
        raise CigarDecodeError(msg)
    ref_seq = reference.sequence

    q_pos = 0  # index into SEQ
    q_coord = 0  # index into the full query, hard clips included
    t_pos = record.reference_start
    query_start = query_end = None
    target_start = target_end = t_pos
    q_cols: list[str] = []
    t_cols: list[str] = []

    for op, ln in record.cigar:
        if op in QRY_CONSUME and q_pos + ln > len(seq):
            msg = (
                f"CIGAR {record.cigarstring} of '{record.query_name}' consumes more "
                f"query bases than its {len(seq)}-base sequence holds"
            )
            logger.error(msg)
            raise CigarDecodeError(msg)
        if op in REF_CONSUME and t_pos + ln > len(ref_seq):
            msg = (
                f"CIGAR {record.cigarstring} of '{record.query_name}' at position "
                f"{record.reference_start} runs past the end of '{reference.title}' "
                f"({len(ref_seq)} bases)"
            )
            logger.error(msg)
            raise CigarDecodeError(msg)

        if op == HARD_CLIP:
            q_coord += ln
            continue
        if op == SOFT_CLIP:
            q_pos += ln
            q_coord += ln
            continue
        if op == REF_SKIP:
            t_pos += ln
            continue

        if query_start is None:
            query_start = q_coord
            target_start = t_pos
        if op in BOTH_CONSUME:
            q_cols.append(seq[q_pos : q_pos + ln])
            t_cols.append(ref_seq[t_pos : t_pos + ln])
            q_pos += ln
            q_coord += ln
            t_pos += ln
        elif op == INSERTION:
            q_cols.append(seq[q_pos : q_pos + ln])
            t_cols.append(GAP * ln)
            q_pos += ln
            q_coord += ln
        elif op == DELETION:
            q_cols.append(GAP * ln)
            t_cols.append(ref_seq[t_pos : t_pos + ln])
            t_pos += ln
        else:
            msg = f"Unsupported CIGAR operation '{CIGAR_CHARS[op]}' in '{record.query_name}'"
            logger.error(msg)
            raise CigarDecodeError(msg)
        query_end = q_coord
        target_end = t_pos

    if query_start is None or query_end is None:
        query_start = query_end = 0

    return AlignedPair(
        query="".join(q_cols),
        target="".join(t_cols),
        query_start=query_start,
        query_end=query_end,
        target_start=target_start,
        target_end=target_end,
        query_length=q_coord,
    )


def build_candidate(
    record: SourceAlignmentRecord,
    catalog: ReferenceCatalog,
    expand: ExpandCigar = expand_cigar,
    keep_reference_forward: bool = True,  # noqa: FBT001, FBT002
) -> AlignmentCandidate:
    """
    Build the alignment candidate for one admitted record.

    SAM stores the SEQ of a reverse record already reverse-complemented, so the
    expanded query runs along the forward reference and its coordinates sit on
    the read's reverse strand. When the reference is not kept forward, both
    aligned strings are reverse-complemented and both spans mirrored instead.
    """
    target_name = catalog.resolve(record.reference_name)
    reference = catalog.lookup(target_name)
    pair = expand(record, reference)

    assert len(pair.query) == len(pair.target), (
        f"Aligned query/target length mismatch for '{record.query_name}': "
        f"query={len(pair.query)}, target={len(pair.target)}"
    )

    query_strand, target_strand = orient(record.is_reverse, keep_reference_forward)
    aligned_query, aligned_target = pair.query, pair.target
    query_start, query_end = pair.query_start, pair.query_end
    target_start, target_end = pair.target_start, pair.target_end
    if target_strand is Strand.REVERSE:
        aligned_query = reverse_complement(aligned_query)
        aligned_target = reverse_complement(aligned_target)
        query_start, query_end = (
            pair.query_length - pair.query_end,
            pair.query_length - pair.query_start,
        )
        target_start, target_end = (
            reference.length - pair.target_end,
            reference.length - pair.target_start,
        )

    logger.trace(
        f"Candidate '{record.query_name}' -> '{target_name}': cigar={record.cigarstring}, "
        f"q=[{query_start},{query_end}) strand={query_strand.name}, "
        f"t=[{target_start},{target_end}) strand={target_strand.name}",
    )
    return AlignmentCandidate(
        query_name=record.query_name,
        target_name=target_name,
        query_strand=query_strand,
        target_strand=target_strand,
        query_start=query_start,
        query_end=query_end,
        query_length=pair.query_length,
        target_start=target_start,
        target_end=target_end,
        target_length=reference.length,
        aligned_query=aligned_query,
        aligned_target=aligned_target,
    )


# --------------------------- STATISTICS ENGINE ----------------------------- #


def score_aligned_pair(aligned_query: str, aligned_target: str) -> AlignmentStats:
    """
    Classify every column of an aligned pair.

    A gap in the target is an insertion, a gap in the query a deletion. Bases
    compare case-insensitively. No score is computed; the caller supplies it.
    """
    assert len(aligned_query) == len(aligned_target), (
        f"Aligned strings differ in length: {len(aligned_query)} != {len(aligned_target)}"
    )
    matches = mismatches = insertions = deletions = 0
    for q, t in zip(aligned_query.upper(), aligned_target.upper()):
        if t == GAP:
            insertions += 1
        elif q == GAP:
            deletions += 1
        elif q == t:
            matches += 1
        else:
            mismatches += 1
    return AlignmentStats(
        matches=matches,
        mismatches=mismatches,
        insertions=insertions,
        deletions=deletions,
    )


# ---------------------------- FIELD RECONCILER ----------------------------- #


def reconcile(candidate: AlignmentCandidate, record: SourceAlignmentRecord) -> AlignmentCandidate:
    """
    Carry the aligner's own values over from the SAM record.

    The score is always the aligner's AS and mapQV is always MAPQ. SAM only holds
    the aligned part of the query, so qLength is replaced by XQ whenever blasr
    stored a non-zero original length there.
    """
    query_length = candidate.query_length
    if record.original_query_length:
        query_length = record.original_query_length
    return replace(
        candidate,
        stats=replace(candidate.stats, score=record.score),
        map_qv=record.mapping_quality,
        query_length=query_length,
    )


# -------------------------------- EMITTER ---------------------------------- #


def _format_similarity(value: float) -> str:
    # Matches the default C++ ostream rendering of a double: six significant digits.
    return f"{value:g}"


def format_m4_record(candidate: AlignmentCandidate) -> str:
    fields = (
        candidate.query_name,
        candidate.target_name,
        candidate.stats.score,
        _format_similarity(candidate.stats.percent_identity),
        int(candidate.query_strand),
        candidate.query_start,
        candidate.query_end,
        candidate.query_length,
        int(candidate.target_strand),
        candidate.target_start,
        candidate.target_end,
        candidate.target_length,
        candidate.map_qv,
    )
    return " ".join(str(value) for value in fields)


def write_header(stream: TextIO) -> None:
    stream.write(" ".join(M4_HEADER_FIELDS) + "\n")


def write_record(stream: TextIO, candidate: AlignmentCandidate) -> None:
    stream.write(format_m4_record(candidate) + "\n")


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str) -> str:
    """Determine pysam read mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "r"
    if lower.endswith(".bam"):
        return "rb"
    if lower.endswith(".cram"):
        return "rc"
    msg = "Input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(path: str, reference: str | None = None) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM for reading with the correct mode. CRAM is decoded
    against `reference`.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )
    mode = _io_mode_from_ext(path)

    kwargs = {}
    if mode == "rc" and reference is not None:
        kwargs["reference_filename"] = reference
    logger.debug(f"Opening for read: {path} (mode={mode})")
    # The @SQ count is checked against the FASTA by build_catalog.
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


def read_reference_fasta(path: str) -> list[ReferenceSequence]:
    """
    Load every FASTA entry. The title is the whole '>' line, separators
    included, since it is printed back out as tName.
    """
    references = [
        ReferenceSequence(title=record.description, sequence=str(record.seq), index=index)
        for index, record in enumerate(SeqIO.parse(path, "fasta"))
    ]
    logger.info(f"Loaded {len(references)} reference sequences from {path}")
    return references


def header_references(alignment_file: pysam.AlignmentFile) -> list[HeaderReference]:
    """The @SQ entries of an open alignment file, in header order."""
    return [HeaderReference.from_sq(sq) for sq in alignment_file.header.to_dict().get("SQ", [])]


def read_records(alignment_file: Iterable[pysam.AlignedSegment]) -> Iterator[SourceAlignmentRecord]:
    for aln in alignment_file:
        yield SourceAlignmentRecord.from_pysam(aln)


@contextmanager
def open_output(path: str | None) -> Iterator[TextIO]:
    """Yield the output text stream; no path or '-' means standard output."""
    if path is None or path == "-":
        yield sys.stdout
        return
    logger.debug(f"Opening for write: {path}")
    with open(path, "w") as handle:
        yield handle


# ------------------------------ CORE LOGIC --------------------------------- #


def convert_stream(
    records: Iterable[SourceAlignmentRecord],
    catalog: ReferenceCatalog,
    stream: TextIO,
    options: ConversionOptions | None = None,
    expand: ExpandCigar = expand_cigar,
    score: ScoreAlignedPair = score_aligned_pair,
) -> ConversionTotals:
    """
    Convert records one at a time: filter, build, score, reconcile, emit.

    Unmapped, padded, multi-segment and sequence-less records are skipped with
    a warning.
    A record naming an unknown reference aborts with UnresolvedReferenceError.

    Returns:
        ConversionTotals with the emitted count and the skip counts per reason.
    """
    if options is None:
        options = ConversionOptions()
    if options.emit_header:
        write_header(stream)

    emitted = 0
    seen = 0
    skipped: Counter[RejectReason] = Counter()

    for record in records:
        seen += 1
        if seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: read={seen}, emitted={emitted}, skipped={sum(skipped.values())}",
            )

        verdict = admit(record, catalog)
        match verdict.admission:
            case Admission.SKIP:
                skipped[verdict.reason] += 1
                logger.warning(
                    f"Skipping '{record.query_name}' (cigar {record.cigarstring}): {verdict.reason.value}",
                )
                continue
            case Admission.FATAL:
                msg = f"Could not find '{record.reference_name}' in the reference repository"
                logger.error(msg)
                raise UnresolvedReferenceError(msg)

        candidate = build_candidate(record, catalog, expand, options.keep_reference_forward)
        candidate = replace(
            candidate,
            stats=score(candidate.aligned_query, candidate.aligned_target),
        )
        candidate = reconcile(candidate, record)
        write_record(stream, candidate)
        emitted += 1

    totals = ConversionTotals(
        emitted=emitted,
        skipped_unmapped=skipped[RejectReason.UNMAPPED],
        skipped_padded=skipped[RejectReason.PADDED],
        skipped_multi_segment=skipped[RejectReason.MULTI_SEGMENT],
        skipped_no_sequence=skipped[RejectReason.NO_SEQUENCE],
    )
    assert seen == totals.emitted + totals.skipped, (
        f"Record count inconsistency: read={seen}, emitted={totals.emitted}, skipped={totals.skipped}"
    )
    logger.info(
        f"Conversion totals: read={seen}, emitted={totals.emitted}, "
        f"skipped_unmapped={totals.skipped_unmapped}, skipped_padded={totals.skipped_padded}, "
        f"skipped_multi_segment={totals.skipped_multi_segment}, "
        f"skipped_no_sequence={totals.skipped_no_sequence}",
    )
    return totals


def run_conversion(
    in_path: str,
    reference_path: str,
    out_path: str | None,
    options: ConversionOptions,
) -> ConversionTotals:
    """
    Load the references, reconcile them with the SAM header, then stream the
    records out as M4. The output is only opened once the catalog is built.
    """
    fasta_references = read_reference_fasta(reference_path)
    with open_alignment(in_path, reference=reference_path) as alignment_file:
        catalog = build_catalog(
            fasta_references,
            header_references(alignment_file),
            options.use_short_ref_names,
        )
        with open_output(out_path) as stream:
            return convert_stream(read_records(alignment_file), catalog, stream, options)


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog="samtom4",
        description="Convert a SAM/BAM/CRAM file produced by blasr to blasr M4 format.",
    )
    p.add_argument("in_sam", help="Input SAM/BAM/CRAM produced by blasr")
    p.add_argument("reference_fasta", help="Reference FASTA used to produce the alignments")
    p.add_argument(
        "out_m4",
        nargs="?",
        default=None,
        help="Output in blasr M4 format (default: standard output)",
    )
    p.add_argument(
        "--header",
        action="store_true",
        help="Print the M4 header line",
    )
    p.add_argument(
        "--use-short-ref-name",
        "--useShortRefName",
        dest="use_short_ref_name",
        action="store_true",
        help=(
            "Use the abbreviated reference names from the SAM header instead of "
            "the full names from the reference FASTA"
        ),
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

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
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting SAM to M4 conversion.")

    options = ConversionOptions(
        emit_header=bool(args.header),
        use_short_ref_names=bool(args.use_short_ref_name),
    )
    logger.debug(f"ConversionOptions: {options}")

    try:
        totals = run_conversion(args.in_sam, args.reference_fasta, args.out_m4, options)
    except (ValueError, OSError) as e:
        logger.error(f"Conversion failed: {e}")
        sys.exit(1)

    logger.success(
        f"Emitted: {totals.emitted} | Skipped (unmapped): {totals.skipped_unmapped} | "
        f"Skipped (padded): {totals.skipped_padded} | "
        f"Skipped (multiple segments): {totals.skipped_multi_segment}",
    )
    logger.info("Conversion complete.")


if __name__ == "__main__":
    main()
