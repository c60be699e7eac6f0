"""
Pileup Sources

A pileup source turns a pool's alignment files into a lazy, position-ordered
stream of PositionRecord for one chromosome. The stream is single-pass; to
read a chromosome again the source is called again.

PysamPileupSource reads BAM/CRAM files directly with pysam. Counts from all
files of a pool are summed per position. A chromosome missing from every
file of a pool yields an empty stream.
"""

import logging
from contextlib import ExitStack
from typing import Dict, Iterable, Iterator, List, Sequence

import numpy as np
import pysam

from .errors import ExternalToolFailure
from .models import BASES, Pool, PositionRecord

logger = logging.getLogger(__name__)


class PileupSource:
    """Interface of a pileup collaborator."""

    def read(self, pool: Pool, chrom: str) -> Iterator[PositionRecord]:
        raise NotImplementedError

    def chromosomes(self, pools: Sequence[Pool]) -> List[str]:
        """Chromosomes available for the given pools."""
        raise NotImplementedError


class InMemoryPileupSource(PileupSource):
    """
    Pileup source backed by prepared records.

    Args:
        records: {pool name: {chrom: [PositionRecord, ...]}}
    """

    def __init__(self, records: Dict[str, Dict[str, List[PositionRecord]]]):
        self.records = records

    def read(self, pool: Pool, chrom: str) -> Iterator[PositionRecord]:
        rows = self.records.get(pool.name, {}).get(chrom, [])
        return iter(sorted(rows, key=lambda r: r.pos))

    def chromosomes(self, pools: Sequence[Pool]) -> List[str]:
        seen: Dict[str, None] = {}
        for pool in pools:
            for chrom in self.records.get(pool.name, {}):
                seen.setdefault(chrom, None)
        return list(seen)


class PysamPileupSource(PileupSource):
    """
    Per-base counts from indexed BAM/CRAM files via pysam.

    Args:
        min_base_quality: Minimum base quality counted
        min_mapping_quality: Minimum mapping quality of counted reads
        chunk_size: Number of reference bases counted per window
        reference: Reference FASTA (required for CRAM input)
    """

    def __init__(self, min_base_quality: int = 13, min_mapping_quality: int = 20,
                 chunk_size: int = 1_000_000, reference: str = None):
        self.min_base_quality = min_base_quality
        self.min_mapping_quality = min_mapping_quality
        self.chunk_size = chunk_size
        self.reference = reference

    def _keep_read(self, read) -> bool:
        if read.is_unmapped or read.is_secondary or read.is_supplementary:
            return False
        if read.is_duplicate or read.is_qcfail:
            return False
        return read.mapping_quality >= self.min_mapping_quality

    def _open(self, path: str) -> pysam.AlignmentFile:
        try:
            return pysam.AlignmentFile(path, "rc" if path.endswith(".cram") else "rb",
                                       reference_filename=self.reference)
        except (OSError, ValueError) as e:
            raise ExternalToolFailure(f"Cannot open alignment file {path}: {e}") from e

    def chromosomes(self, pools: Sequence[Pool]) -> List[str]:
        return list_chromosomes(pools, self.reference)

    def read(self, pool: Pool, chrom: str) -> Iterator[PositionRecord]:
        with ExitStack() as stack:
            handles = []
            length = 0
            for path in pool.files:
                af = stack.enter_context(self._open(path))
                if chrom not in af.references:
                    logger.debug(f"{chrom} not in header of {path}")
                    continue
                handles.append(af)
                length = max(length, af.get_reference_length(chrom))

            for start in range(0, length, self.chunk_size):
                end = min(start + self.chunk_size, length)
                counts = np.zeros((len(BASES), end - start), dtype=np.int64)
                for af in handles:
                    try:
                        coverage = af.count_coverage(
                            chrom, start, end,
                            quality_threshold=self.min_base_quality,
                            read_callback=self._keep_read,
                        )
                    except (OSError, ValueError) as e:
                        raise ExternalToolFailure(
                            f"Pileup failed for {pool.name} {chrom}:{start + 1}-{end}: {e}"
                        ) from e
                    counts += np.asarray(coverage, dtype=np.int64)

                depth = counts.sum(axis=0)
                for offset in np.flatnonzero(depth):
                    yield PositionRecord(
                        chrom=chrom,
                        pos=start + int(offset) + 1,
                        counts={b: int(counts[i, offset]) for i, b in enumerate(BASES)},
                    )


def list_chromosomes(pools: Iterable[Pool], reference: str = None) -> List[str]:
    """
    Chromosomes named in the headers of the pools' alignment files.

    Order follows the first header in which each chromosome appears.
    """
    seen: Dict[str, None] = {}
    for pool in pools:
        for path in pool.files:
            try:
                with pysam.AlignmentFile(path, "rc" if path.endswith(".cram") else "rb",
                                         reference_filename=reference) as af:
                    for name in af.references:
                        seen.setdefault(name, None)
            except (OSError, ValueError) as e:
                raise ExternalToolFailure(f"Cannot read header of {path}: {e}") from e
    return list(seen)


def records_from_counts(chrom: str, positions: Sequence[int],
                        counts: Sequence[Sequence[int]]) -> List[PositionRecord]:
    """
    Build PositionRecords from parallel position / count-vector sequences.

    Examples:
        >>> recs = records_from_counts("chr1", [5], [[3, 0, 0, 1]])
        >>> recs[0].counts["A"], recs[0].depth
        (3, 4)
    """
    return [
        PositionRecord(chrom=chrom, pos=int(pos),
                       counts={b: int(c) for b, c in zip(BASES, vector)})
        for pos, vector in zip(positions, counts)
    ]
