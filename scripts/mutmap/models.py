"""
Data Records for the Mutation Mapping Pipeline

Per-position pileups, peaks, variant calls and ranked candidates.
Per-chromosome distance and smoothing results are pandas DataFrames
and are described in the modules that build them.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

# Base alphabet of the per-position count vectors, in column order
BASES: Tuple[str, ...] = ("A", "C", "G", "T")


@dataclass(frozen=True)
class Pool:
    """A phenotype group: one or more alignment files."""
    name: str  # 'wild_type' or 'mutant'
    files: Tuple[str, ...]


@dataclass
class PositionRecord:
    """Base counts observed for one pool at one 1-based position."""
    chrom: str
    pos: int
    counts: Dict[str, int]

    @property
    def depth(self) -> int:
        """Total depth over the base alphabet."""
        return sum(self.counts.get(b, 0) for b in BASES)

    def count_vector(self) -> np.ndarray:
        """Counts ordered by BASES."""
        return np.array([self.counts.get(b, 0) for b in BASES], dtype=np.int64)


@dataclass
class PairedCounts:
    """
    Position-aligned count matrices of both pools for one chromosome.

    Only positions passing the depth / allele-frequency filters are kept.
    Rows are ordered by ascending position; columns follow BASES.
    """
    chrom: str
    positions: np.ndarray  # int64, shape (n,)
    wild_type: np.ndarray  # int64, shape (n, 4)
    mutant: np.ndarray  # int64, shape (n, 4)

    def __len__(self) -> int:
        return int(self.positions.shape[0])

    @property
    def is_empty(self) -> bool:
        return len(self) == 0


@dataclass(frozen=True)
class Peak:
    """Preliminary local maximum of a smoothed track."""
    chrom: str
    apex: int
    value: float
    prominence: float


@dataclass(frozen=True)
class RefinedPeak:
    """Peak with interval bounds and permutation significance."""
    chrom: str
    start: int
    end: int
    apex: int
    value: float
    significance: Optional[float]  # None when indeterminate
    null_samples: int = 0

    @property
    def indeterminate(self) -> bool:
        return self.significance is None

    def contains(self, pos: int) -> bool:
        return self.start <= pos <= self.end

    @property
    def region(self) -> str:
        """samtools-style region string."""
        return f"{self.chrom}:{self.start}-{self.end}"


@dataclass(frozen=True)
class VariantCall:
    """A variant reported by the external caller."""
    chrom: str
    pos: int
    ref: str
    alt: str
    quality: float = 0.0

    @property
    def key(self) -> str:
        """Identifier used to match annotator output back to the call."""
        return f"{self.chrom}_{self.pos}_{self.ref}/{self.alt}"

    @property
    def var_type(self) -> str:
        if len(self.ref) == 1 and len(self.alt) == 1:
            return "SNP"
        elif len(self.ref) > len(self.alt):
            return "DEL"
        else:
            return "INS"


@dataclass(frozen=True)
class Annotation:
    """Predicted consequence of a variant."""
    consequence: str
    impact: str = ""
    gene: str = ""
    severity: int = 0  # larger = more damaging


@dataclass(frozen=True)
class Candidate:
    """An annotated variant inside a refined peak interval."""
    variant: VariantCall
    peak: RefinedPeak
    annotation: Optional[Annotation] = None

    @property
    def apex_distance(self) -> int:
        return abs(self.variant.pos - self.peak.apex)

    @property
    def severity(self) -> int:
        if self.annotation is None:
            return -1
        return self.annotation.severity

    def to_row(self) -> Dict[str, object]:
        """Flat row for the candidate table."""
        ann = self.annotation
        return {
            "chrom": self.variant.chrom,
            "pos": self.variant.pos,
            "ref": self.variant.ref,
            "alt": self.variant.alt,
            "var_type": self.variant.var_type,
            "quality": self.variant.quality,
            "consequence": ann.consequence if ann else "",
            "impact": ann.impact if ann else "",
            "gene": ann.gene if ann else "",
            "severity": self.severity,
            "peak_start": self.peak.start,
            "peak_end": self.peak.end,
            "peak_apex": self.peak.apex,
            "significance": self.peak.significance,
            "apex_distance": self.apex_distance,
        }


@dataclass(frozen=True)
class ChromosomeIssue:
    """A skipped or failed unit of work, reported in the run summary."""
    chrom: str
    stage: str
    kind: str  # data_absence / insufficient_sample / external_tool_failure / error
    reason: str
    region: Optional[str] = None
