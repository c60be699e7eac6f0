"""
Pytest configuration and fixtures for Mutation Mapping tests.
"""

import sys
import tempfile
from pathlib import Path

import pytest

scripts_dir = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(scripts_dir))

from mutmap.config import RefinementSettings, RunConfig, ToolSettings
from mutmap.errors import ExternalToolFailure
from mutmap.external import Annotator, VariantCaller
from mutmap.models import Annotation, Pool, VariantCall
from mutmap.pileup import InMemoryPileupSource, records_from_counts
from mutmap.pipeline import Collaborators


# ============================================================================
# Path Fixtures
# ============================================================================

@pytest.fixture
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def create_test_bam(temp_dir):
    """Factory fixture to create placeholder BAM files."""
    def _create_bam(name="test.bam"):
        bam_path = temp_dir / name
        bam_path.touch()
        return bam_path
    return _create_bam


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(temp_dir, create_test_bam):
    """Provide a sample configuration dictionary with existing input files."""
    reference = temp_dir / "ref.fa"
    reference.write_text(">chr1\nACGT\n")
    return {
        "run": {
            "output_dir": str(temp_dir / "results"),
            "jobs": 2,
            "seed": 7,
        },
        "pools": {
            "wild_type": [str(create_test_bam("wt1.bam")), str(create_test_bam("wt2.bam"))],
            "mutant": [str(create_test_bam("mut1.bam"))],
        },
        "reference": {
            "fasta": str(reference),
            "species": "danio_rerio",
            "assembly": "GRCz11",
        },
        "distance": {
            "min_depth": 15,
            "power": 2,
        },
        "loess": {
            "span": "auto",
        },
        "refinement": {
            "permutations": 100,
        },
        "tools": {
            "retries": 2,
            "backoff_seconds": 0,
        },
    }


@pytest.fixture
def make_config(temp_dir):
    """Factory for RunConfig objects backed by in-memory pools."""
    def _make_config(**overrides):
        settings = dict(
            wild_type=Pool("wild_type", ("wt.bam",)),
            mutant=Pool("mutant", ("mut.bam",)),
            output_dir=str(temp_dir / "out"),
            refinement=RefinementSettings(permutations=200, min_null_samples=50),
            tools=ToolSettings(retries=2, backoff_seconds=0.0),
        )
        settings.update(overrides)
        return RunConfig(**settings)
    return _make_config


# ============================================================================
# Pileup Fixtures
# ============================================================================

def uniform_counts(n, depth=30, base=0):
    """n count vectors with all reads on one base."""
    row = [0, 0, 0, 0]
    row[base] = depth
    return [list(row) for _ in range(n)]


@pytest.fixture
def make_pileup():
    """
    Factory for in-memory pileup sources.

    Takes {chrom: (positions, wild-type counts, mutant counts)}; a None
    count list leaves the chromosome out of that pool.
    """
    def _make_pileup(chromosomes):
        records = {"wild_type": {}, "mutant": {}}
        for chrom, (positions, wt_counts, mut_counts) in chromosomes.items():
            if wt_counts is not None:
                records["wild_type"][chrom] = records_from_counts(chrom, positions, wt_counts)
            if mut_counts is not None:
                records["mutant"][chrom] = records_from_counts(chrom, positions, mut_counts)
        return InMemoryPileupSource(records)
    return _make_pileup


@pytest.fixture
def peak_chromosome():
    """
    Ten positions at depth 30; only position 140 differs between pools.

    Wild-type is all A; at 140 the mutant pool is 10% A / 90% T.
    """
    positions = list(range(100, 200, 10))
    wt = uniform_counts(10)
    mut = uniform_counts(10)
    mut[4] = [3, 0, 0, 27]
    return positions, wt, mut


@pytest.fixture
def flat_chromosome():
    """Ten positions with identical allele frequencies in both pools."""
    positions = list(range(1000, 1100, 10))
    counts = [[15, 0, 15, 0] for _ in range(10)]
    return positions, counts, [list(c) for c in counts]


# ============================================================================
# Collaborator Fixtures
# ============================================================================

class FakeCaller(VariantCaller):
    """Returns prepared calls for the peak's chromosome."""

    def __init__(self, calls):
        self.calls = calls
        self.requests = []

    def call(self, peak, pools):
        self.requests.append(peak.region)
        return [c for c in self.calls.get(peak.chrom, []) if peak.contains(c.pos)]


class FailingCaller(VariantCaller):
    """Fails a fixed number of times before answering."""

    def __init__(self, failures, calls=None):
        self.failures = failures
        self.calls = calls or []
        self.attempts = 0

    def call(self, peak, pools):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ExternalToolFailure("bcftools exited with status 1")
        return list(self.calls)


class FakeAnnotator(Annotator):
    """Returns prepared annotations by variant key."""

    def __init__(self, annotations=None):
        self.annotations = annotations or {}

    def annotate(self, peak, variants):
        return {v.key: self.annotations[v.key] for v in variants if v.key in self.annotations}


@pytest.fixture
def apex_variants():
    """Calls near the chr1 peak at 140."""
    return {
        "chr1": [
            VariantCall("chr1", 140, "A", "T", quality=220.0),
            VariantCall("chr1", 130, "C", "G", quality=40.0),
        ]
    }


@pytest.fixture
def apex_annotations():
    return {
        "chr1_140_A/T": Annotation("stop_gained", impact="HIGH", gene="tnnt2a", severity=38),
        "chr1_130_C/G": Annotation("intron_variant", impact="MODIFIER", gene="tnnt2a", severity=15),
    }


@pytest.fixture
def make_collaborators(apex_variants, apex_annotations):
    """Factory for collaborators with fake calling and annotation."""
    def _make_collaborators(pileup, caller=None, annotator=None):
        return Collaborators(
            pileup=pileup,
            caller=caller if caller is not None else FakeCaller(apex_variants),
            annotator=annotator if annotator is not None else FakeAnnotator(apex_annotations),
        )
    return _make_collaborators


@pytest.fixture
def failing_caller():
    """Factory for a caller that fails before it succeeds."""
    def _failing_caller(failures, calls=None):
        return FailingCaller(failures, calls)
    return _failing_caller


@pytest.fixture
def fake_caller():
    """Factory for a caller answering with prepared calls."""
    return FakeCaller


@pytest.fixture
def fake_annotator():
    """Factory for an annotator answering with prepared annotations."""
    return FakeAnnotator
