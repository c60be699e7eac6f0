"""
Tests for external tool wrappers (command lines, output parsing, retries).
"""

import sys
from pathlib import Path

import pytest

# Add scripts directory to path for imports
scripts_dir = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(scripts_dir))

from mutmap.errors import ConfigurationError, ExternalToolFailure
from mutmap.external import (
    BcftoolsVariantCaller,
    VepAnnotator,
    parse_vcf,
    parse_vep_tab,
    run_with_retry,
    severity_rank,
)
from mutmap.models import Pool, RefinedPeak

PEAK = RefinedPeak(chrom="chr5", start=1000, end=2000, apex=1500, value=0.8, significance=0.01)


# ============================================================================
# Tests: Severity
# ============================================================================


class TestSeverityRank:
    """Tests for severity_rank function."""

    def test_ordering(self):
        assert severity_rank("stop_gained") > severity_rank("missense_variant")
        assert severity_rank("missense_variant") > severity_rank("synonymous_variant")
        assert severity_rank("synonymous_variant") > severity_rank("intergenic_variant")

    def test_combined_terms(self):
        assert severity_rank("missense_variant,splice_region_variant") == severity_rank("missense_variant")

    def test_unknown(self):
        assert severity_rank("") == 0


# ============================================================================
# Tests: Retry
# ============================================================================


class TestRunWithRetry:
    """Tests for run_with_retry function."""

    def test_returns_first_success(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise ExternalToolFailure("temporary")
            return "ok"

        assert run_with_retry(flaky, retries=3, backoff_seconds=0) == "ok"
        assert len(attempts) == 2

    def test_raises_after_last_attempt(self):
        attempts = []

        def broken():
            attempts.append(1)
            raise ExternalToolFailure("down")

        with pytest.raises(ExternalToolFailure, match="after 3 attempts"):
            run_with_retry(broken, retries=3, backoff_seconds=0, description="vep")
        assert len(attempts) == 3

    def test_other_errors_not_retried(self):
        attempts = []

        def misconfigured():
            attempts.append(1)
            raise ConfigurationError("no reference")

        with pytest.raises(ConfigurationError):
            run_with_retry(misconfigured, retries=3, backoff_seconds=0)
        assert len(attempts) == 1

    def test_arguments_passed_through(self):
        assert run_with_retry(lambda a, b=0: a + b, 2, b=3, retries=1, backoff_seconds=0) == 5


# ============================================================================
# Tests: bcftools
# ============================================================================


class TestBcftoolsVariantCaller:
    """Tests for BcftoolsVariantCaller."""

    def test_commands(self):
        caller = BcftoolsVariantCaller("ref.fa", min_base_quality=20, min_mapping_quality=30)
        pools = [Pool("wild_type", ("wt1.bam", "wt2.bam")), Pool("mutant", ("mut.bam",))]
        mpileup, call = caller.commands(PEAK, pools)

        assert mpileup[:2] == ["bcftools", "mpileup"]
        assert mpileup[mpileup.index("-r") + 1] == "chr5:1000-2000"
        assert mpileup[mpileup.index("-Q") + 1] == "20"
        assert mpileup[mpileup.index("-q") + 1] == "30"
        assert mpileup[-3:] == ["wt1.bam", "wt2.bam", "mut.bam"]
        assert call == ["bcftools", "call", "-mv", "-Ov"]

    def test_missing_executable(self):
        caller = BcftoolsVariantCaller("ref.fa", bcftools="/nonexistent/bcftools")
        with pytest.raises(ExternalToolFailure):
            caller.call(PEAK, [Pool("wild_type", ("wt.bam",))])


class TestParseVcf:
    """Tests for parse_vcf function."""

    def test_interval_filter_and_symbolic_alleles(self, temp_dir):
        vcf = temp_dir / "calls.vcf"
        vcf.write_text(
            "##fileformat=VCFv4.2\n"
            "##contig=<ID=chr5,length=5000>\n"
            "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\n"
            "chr5\t900\t.\tA\tG\t50\t.\t.\n"
            "chr5\t1600\t.\tc\tt,<*>\t80\t.\t.\n"
            "chr5\t1200\t.\tAT\tA\t.\t.\t.\n"
        )
        calls = parse_vcf(str(vcf), PEAK)
        assert [(c.pos, c.ref, c.alt) for c in calls] == [(1200, "AT", "A"), (1600, "C", "T")]
        assert calls[0].quality == 0.0
        assert calls[1].quality == pytest.approx(80.0)

    def test_unreadable_vcf(self, temp_dir):
        bad = temp_dir / "bad.vcf"
        bad.write_text("not a vcf\n")
        with pytest.raises(ExternalToolFailure):
            parse_vcf(str(bad), PEAK)


# ============================================================================
# Tests: VEP
# ============================================================================


VEP_OUTPUT = """\
## ENSEMBL VARIANT EFFECT PREDICTOR v110.1
## Output produced at 2024-05-01
#Uploaded_variation\tConsequence\tIMPACT\tSYMBOL\tGene
chr5_1500_C/T\tintron_variant\tMODIFIER\ttnnt2a\tENSDARG00000020610
chr5_1500_C/T\tstop_gained\tHIGH\ttnnt2a\tENSDARG00000020610
chr5_1700_G/A\tupstream_gene_variant\tMODIFIER\t-\tENSDARG00000099999
chr5_1800_T/C\t-\t-\t-\t-
"""


class TestParseVepTab:
    """Tests for parse_vep_tab function."""

    def test_most_severe_consequence_kept(self):
        annotations = parse_vep_tab(VEP_OUTPUT)
        assert annotations["chr5_1500_C/T"].consequence == "stop_gained"
        assert annotations["chr5_1500_C/T"].impact == "HIGH"
        assert annotations["chr5_1500_C/T"].gene == "tnnt2a"

    def test_gene_id_when_no_symbol(self):
        annotations = parse_vep_tab(VEP_OUTPUT)
        assert annotations["chr5_1700_G/A"].gene == "ENSDARG00000099999"

    def test_empty_consequence_unannotated(self):
        assert "chr5_1800_T/C" not in parse_vep_tab(VEP_OUTPUT)

    def test_missing_header(self):
        with pytest.raises(ExternalToolFailure):
            parse_vep_tab("chr5_1500_C/T\tstop_gained\n")

    def test_incomplete_header(self):
        with pytest.raises(ExternalToolFailure):
            parse_vep_tab("#Uploaded_variation\tIMPACT\n")


class TestVepAnnotator:
    """Tests for VepAnnotator."""

    def test_offline_command(self):
        annotator = VepAnnotator(cache_dir="/data/vep", species="danio_rerio",
                                 assembly="GRCz11", reference="ref.fa")
        cmd = annotator.command("in.vcf")
        assert cmd[0] == "vep"
        assert "--tab" in cmd
        assert cmd[cmd.index("--dir_cache") + 1] == "/data/vep"
        assert cmd[cmd.index("--species") + 1] == "danio_rerio"
        assert cmd[cmd.index("--fasta") + 1] == "ref.fa"

    def test_no_variants_skips_tool(self):
        annotator = VepAnnotator(vep="/nonexistent/vep")
        assert annotator.annotate(PEAK, []) == {}
