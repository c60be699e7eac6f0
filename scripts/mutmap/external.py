"""
External Tool Collaborators

Variant calling:
    bcftools mpileup | bcftools call, restricted to one peak interval and
    run on the alignment files of both pools.

Variant annotation:
    Ensembl VEP in tab output mode. Each variant keeps its most severe
    consequence. Variants VEP does not report pass through unannotated.

Both collaborators are stateless per call. Failures surface as
ExternalToolFailure; run_with_retry retries them with exponential backoff.

Required Environment:
    - bcftools
    - vep (with an offline cache for the species/assembly)
"""

import logging
import os
import subprocess
import tempfile
import time
from typing import Callable, Dict, List, Sequence, TypeVar

import pysam

from .errors import ExternalToolFailure
from .models import Annotation, Pool, RefinedPeak, VariantCall

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sequence Ontology consequence terms, most severe first (Ensembl ordering)
CONSEQUENCE_ORDER = [
    "transcript_ablation",
    "splice_acceptor_variant",
    "splice_donor_variant",
    "stop_gained",
    "frameshift_variant",
    "stop_lost",
    "start_lost",
    "transcript_amplification",
    "feature_elongation",
    "feature_truncation",
    "inframe_insertion",
    "inframe_deletion",
    "missense_variant",
    "protein_altering_variant",
    "splice_donor_5th_base_variant",
    "splice_region_variant",
    "splice_donor_region_variant",
    "splice_polypyrimidine_tract_variant",
    "incomplete_terminal_codon_variant",
    "start_retained_variant",
    "stop_retained_variant",
    "synonymous_variant",
    "coding_sequence_variant",
    "mature_miRNA_variant",
    "5_prime_UTR_variant",
    "3_prime_UTR_variant",
    "non_coding_transcript_exon_variant",
    "intron_variant",
    "NMD_transcript_variant",
    "non_coding_transcript_variant",
    "coding_transcript_variant",
    "upstream_gene_variant",
    "downstream_gene_variant",
    "TFBS_ablation",
    "TFBS_amplification",
    "TF_binding_site_variant",
    "regulatory_region_ablation",
    "regulatory_region_amplification",
    "regulatory_region_variant",
    "intergenic_variant",
    "sequence_variant",
]
_SEVERITY = {term: len(CONSEQUENCE_ORDER) - i for i, term in enumerate(CONSEQUENCE_ORDER)}

VEP_FIELDS = ["Uploaded_variation", "Consequence", "IMPACT", "SYMBOL", "Gene"]


def severity_rank(consequence: str) -> int:
    """
    Severity of a consequence (larger = more damaging, 0 if unknown).

    Comma- or ampersand-separated lists score as their most severe term.

    Examples:
        >>> severity_rank("stop_gained") > severity_rank("missense_variant")
        True
        >>> severity_rank("intron_variant&splice_region_variant") == severity_rank("splice_region_variant")
        True
        >>> severity_rank("not_a_term")
        0
    """
    terms = consequence.replace("&", ",").split(",")
    return max((_SEVERITY.get(t.strip(), 0) for t in terms), default=0)


def run_with_retry(
    func: Callable[..., T],
    *args,
    retries: int = 3,
    backoff_seconds: float = 2.0,
    description: str = "external tool",
    **kwargs,
) -> T:
    """
    Call func, retrying ExternalToolFailure with exponential backoff.

    Args:
        func: Callable to run
        retries: Total number of attempts
        backoff_seconds: Wait before the second attempt; doubles each retry
        description: Label used in log messages

    Raises:
        ExternalToolFailure: If every attempt fails
    """
    last_error = None
    for attempt in range(retries):
        try:
            return func(*args, **kwargs)
        except ExternalToolFailure as e:
            last_error = e
            if attempt + 1 < retries:
                wait_time = backoff_seconds * 2 ** attempt
                logger.warning(f"{description} failed (attempt {attempt + 1}/{retries}): {e}; "
                               f"retrying in {wait_time:.1f}s")
                time.sleep(wait_time)

    raise ExternalToolFailure(f"{description} failed after {retries} attempts: {last_error}")


class VariantCaller:
    """Interface of a variant-calling collaborator."""

    def call(self, peak: RefinedPeak, pools: Sequence[Pool]) -> List[VariantCall]:
        raise NotImplementedError


class Annotator:
    """Interface of a variant-annotation collaborator."""

    def annotate(self, peak: RefinedPeak, variants: Sequence[VariantCall]) -> Dict[str, Annotation]:
        """Annotations keyed by VariantCall.key; missing keys are unannotated."""
        raise NotImplementedError


def parse_vcf(vcf_path: str, peak: RefinedPeak) -> List[VariantCall]:
    """Variant records of a VCF that fall inside the peak interval, by position."""
    calls = []
    try:
        with pysam.VariantFile(vcf_path) as vf:
            for rec in vf:
                if rec.chrom != peak.chrom or not peak.contains(rec.pos):
                    continue
                for alt in rec.alts or []:
                    if alt.startswith("<"):
                        continue  # symbolic allele
                    calls.append(VariantCall(
                        chrom=str(rec.chrom),
                        pos=int(rec.pos),
                        ref=rec.ref.upper(),
                        alt=alt.upper(),
                        quality=float(rec.qual) if rec.qual is not None else 0.0,
                    ))
    except (OSError, ValueError) as e:
        raise ExternalToolFailure(f"Malformed VCF from variant caller: {e}") from e

    return sorted(calls, key=lambda c: (c.pos, c.ref, c.alt))


class BcftoolsVariantCaller(VariantCaller):
    """
    bcftools mpileup + call over one interval of both pools.

    Args:
        reference: Reference FASTA (indexed)
        bcftools: bcftools executable
        min_base_quality: mpileup -Q
        min_mapping_quality: mpileup -q
    """

    def __init__(self, reference: str, bcftools: str = "bcftools",
                 min_base_quality: int = 13, min_mapping_quality: int = 20):
        self.reference = reference
        self.bcftools = bcftools
        self.min_base_quality = min_base_quality
        self.min_mapping_quality = min_mapping_quality

    def commands(self, peak: RefinedPeak, pools: Sequence[Pool]) -> List[List[str]]:
        alignments = [path for pool in pools for path in pool.files]
        cmd_mpileup = [
            self.bcftools, "mpileup",
            "-f", self.reference,
            "-r", peak.region,
            "-a", "AD,DP",
            "-Q", str(int(self.min_base_quality)),
            "-q", str(int(self.min_mapping_quality)),
            "-Ou",
        ] + alignments
        cmd_call = [self.bcftools, "call", "-mv", "-Ov"]
        return [cmd_mpileup, cmd_call]

    def call(self, peak: RefinedPeak, pools: Sequence[Pool]) -> List[VariantCall]:
        cmd_mpileup, cmd_call = self.commands(peak, pools)
        logger.debug(f"[{peak.region}] mpileup command: {' '.join(cmd_mpileup)}")

        with tempfile.TemporaryDirectory() as tmpdir:
            vcf_path = os.path.join(tmpdir, "calls.vcf")
            try:
                with open(vcf_path, "wb") as out:
                    # mpileup stderr is not captured; a full pipe would block the pipeline
                    p1 = subprocess.Popen(cmd_mpileup, stdout=subprocess.PIPE)
                    p2 = subprocess.Popen(cmd_call, stdin=p1.stdout, stdout=out, stderr=subprocess.PIPE)
                    p1.stdout.close()
                    _, call_err = p2.communicate()
                    p1.wait()
            except OSError as e:
                raise ExternalToolFailure(f"Cannot run {self.bcftools}: {e}") from e

            if p1.returncode != 0:
                raise ExternalToolFailure(
                    f"bcftools mpileup failed for {peak.region} (exit {p1.returncode})"
                )
            if p2.returncode != 0:
                raise ExternalToolFailure(
                    f"bcftools call failed for {peak.region}: {call_err.decode('utf-8', errors='ignore')}"
                )

            return parse_vcf(vcf_path, peak)


def _vep_value(value) -> str:
    """VEP writes "-" for empty fields."""
    if value is None or value == "-":
        return ""
    return value


def parse_vep_tab(text: str) -> Dict[str, Annotation]:
    """
    Parse VEP --tab output, keeping the most severe consequence per variant.

    Raises:
        ExternalToolFailure: If the column header is missing or incomplete
    """
    header = None
    annotations: Dict[str, Annotation] = {}

    for line in text.splitlines():
        if not line.strip() or line.startswith("##"):
            continue
        if line.startswith("#"):
            header = line.lstrip("#").rstrip("\n").split("\t")
            missing = [f for f in ("Uploaded_variation", "Consequence") if f not in header]
            if missing:
                raise ExternalToolFailure(f"VEP output lacks columns {missing}")
            continue
        if header is None:
            raise ExternalToolFailure("VEP output has data before its column header")

        row = dict(zip(header, line.rstrip("\n").split("\t")))
        key = row.get("Uploaded_variation", "")
        consequence = row.get("Consequence", "")
        if not key or not consequence or consequence == "-":
            continue

        annotation = Annotation(
            consequence=consequence,
            impact=_vep_value(row.get("IMPACT")),
            gene=_vep_value(row.get("SYMBOL")) or _vep_value(row.get("Gene")),
            severity=severity_rank(consequence),
        )
        current = annotations.get(key)
        if current is None or annotation.severity > current.severity:
            annotations[key] = annotation

    return annotations


class VepAnnotator(Annotator):
    """
    Ensembl VEP over a list of variant calls.

    Args:
        vep: vep executable
        cache_dir: VEP cache directory (offline mode)
        species: VEP species name
        assembly: Genome assembly name
        reference: Reference FASTA passed to VEP for HGVS/sequence checks
    """

    def __init__(self, vep: str = "vep", cache_dir: str = None, species: str = None,
                 assembly: str = None, reference: str = None):
        self.vep = vep
        self.cache_dir = cache_dir
        self.species = species
        self.assembly = assembly
        self.reference = reference

    def command(self, input_path: str) -> List[str]:
        cmd = [
            self.vep,
            "--input_file", input_path,
            "--format", "vcf",
            "--output_file", "STDOUT",
            "--tab",
            "--fields", ",".join(VEP_FIELDS),
            "--no_stats",
            "--force_overwrite",
        ]
        if self.cache_dir:
            cmd.extend(["--offline", "--cache", "--dir_cache", self.cache_dir])
        if self.species:
            cmd.extend(["--species", self.species])
        if self.assembly:
            cmd.extend(["--assembly", self.assembly])
        if self.reference:
            cmd.extend(["--fasta", self.reference])
        return cmd

    def annotate(self, peak: RefinedPeak, variants: Sequence[VariantCall]) -> Dict[str, Annotation]:
        if not variants:
            return {}

        with tempfile.TemporaryDirectory() as tmpdir:
            input_path = os.path.join(tmpdir, "variants.vcf")
            with open(input_path, "w") as f:
                f.write("##fileformat=VCFv4.2\n")
                f.write("#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\n")
                for v in variants:
                    f.write(f"{v.chrom}\t{v.pos}\t{v.key}\t{v.ref}\t{v.alt}\t.\t.\t.\n")

            cmd = self.command(input_path)
            logger.debug(f"[{peak.region}] vep command: {' '.join(cmd)}")
            try:
                result = subprocess.run(cmd, capture_output=True, text=True)
            except OSError as e:
                raise ExternalToolFailure(f"Cannot run {self.vep}: {e}") from e

        if result.returncode != 0:
            raise ExternalToolFailure(f"vep failed for {peak.region}: {result.stderr.strip()}")

        annotations = parse_vep_tab(result.stdout)
        unresolved = [v.key for v in variants if v.key not in annotations]
        if unresolved:
            logger.info(f"[{peak.region}] {len(unresolved)} variant(s) left unannotated by VEP")
        return annotations
