"""
Candidate Variant Generation and Ranking

For every refined peak of a chromosome the variant caller is asked for
calls inside the peak interval, the calls are sent to the annotator, and
each call becomes a Candidate carrying its annotation (if any) and its
peak.

Ranking within a chromosome:
    1. determinate significance before indeterminate
    2. ascending significance
    3. descending consequence severity (unannotated last)
    4. ascending distance from the peak apex
    5. ascending position

An interval whose calling or annotation fails after retries contributes no
candidates and is recorded as an issue; the other intervals proceed.
"""

import logging
from typing import Dict, List, Sequence, Tuple

from .config import ToolSettings
from .errors import ExternalToolFailure
from .external import Annotator, VariantCaller, run_with_retry
from .models import Candidate, ChromosomeIssue, Pool, RefinedPeak

logger = logging.getLogger(__name__)


def candidate_sort_key(candidate: Candidate) -> Tuple:
    peak = candidate.peak
    return (
        peak.indeterminate,
        peak.significance if peak.significance is not None else 1.0,
        -candidate.severity,
        candidate.apex_distance,
        candidate.variant.pos,
        candidate.variant.alt,
    )


def rank_candidates(candidates: Sequence[Candidate]) -> List[Candidate]:
    """
    Order candidates and drop duplicates called from overlapping peaks.

    A variant found in several peak intervals keeps its best-ranked entry.
    """
    ranked = sorted(candidates, key=candidate_sort_key)
    seen = set()
    unique = []
    for candidate in ranked:
        if candidate.variant.key in seen:
            continue
        seen.add(candidate.variant.key)
        unique.append(candidate)
    return unique


def generate_candidates(
    chrom: str,
    peaks: Sequence[RefinedPeak],
    pools: Sequence[Pool],
    caller: VariantCaller,
    annotator: Annotator,
    tools: ToolSettings = ToolSettings(),
) -> Tuple[List[Candidate], List[ChromosomeIssue]]:
    """
    Call, annotate and rank the variants inside a chromosome's peaks.

    Args:
        chrom: Chromosome name
        peaks: Refined peaks of the chromosome
        pools: Wild-type and mutant pools
        caller: Variant-calling collaborator
        annotator: Variant-annotation collaborator
        tools: Retry settings

    Returns:
        (ranked candidates, issues for failed intervals)
    """
    candidates: List[Candidate] = []
    issues: List[ChromosomeIssue] = []

    for peak in peaks:
        try:
            calls = run_with_retry(
                caller.call, peak, pools,
                retries=tools.retries, backoff_seconds=tools.backoff_seconds,
                description=f"variant calling {peak.region}",
            )
            annotations: Dict = run_with_retry(
                annotator.annotate, peak, calls,
                retries=tools.retries, backoff_seconds=tools.backoff_seconds,
                description=f"annotation {peak.region}",
            ) if calls else {}
        except ExternalToolFailure as e:
            logger.error(f"{peak.region}: {e}")
            issues.append(ChromosomeIssue(
                chrom=chrom, stage="candidates", kind="external_tool_failure",
                reason=str(e), region=peak.region,
            ))
            continue

        for call in calls:
            if call.chrom != chrom or not peak.contains(call.pos):
                continue
            candidates.append(Candidate(variant=call, peak=peak, annotation=annotations.get(call.key)))

        logger.info(f"{peak.region}: {len(calls)} variant(s), {len(annotations)} annotated")

    return rank_candidates(candidates), issues
