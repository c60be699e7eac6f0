"""
Stage Execution, Resume and Outputs

Stages (in order):
    distance    pileups of both pools -> DistancePoint table per chromosome
    smoothing   distance table -> loess SmoothedTrack
    peaks       smoothed track -> preliminary peaks
    refinement  permutation null + interval bounds -> refined peaks
    candidates  variant calling + annotation inside refined peaks

run_stage(stage, state) computes the stage for every chromosome, merges
the per-chromosome results by key, writes the stage checkpoint and returns
the new state. A chromosome that fails is recorded as an issue and left
out of the stage's results; the run only aborts on configuration errors or
when no chromosome has any data.

Chromosomes are the unit of parallel work (ProcessPoolExecutor when
jobs > 1). Permutation trials of the refinement stage are split into
(chromosome, trial chunk) tasks of the same pool.
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .candidates import generate_candidates
from .config import STAGES, RunConfig
from .distance import distance_frame, pair_pileups
from .errors import (
    ConfigurationError,
    MappingError,
    NoUsableData,
    issue_kind,
)
from .external import (
    Annotator,
    BcftoolsVariantCaller,
    VariantCaller,
    VepAnnotator,
    run_with_retry,
)
from .loess import LoessSmoother
from .models import ChromosomeIssue, PairedCounts
from .peaks import find_peaks
from .pileup import PileupSource, PysamPileupSource
from .refine import permutation_null_maxima, refine_peaks, trial_seeds
from .state import (
    PipelineState,
    config_matches,
    latest_checkpoint,
    load_checkpoint,
    save_checkpoint,
    write_snapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    """External services used by the stages."""
    pileup: PileupSource
    caller: Optional[VariantCaller] = None
    annotator: Optional[Annotator] = None


def default_collaborators(config: RunConfig) -> Collaborators:
    """pysam pileups, bcftools calling and VEP annotation."""
    pileup = PysamPileupSource(
        min_base_quality=config.pileup.min_base_quality,
        min_mapping_quality=config.pileup.min_mapping_quality,
        chunk_size=config.pileup.chunk_size,
        reference=config.reference,
    )
    caller = None
    if config.reference:
        caller = BcftoolsVariantCaller(
            reference=config.reference,
            bcftools=config.tools.bcftools,
            min_base_quality=config.pileup.min_base_quality,
            min_mapping_quality=config.pileup.min_mapping_quality,
        )
    annotator = VepAnnotator(
        vep=config.tools.vep,
        cache_dir=config.tools.vep_cache,
        species=config.tools.species,
        assembly=config.tools.assembly,
        reference=config.reference,
    )
    return Collaborators(pileup=pileup, caller=caller, annotator=annotator)


def require_candidate_tools(collaborators: Collaborators) -> None:
    if collaborators.caller is None or collaborators.annotator is None:
        raise ConfigurationError("Candidate generation needs a variant caller and annotator "
                                 "(set reference.fasta)")


def make_smoother(config: RunConfig) -> LoessSmoother:
    return LoessSmoother(
        span=config.loess.span,
        degree=config.loess.degree,
        max_fit_points=config.loess.max_fit_points,
        span_candidates=config.loess.span_candidates,
    )


# ============================================================================
# Fan-out / fan-in
# ============================================================================

def fan_out(
    worker: Callable[..., Any],
    tasks: Dict[Hashable, Tuple],
    jobs: int = 1,
) -> Tuple[Dict[Hashable, Any], Dict[Hashable, Exception]]:
    """
    Run worker(*args) for every task, serially or in a process pool.

    Returns:
        (results by task key, exceptions by task key)

    Raises:
        ConfigurationError: Raised by any task; configuration problems
            abort the run
    """
    results: Dict[Hashable, Any] = {}
    errors: Dict[Hashable, Exception] = {}

    if jobs <= 1 or len(tasks) <= 1:
        for key, args in tasks.items():
            try:
                results[key] = worker(*args)
            except ConfigurationError:
                raise
            except Exception as e:
                errors[key] = e
    else:
        with ProcessPoolExecutor(max_workers=jobs) as executor:
            future_to_key = {executor.submit(worker, *args): key for key, args in tasks.items()}
            for fut in as_completed(future_to_key):
                key = future_to_key[fut]
                try:
                    results[key] = fut.result()
                except ConfigurationError:
                    raise
                except Exception as e:
                    errors[key] = e

    return results, errors


def _record_errors(stage: str, errors: Dict[str, Exception]) -> List[ChromosomeIssue]:
    issues = []
    for chrom in sorted(errors):
        error = errors[chrom]
        kind = issue_kind(error)
        if kind == "error":
            logger.error(f"[{stage}] {chrom} failed: {error!r}")
        else:
            logger.warning(f"[{stage}] {chrom} skipped ({kind}): {error}")
        issues.append(ChromosomeIssue(chrom=chrom, stage=stage, kind=kind, reason=str(error)))
    return issues


# ============================================================================
# Workers (module level so they can be sent to worker processes)
# ============================================================================

def _pair_from_source(chrom: str, config: RunConfig, pileup: PileupSource) -> PairedCounts:
    return pair_pileups(
        chrom,
        pileup.read(config.wild_type, chrom),
        pileup.read(config.mutant, chrom),
        min_depth=config.distance.min_depth,
        min_allele_frequency=config.distance.min_allele_frequency,
    )


def load_paired_counts(chrom: str, config: RunConfig, pileup: PileupSource) -> PairedCounts:
    """Read and pair both pools' pileups for a chromosome, with retries."""
    return run_with_retry(
        _pair_from_source, chrom, config, pileup,
        retries=config.tools.retries,
        backoff_seconds=config.tools.backoff_seconds,
        description=f"pileup {chrom}",
    )


def _distance_worker(chrom: str, config: RunConfig, pileup: PileupSource) -> pd.DataFrame:
    paired = load_paired_counts(chrom, config, pileup)
    return distance_frame(paired, config.distance.power, config.distance.depth_pseudocount)


def _smoothing_worker(frame: pd.DataFrame, config: RunConfig) -> pd.DataFrame:
    smoother = make_smoother(config)
    return smoother.smooth(frame["position"].to_numpy(), frame["distance"].to_numpy())


def _peaks_worker(chrom: str, track: pd.DataFrame, config: RunConfig) -> List:
    return find_peaks(chrom, track, config.peaks.min_prominence)


def _permutation_worker(paired: PairedCounts, config: RunConfig, span: float, seeds: List) -> np.ndarray:
    return permutation_null_maxima(paired, config.distance, make_smoother(config), span, seeds)


# ============================================================================
# Stages
# ============================================================================

def resolve_chromosomes(config: RunConfig, pileup: PileupSource) -> List[str]:
    if config.chromosomes:
        return list(config.chromosomes)
    chromosomes = run_with_retry(
        pileup.chromosomes, [config.wild_type, config.mutant],
        retries=config.tools.retries,
        backoff_seconds=config.tools.backoff_seconds,
        description="chromosome listing",
    )
    if not chromosomes:
        raise NoUsableData("No chromosomes found in the alignment files")
    return chromosomes


def stage_distance(state: PipelineState, collaborators: Collaborators) -> PipelineState:
    config = state.config
    chromosomes = resolve_chromosomes(config, collaborators.pileup)
    tasks = {chrom: (chrom, config, collaborators.pileup) for chrom in chromosomes}
    results, errors = fan_out(_distance_worker, tasks, config.jobs)

    issues = _record_errors("distance", errors)
    for chrom in sorted(results):
        if results[chrom].empty:
            logger.warning(f"[distance] {chrom}: no positions pass the depth filters in both pools")
            issues.append(ChromosomeIssue(
                chrom=chrom, stage="distance", kind="data_absence",
                reason="no positions pass the depth filters in both pools",
            ))

    if not any(not frame.empty for frame in results.values()):
        raise NoUsableData(f"No chromosome has qualifying positions ({len(chromosomes)} examined)")

    return state.with_stage("distance", results, issues)


def stage_smoothing(state: PipelineState, collaborators: Collaborators) -> PipelineState:
    config = state.config
    tasks = {
        chrom: (frame, config)
        for chrom, frame in state.distances.items()
        if not frame.empty
    }
    results, errors = fan_out(_smoothing_worker, tasks, config.jobs)
    return state.with_stage("smoothing", results, _record_errors("smoothing", errors))


def stage_peaks(state: PipelineState, collaborators: Collaborators) -> PipelineState:
    config = state.config
    tasks = {chrom: (chrom, track, config) for chrom, track in state.smoothed.items()}
    results, errors = fan_out(_peaks_worker, tasks, config.jobs)

    issues = _record_errors("peaks", errors)
    for chrom in sorted(results):
        if not results[chrom]:
            logger.info(f"[peaks] {chrom}: no peak above prominence {config.peaks.min_prominence}")
            issues.append(ChromosomeIssue(
                chrom=chrom, stage="peaks", kind="data_absence", reason="no peaks",
            ))
        else:
            logger.info(f"[peaks] {chrom}: {len(results[chrom])} preliminary peak(s)")

    return state.with_stage("peaks", results, issues)


def stage_refinement(state: PipelineState, collaborators: Collaborators) -> PipelineState:
    config = state.config
    settings = config.refinement
    smoother = make_smoother(config)

    results: Dict[str, List] = {chrom: [] for chrom, peaks in state.peaks.items() if not peaks}
    with_peaks = [chrom for chrom, peaks in state.peaks.items() if peaks]

    # Underlying read data of each chromosome
    paired_tasks = {chrom: (chrom, config, collaborators.pileup) for chrom in with_peaks}
    paired, errors = fan_out(load_paired_counts, paired_tasks, config.jobs)

    for chrom in sorted(paired):
        expected = state.distances[chrom]["position"].to_numpy()
        if not np.array_equal(paired[chrom].positions, expected):
            errors[chrom] = MappingError(
                f"pileup positions changed since the distance stage "
                f"({len(paired[chrom])} vs {len(expected)})"
            )
    paired = {chrom: counts for chrom, counts in paired.items() if chrom not in errors}

    # Permutation trials, chunked across chromosomes
    spans: Dict[str, float] = {}
    trial_tasks = {}
    for chrom in sorted(paired):
        if config.loess.span == "auto":
            frame = state.distances[chrom]
            spans[chrom] = smoother.select_span(frame["position"].to_numpy(), frame["distance"].to_numpy())
        else:
            spans[chrom] = float(config.loess.span)

        seeds = trial_seeds(config.seed, chrom, settings.permutations)
        for start in range(0, len(seeds), settings.permutation_chunk):
            chunk = seeds[start:start + settings.permutation_chunk]
            trial_tasks[(chrom, start)] = (paired[chrom], config, spans[chrom], chunk)

    logger.info(f"[refinement] {len(trial_tasks)} permutation task(s) over {len(paired)} chromosome(s)")
    trial_results, trial_errors = fan_out(_permutation_worker, trial_tasks, config.jobs)

    for (chrom, start), error in sorted(trial_errors.items()):
        errors.setdefault(chrom, error)

    for chrom in sorted(paired):
        if chrom in errors:
            continue
        chunks = sorted(key for key in trial_results if key[0] == chrom)
        null_maxima = np.concatenate([trial_results[key] for key in chunks])
        logger.info(f"[refinement] {chrom}: {np.isfinite(null_maxima).sum()} usable null maxima")
        try:
            results[chrom] = refine_peaks(chrom, state.peaks[chrom], state.smoothed[chrom], null_maxima, settings)
        except (MappingError, ValueError) as e:
            errors[chrom] = e

    issues = _record_errors("refinement", errors)
    for chrom in sorted(results):
        for peak in results[chrom]:
            if peak.indeterminate:
                issues.append(ChromosomeIssue(
                    chrom=chrom, stage="refinement", kind="insufficient_sample",
                    reason=f"{peak.null_samples} usable null samples; significance indeterminate",
                    region=peak.region,
                ))

    return state.with_stage("refinement", results, issues)


def stage_candidates(state: PipelineState, collaborators: Collaborators) -> PipelineState:
    config = state.config
    require_candidate_tools(collaborators)

    pools = [config.wild_type, config.mutant]
    results: Dict[str, List] = {chrom: [] for chrom, peaks in state.refined.items() if not peaks}
    tasks = {
        chrom: (chrom, peaks, pools, collaborators.caller, collaborators.annotator, config.tools)
        for chrom, peaks in state.refined.items()
        if peaks
    }
    outcomes, errors = fan_out(generate_candidates, tasks, config.jobs)

    issues = _record_errors("candidates", errors)
    for chrom in sorted(outcomes):
        candidates, interval_issues = outcomes[chrom]
        results[chrom] = candidates
        issues.extend(interval_issues)
        logger.info(f"[candidates] {chrom}: {len(candidates)} candidate variant(s)")

    return state.with_stage("candidates", results, issues)


STAGE_RUNNERS: Dict[str, Callable[[PipelineState, Collaborators], PipelineState]] = {
    "distance": stage_distance,
    "smoothing": stage_smoothing,
    "peaks": stage_peaks,
    "refinement": stage_refinement,
    "candidates": stage_candidates,
}


def run_stage(
    stage: str,
    state: PipelineState,
    collaborators: Optional[Collaborators] = None,
    checkpoint: bool = True,
) -> PipelineState:
    """
    Run one stage on a state and checkpoint the result.

    The stage's earlier stages must have completed. Re-running a completed
    stage on the same input state reproduces the same result.

    Args:
        stage: Stage name
        state: Current state
        collaborators: External services (default: from the configuration)
        checkpoint: Write the stage checkpoint

    Returns:
        New state including the stage's results
    """
    if stage not in STAGE_RUNNERS:
        raise ConfigurationError(f"Unknown stage '{stage}' (expected one of {', '.join(STAGES)})")

    missing = [s for s in STAGES[:STAGES.index(stage)] if not state.has_completed(s)]
    if missing:
        raise MappingError(f"Stage '{stage}' needs completed stage(s): {', '.join(missing)}")

    if collaborators is None:
        collaborators = default_collaborators(state.config)

    logger.info(f"=== Stage: {stage} ===")
    new_state = STAGE_RUNNERS[stage](state, collaborators)

    if checkpoint:
        save_checkpoint(new_state, stage)
    return new_state


def run_pipeline(
    config: RunConfig,
    collaborators: Optional[Collaborators] = None,
    resume: bool = True,
    until: Optional[str] = None,
) -> PipelineState:
    """
    Run all stages, resuming after the latest checkpoint when allowed.

    Args:
        config: Run configuration
        collaborators: External services (default: from the configuration)
        resume: Continue from the latest checkpoint in the checkpoint dir
        until: Last stage to run (default: all)

    Raises:
        ConfigurationError: If the checkpoint belongs to a different configuration
            or the candidates stage would run without a caller and annotator
    """
    if until is not None and until not in STAGES:
        raise ConfigurationError(f"Unknown stage '{until}' (expected one of {', '.join(STAGES)})")

    if collaborators is None:
        collaborators = default_collaborators(config)

    state = PipelineState(config=config)
    latest = latest_checkpoint(config.checkpoint_dir) if resume else None
    if latest is not None:
        stage, path = latest
        state = load_checkpoint(path)
        if not config_matches(state.config, config):
            raise ConfigurationError(
                f"Checkpoint {path} was written with a different configuration; "
                f"rerun without resume to start over"
            )
        state = replace(state, config=config)
        logger.info(f"Resuming after stage '{stage}'")

    last = STAGES.index(until) if until else len(STAGES) - 1
    pending = [s for s in STAGES[:last + 1] if not state.has_completed(s)]
    if "candidates" in pending:
        require_candidate_tools(collaborators)

    for stage in STAGES[:last + 1]:
        if state.has_completed(stage):
            logger.info(f"Stage '{stage}' already completed, skipping")
            continue
        state = run_stage(stage, state, collaborators)

    write_outputs(state, Path(config.output_dir))
    return state


# ============================================================================
# Outputs
# ============================================================================

CANDIDATE_COLUMNS = [
    "chrom", "rank", "pos", "ref", "alt", "var_type", "quality", "consequence",
    "impact", "gene", "severity", "peak_start", "peak_end", "peak_apex",
    "significance", "apex_distance",
]


def candidate_table(state: PipelineState) -> pd.DataFrame:
    """Ranked candidates of every chromosome, one row per variant."""
    rows = []
    for chrom in sorted(state.candidates):
        for rank, candidate in enumerate(state.candidates[chrom], 1):
            row = candidate.to_row()
            row["rank"] = rank
            rows.append(row)
    return pd.DataFrame(rows, columns=CANDIDATE_COLUMNS)


def peak_table(state: PipelineState) -> pd.DataFrame:
    rows = [
        {
            "chrom": peak.chrom,
            "start": peak.start,
            "end": peak.end,
            "apex": peak.apex,
            "value": peak.value,
            "significance": peak.significance,
            "null_samples": peak.null_samples,
        }
        for chrom in sorted(state.refined)
        for peak in state.refined[chrom]
    ]
    return pd.DataFrame(rows, columns=["chrom", "start", "end", "apex", "value", "significance", "null_samples"])


def run_summary(state: PipelineState) -> pd.DataFrame:
    """Skipped and failed chromosomes / intervals with their reasons."""
    rows = [
        {
            "chrom": issue.chrom,
            "stage": issue.stage,
            "kind": issue.kind,
            "region": issue.region or "",
            "reason": issue.reason,
        }
        for issue in state.issues
    ]
    return pd.DataFrame(rows, columns=["chrom", "stage", "kind", "region", "reason"])


def write_outputs(state: PipelineState, output_dir: Path) -> Dict[str, Path]:
    """Write candidate, peak and summary tables plus the final state snapshot."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    paths = {
        "candidates": output_dir / "candidates.tsv",
        "peaks": output_dir / "peaks.tsv",
        "summary": output_dir / "run_summary.tsv",
        "state": output_dir / "final_state.pkl",
    }
    candidate_table(state).to_csv(paths["candidates"], sep="\t", index=False, na_rep="NA")
    peak_table(state).to_csv(paths["peaks"], sep="\t", index=False, na_rep="NA")
    summary = run_summary(state)
    summary.to_csv(paths["summary"], sep="\t", index=False)
    write_snapshot(state, paths["state"])

    n_candidates = sum(len(c) for c in state.candidates.values())
    logger.info(f"{n_candidates} candidate(s) over {len(state.candidates)} chromosome(s)")
    for row in summary.itertuples(index=False):
        where = f" {row.region}" if row.region else ""
        logger.info(f"  {row.chrom}{where} [{row.stage}] {row.kind}: {row.reason}")
    logger.info(f"Results saved to: {output_dir}")

    return paths
