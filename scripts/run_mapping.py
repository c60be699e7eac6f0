#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Mutation Mapping Pipeline Driver
================================

Purpose:
    Map the causal mutation of a forward-genetics screen from two pools of
    sequencing reads (wild-type and mutant siblings). Computes the allele
    frequency distance along every chromosome, smooths it, finds and
    refines peaks, then calls and annotates candidate variants inside the
    peak intervals.

Required Environment:
    - numpy, pandas, scipy, pysam, PyYAML
    - bcftools (candidate variant calling)
    - vep with an offline cache (candidate annotation)

Input:
    - YAML configuration (see config.example.yaml)
    - Indexed BAM/CRAM files of both pools
    - Reference FASTA (indexed)

Output:
    - {output_dir}/checkpoints/state.{stage}.pkl - state after each stage
    - {output_dir}/candidates.tsv - ranked candidate variants
    - {output_dir}/peaks.tsv - refined peaks with significance
    - {output_dir}/run_summary.tsv - skipped/failed chromosomes and intervals
    - {output_dir}/final_state.pkl - final pipeline state
    - {output_dir}/mutmap.log - run log

Stages:
    distance -> smoothing -> peaks -> refinement -> candidates

Usage:
    # Check the configuration only
    python run_mapping.py config.yaml --validate

    # Full run, resuming after the last checkpoint
    python run_mapping.py config.yaml --jobs 8

    # Start over, stop after peak refinement
    python run_mapping.py config.yaml --restart --until refinement

    # Re-run a single stage from the previous stage's checkpoint
    python run_mapping.py config.yaml --stage peaks

Exit codes:
    0 success, 1 configuration error, 2 no usable data, 3 other pipeline error
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from mutmap.config import STAGES, RunConfig, load_config, print_config_summary
from mutmap.errors import ConfigurationError, MappingError, NoUsableData
from mutmap.pipeline import (
    default_collaborators,
    require_candidate_tools,
    run_pipeline,
    run_stage,
    write_outputs,
)
from mutmap.state import PipelineState, checkpoint_path, config_matches, load_checkpoint

logger = logging.getLogger("mutmap")


def setup_logging(output_dir: Path, verbose: bool = False) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(output_dir / "mutmap.log"),
        ],
    )


def run_single_stage(config: RunConfig, stage: str) -> PipelineState:
    """Run one stage on top of the checkpoint of the stage before it."""
    collaborators = default_collaborators(config)
    if stage == "candidates":
        require_candidate_tools(collaborators)

    index = STAGES.index(stage)
    if index == 0:
        state = PipelineState(config=config)
    else:
        previous = checkpoint_path(config.checkpoint_dir, STAGES[index - 1])
        state = load_checkpoint(previous)
        if not config_matches(state.config, config):
            raise ConfigurationError(f"Checkpoint {previous} was written with a different configuration")
        state = replace(state, config=config)
    state = run_stage(stage, state, collaborators)
    write_outputs(state, Path(config.output_dir))
    return state


def main():
    parser = argparse.ArgumentParser(
        description="Map a causal mutation from wild-type and mutant sequencing pools"
    )
    parser.add_argument("config", type=str, help="YAML configuration file")
    parser.add_argument("--validate", action="store_true", help="Validate the configuration and exit")
    parser.add_argument("--summary", action="store_true", help="Print the configuration summary")
    parser.add_argument("--restart", action="store_true", help="Ignore existing checkpoints")
    parser.add_argument("--jobs", type=int, default=None, help="Worker processes (overrides run.jobs)")
    parser.add_argument("--until", type=str, choices=STAGES, help="Last stage to run")
    parser.add_argument("--stage", type=str, choices=STAGES,
                        help="Run only this stage from the previous stage's checkpoint")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    try:
        last_stage = args.stage or args.until or STAGES[-1]
        config = RunConfig.from_dict(load_config(args.config),
                                     needs_reference=last_stage == "candidates")
        if args.jobs is not None:
            if args.jobs < 1:
                raise ConfigurationError(f"--jobs must be >= 1, got {args.jobs}")
            config = replace(config, jobs=args.jobs)
    except ConfigurationError as e:
        print(f"[ERROR] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.summary or args.validate:
        print_config_summary(config)
    if args.validate:
        print("[OK] Configuration is valid")
        return

    setup_logging(Path(config.output_dir), args.verbose)

    try:
        if args.stage:
            run_single_stage(config, args.stage)
        else:
            run_pipeline(config, resume=not args.restart, until=args.until)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except NoUsableData as e:
        logger.error(f"No usable data: {e}")
        sys.exit(2)
    except MappingError as e:
        logger.error(f"Pipeline failed: {e}")
        sys.exit(3)

    logger.info("Done")


if __name__ == "__main__":
    main()
