"""
Pipeline State and Checkpoints

PipelineState accumulates the per-chromosome results of the five stages.
Each stage returns a new state in which only its own field (and its own
issues) changed. After every stage the state is pickled to
<checkpoint_dir>/state.<stage>.pkl; the write goes to a temporary file in
the same directory which is then renamed over the target, so a reader
never sees a partial checkpoint.
"""

import logging
import os
import pickle
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .config import STAGES, RunConfig
from .errors import MappingError
from .models import Candidate, ChromosomeIssue, Peak, RefinedPeak

logger = logging.getLogger(__name__)

# Field of PipelineState owned by each stage
STAGE_FIELDS: Dict[str, str] = {
    "distance": "distances",
    "smoothing": "smoothed",
    "peaks": "peaks",
    "refinement": "refined",
    "candidates": "candidates",
}


@dataclass(frozen=True)
class PipelineState:
    """Accumulated results of a mapping run, keyed by chromosome."""
    config: RunConfig
    distances: Dict[str, pd.DataFrame] = field(default_factory=dict)
    smoothed: Dict[str, pd.DataFrame] = field(default_factory=dict)
    peaks: Dict[str, List[Peak]] = field(default_factory=dict)
    refined: Dict[str, List[RefinedPeak]] = field(default_factory=dict)
    candidates: Dict[str, List[Candidate]] = field(default_factory=dict)
    issues: Tuple[ChromosomeIssue, ...] = ()
    completed_stages: Tuple[str, ...] = ()

    @property
    def last_stage(self) -> Optional[str]:
        return self.completed_stages[-1] if self.completed_stages else None

    def has_completed(self, stage: str) -> bool:
        return stage in self.completed_stages

    def issues_for(self, chrom: str) -> List[ChromosomeIssue]:
        return [issue for issue in self.issues if issue.chrom == chrom]

    def with_stage(self, stage: str, results: Dict, issues: List[ChromosomeIssue]) -> "PipelineState":
        """
        New state with one stage's results merged in.

        Results are stored in sorted chromosome order. Issues previously
        recorded by the same stage are replaced, so re-running a stage
        yields the same state.
        """
        if stage not in STAGE_FIELDS:
            raise MappingError(f"Unknown stage: {stage}")

        kept_issues = tuple(i for i in self.issues if i.stage != stage)
        completed = tuple(s for s in STAGES if s in self.completed_stages or s == stage)

        return replace(
            self,
            **{STAGE_FIELDS[stage]: {chrom: results[chrom] for chrom in sorted(results)}},
            issues=kept_issues + tuple(sorted(issues, key=lambda i: (i.chrom, i.region or ""))),
            completed_stages=completed,
        )


def config_matches(saved: RunConfig, current: RunConfig) -> bool:
    """Whether a checkpoint written under saved can be resumed under current.

    Only the worker count may differ; it does not change any result.
    """
    return replace(saved, jobs=1) == replace(current, jobs=1)


def checkpoint_path(directory: Path, stage: str) -> Path:
    return Path(directory) / f"state.{stage}.pkl"


def write_snapshot(state: PipelineState, target: Path) -> Path:
    """Pickle a state to target via a temporary file and an atomic rename."""
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            pickle.dump(state, f, protocol=pickle.HIGHEST_PROTOCOL)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    return target


def save_checkpoint(state: PipelineState, stage: str, directory: Optional[Path] = None) -> Path:
    """
    Atomically write the state snapshot taken after a stage.

    Args:
        state: State to persist
        stage: Stage that just completed
        directory: Checkpoint directory (default: the run's checkpoint_dir)

    Returns:
        Path of the written checkpoint
    """
    directory = Path(directory) if directory is not None else state.config.checkpoint_dir
    target = write_snapshot(state, checkpoint_path(directory, stage))
    logger.info(f"Checkpoint written: {target}")
    return target


def load_checkpoint(path: Path) -> PipelineState:
    """Load a state snapshot written by save_checkpoint."""
    path = Path(path)
    if not path.exists():
        raise MappingError(f"Checkpoint not found: {path}")

    with open(path, "rb") as f:
        state = pickle.load(f)

    if not isinstance(state, PipelineState):
        raise MappingError(f"{path} does not contain a pipeline state")

    logger.info(f"Loaded checkpoint {path} (completed: {', '.join(state.completed_stages) or 'none'})")
    return state


def latest_checkpoint(directory: Path) -> Optional[Tuple[str, Path]]:
    """Most advanced (stage, path) checkpoint in a directory, if any."""
    for stage in reversed(STAGES):
        path = checkpoint_path(directory, stage)
        if path.exists():
            return stage, path
    return None
