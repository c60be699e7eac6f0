"""
Mutation Mapping - Core Library

Bulk-segregant mapping of a causal mutation from pooled sequencing:
- Allele-frequency distance between wild-type and mutant pools
- Loess smoothing and peak detection along each chromosome
- Permutation-based peak significance and interval bounds
- Variant calling and annotation of candidates inside peak intervals
- Checkpointed, resumable stage execution
"""

from .config import (
    STAGES,
    RunConfig,
    load_config,
    validate_config,
)

from .distance import (
    allele_distance,
    calculate_distance,
    pair_pileups,
)

from .errors import (
    ConfigurationError,
    DataAbsence,
    ExternalToolFailure,
    InsufficientSample,
    MappingError,
    NoUsableData,
)

from .loess import LoessSmoother
from .peaks import find_peaks
from .refine import refine_peaks

from .pipeline import (
    Collaborators,
    run_pipeline,
    run_stage,
    run_summary,
)

from .state import (
    PipelineState,
    load_checkpoint,
    save_checkpoint,
)

__version__ = "1.0.0"
__author__ = "Chenkai Jiang"

__all__ = [
    # Config
    "STAGES",
    "RunConfig",
    "load_config",
    "validate_config",
    # Distance
    "allele_distance",
    "calculate_distance",
    "pair_pileups",
    # Errors
    "ConfigurationError",
    "DataAbsence",
    "ExternalToolFailure",
    "InsufficientSample",
    "MappingError",
    "NoUsableData",
    # Smoothing, peaks, refinement
    "LoessSmoother",
    "find_peaks",
    "refine_peaks",
    # Pipeline
    "Collaborators",
    "run_pipeline",
    "run_stage",
    "run_summary",
    "PipelineState",
    "load_checkpoint",
    "save_checkpoint",
]
