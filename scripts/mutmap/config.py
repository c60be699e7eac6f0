"""
Run Configuration for the Mutation Mapping Pipeline

Parses a YAML configuration file into an immutable RunConfig.

Example configuration (see config.example.yaml for every setting):

    run:
      output_dir: results/run1
      jobs: 4
    pools:
      wild_type: [wt_rep1.bam, wt_rep2.bam]
      mutant: [mut_rep1.bam]
    reference:
      fasta: GRCz11.fa

Usage:
    from mutmap.config import load_config, RunConfig
    config = RunConfig.from_dict(load_config("config.yaml"))
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .errors import ConfigurationError
from .models import Pool

STAGES: Tuple[str, ...] = ("distance", "smoothing", "peaks", "refinement", "candidates")


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary containing configuration values

    Raises:
        ConfigurationError: If config file doesn't exist or can't be parsed
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing YAML {config_path}: {e}") from e

    if config is None:
        return {}

    return config


def get_nested(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a nested value from config using dot notation.

    Args:
        config: Configuration dictionary
        key_path: Dot-separated path (e.g., "distance.min_depth")
        default: Default value if key not found

    Returns:
        Value at the specified path, or default if not found

    Examples:
        >>> config = {"distance": {"min_depth": 15}}
        >>> get_nested(config, "distance.min_depth")
        15
        >>> get_nested(config, "distance.power", 4)
        4
    """
    keys = key_path.split('.')
    value = config

    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default

    return value


@dataclass(frozen=True)
class PileupSettings:
    min_base_quality: int = 13
    min_mapping_quality: int = 20
    chunk_size: int = 1_000_000


@dataclass(frozen=True)
class DistanceSettings:
    min_depth: int = 10
    min_allele_frequency: float = 0.0
    power: float = 4.0
    depth_pseudocount: float = 10.0


@dataclass(frozen=True)
class LoessSettings:
    span: Union[float, str] = 0.3  # fraction of the position range, or "auto"
    span_candidates: Tuple[float, ...] = (0.05, 0.1, 0.2, 0.3, 0.5)
    degree: int = 1
    max_fit_points: int = 500


@dataclass(frozen=True)
class PeakSettings:
    min_prominence: float = 0.05


@dataclass(frozen=True)
class RefinementSettings:
    permutations: int = 200
    min_null_samples: int = 50
    confidence_z: float = 1.96
    interval_floor_fraction: float = 0.5
    permutation_chunk: int = 25


@dataclass(frozen=True)
class ToolSettings:
    bcftools: str = "bcftools"
    vep: str = "vep"
    vep_cache: Optional[str] = None
    species: Optional[str] = None
    assembly: Optional[str] = None
    retries: int = 3
    backoff_seconds: float = 2.0


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration of one mapping run."""
    wild_type: Pool
    mutant: Pool
    output_dir: str
    reference: Optional[str] = None
    chromosomes: Optional[Tuple[str, ...]] = None
    jobs: int = 1
    seed: int = 20240601
    pileup: PileupSettings = field(default_factory=PileupSettings)
    distance: DistanceSettings = field(default_factory=DistanceSettings)
    loess: LoessSettings = field(default_factory=LoessSettings)
    peaks: PeakSettings = field(default_factory=PeakSettings)
    refinement: RefinementSettings = field(default_factory=RefinementSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.output_dir) / "checkpoints"

    @classmethod
    def from_dict(cls, config: Dict[str, Any], check_files: bool = True,
                  needs_reference: bool = True) -> "RunConfig":
        """
        Build a RunConfig from a parsed configuration dictionary.

        Args:
            config: Configuration dictionary (e.g. from load_config)
            check_files: Require alignment and reference files to exist
            needs_reference: Require reference.fasta (the candidates stage will run)

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        is_valid, errors = validate_config(config, check_files=check_files,
                                           needs_reference=needs_reference)
        if not is_valid:
            raise ConfigurationError("; ".join(errors))

        chromosomes = get_nested(config, "run.chromosomes")
        span = get_nested(config, "loess.span", LoessSettings.span)

        return cls(
            wild_type=Pool("wild_type", tuple(str(p) for p in get_nested(config, "pools.wild_type"))),
            mutant=Pool("mutant", tuple(str(p) for p in get_nested(config, "pools.mutant"))),
            output_dir=str(get_nested(config, "run.output_dir")),
            reference=get_nested(config, "reference.fasta"),
            chromosomes=tuple(str(c) for c in chromosomes) if chromosomes else None,
            jobs=int(get_nested(config, "run.jobs", 1)),
            seed=int(get_nested(config, "run.seed", cls.seed)),
            pileup=PileupSettings(
                min_base_quality=int(get_nested(config, "pileup.min_base_quality", PileupSettings.min_base_quality)),
                min_mapping_quality=int(get_nested(config, "pileup.min_mapping_quality", PileupSettings.min_mapping_quality)),
                chunk_size=int(get_nested(config, "pileup.chunk_size", PileupSettings.chunk_size)),
            ),
            distance=DistanceSettings(
                min_depth=int(get_nested(config, "distance.min_depth", DistanceSettings.min_depth)),
                min_allele_frequency=float(get_nested(config, "distance.min_allele_frequency", DistanceSettings.min_allele_frequency)),
                power=float(get_nested(config, "distance.power", DistanceSettings.power)),
                depth_pseudocount=float(get_nested(config, "distance.depth_pseudocount", DistanceSettings.depth_pseudocount)),
            ),
            loess=LoessSettings(
                span=span if span == "auto" else float(span),
                span_candidates=tuple(float(s) for s in get_nested(config, "loess.span_candidates", LoessSettings.span_candidates)),
                degree=int(get_nested(config, "loess.degree", LoessSettings.degree)),
                max_fit_points=int(get_nested(config, "loess.max_fit_points", LoessSettings.max_fit_points)),
            ),
            peaks=PeakSettings(
                min_prominence=float(get_nested(config, "peaks.min_prominence", PeakSettings.min_prominence)),
            ),
            refinement=RefinementSettings(
                permutations=int(get_nested(config, "refinement.permutations", RefinementSettings.permutations)),
                min_null_samples=int(get_nested(config, "refinement.min_null_samples", RefinementSettings.min_null_samples)),
                confidence_z=float(get_nested(config, "refinement.confidence_z", RefinementSettings.confidence_z)),
                interval_floor_fraction=float(get_nested(config, "refinement.interval_floor_fraction", RefinementSettings.interval_floor_fraction)),
                permutation_chunk=int(get_nested(config, "refinement.permutation_chunk", RefinementSettings.permutation_chunk)),
            ),
            tools=ToolSettings(
                bcftools=str(get_nested(config, "tools.bcftools", ToolSettings.bcftools)),
                vep=str(get_nested(config, "tools.vep", ToolSettings.vep)),
                vep_cache=get_nested(config, "reference.vep_cache"),
                species=get_nested(config, "reference.species"),
                assembly=get_nested(config, "reference.assembly"),
                retries=int(get_nested(config, "tools.retries", ToolSettings.retries)),
                backoff_seconds=float(get_nested(config, "tools.backoff_seconds", ToolSettings.backoff_seconds)),
            ),
        )


def _check_number(config: Dict[str, Any], key_path: str, minimum: float,
                  maximum: Optional[float], errors: List[str]) -> None:
    value = get_nested(config, key_path)
    if value is None:
        return
    try:
        number = float(value)
    except (ValueError, TypeError):
        errors.append(f"{key_path} must be a number, got {value!r}")
        return
    if number < minimum or (maximum is not None and number > maximum):
        upper = maximum if maximum is not None else "inf"
        errors.append(f"{key_path} must be in [{minimum}, {upper}], got {value}")


def validate_config(config: Dict[str, Any], check_files: bool = True,
                    needs_reference: bool = True) -> Tuple[bool, List[str]]:
    """
    Validate configuration for required fields.

    Args:
        config: Configuration dictionary
        check_files: Also check that alignment / reference files exist
        needs_reference: Require reference.fasta; candidate calling needs it

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    errors = []

    if not get_nested(config, "run.output_dir"):
        errors.append("Missing output directory (run.output_dir)")

    # Pools
    for pool_name in ("wild_type", "mutant"):
        files = get_nested(config, f"pools.{pool_name}")
        if isinstance(files, str):
            errors.append(f"pools.{pool_name} must be a list of alignment files")
            continue
        if not files:
            errors.append(f"Missing or empty pool: pools.{pool_name}")
            continue
        if check_files:
            for path in files:
                if not Path(str(path)).exists():
                    errors.append(f"Alignment file not found: {path} (pools.{pool_name})")

    wild_type = get_nested(config, "pools.wild_type") or []
    mutant = get_nested(config, "pools.mutant") or []
    if not isinstance(wild_type, str) and not isinstance(mutant, str):
        shared = set(map(str, wild_type)) & set(map(str, mutant))
        if shared:
            errors.append(f"Alignment files assigned to both pools: {sorted(shared)}")

    reference = get_nested(config, "reference.fasta")
    if needs_reference and not reference:
        errors.append("Missing reference genome (reference.fasta), needed for candidate calling")
    if check_files and reference and not Path(reference).exists():
        errors.append(f"Reference file not found: {reference} (reference.fasta)")

    chromosomes = get_nested(config, "run.chromosomes")
    if chromosomes is not None and (isinstance(chromosomes, str) or not chromosomes):
        errors.append("run.chromosomes must be a non-empty list when given")

    # Numeric ranges
    _check_number(config, "run.jobs", 1, None, errors)
    _check_number(config, "pileup.chunk_size", 1, None, errors)
    _check_number(config, "distance.min_depth", 1, None, errors)
    _check_number(config, "distance.min_allele_frequency", 0.0, 0.5, errors)
    _check_number(config, "distance.power", 0.0, None, errors)
    _check_number(config, "distance.depth_pseudocount", 0.0, None, errors)
    _check_number(config, "loess.degree", 1, 2, errors)
    _check_number(config, "loess.max_fit_points", 3, None, errors)
    _check_number(config, "peaks.min_prominence", 0.0, None, errors)
    _check_number(config, "refinement.permutations", 1, None, errors)
    _check_number(config, "refinement.min_null_samples", 1, None, errors)
    _check_number(config, "refinement.confidence_z", 0.0, None, errors)
    _check_number(config, "refinement.interval_floor_fraction", 0.0, 1.0, errors)
    _check_number(config, "refinement.permutation_chunk", 1, None, errors)
    _check_number(config, "tools.retries", 1, None, errors)
    _check_number(config, "tools.backoff_seconds", 0.0, None, errors)

    span = get_nested(config, "loess.span")
    if span is not None and span != "auto":
        _check_number(config, "loess.span", 0.0, 1.0, errors)
        try:
            if float(span) <= 0:
                errors.append(f"loess.span must be > 0, got {span}")
        except (ValueError, TypeError):
            pass

    return len(errors) == 0, errors


def print_config_summary(config: RunConfig) -> None:
    """Print a human-readable config summary."""
    print("=" * 60)
    print("Mutation Mapping Configuration Summary")
    print("=" * 60)
    print(f"Output directory: {config.output_dir}")
    print(f"Wild-type pool: {', '.join(config.wild_type.files)}")
    print(f"Mutant pool: {', '.join(config.mutant.files)}")
    print(f"Reference: {config.reference or 'not set'}")
    print(f"Chromosomes: {', '.join(config.chromosomes) if config.chromosomes else 'all in alignment headers'}")
    print(f"Jobs: {config.jobs}")
    print(f"Min depth: {config.distance.min_depth}, distance power: {config.distance.power}")
    print(f"Loess span: {config.loess.span}, degree: {config.loess.degree}")
    print(f"Min prominence: {config.peaks.min_prominence}")
    print(f"Permutations: {config.refinement.permutations}")
    print("=" * 60)
