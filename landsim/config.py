"""Configuration system for landsim.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Every top-level YAML key maps onto one dataclass section; keys a section
does not know are ignored so that older configs keep loading.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from landsim.types import ConfigurationError


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Run length, randomness and engine mode."""
    seed: int = 42
    times: Optional[List[int]] = None  # explicit snapshot times; overrides n_generations
    n_generations: int = 10
    record_every: int = 1              # snapshot spacing when times is None
    expected: bool = False             # deterministic expected-value generations
    retain_history: bool = False       # keep breakdowns for lineage tracing
    strict: bool = False               # raise on negative counts instead of clamping

    def resolved_times(self) -> List[int]:
        """Snapshot times: ``times`` if given, else 0..n_generations every record_every."""
        if self.times is not None:
            return [int(t) for t in self.times]
        times = list(range(0, self.n_generations + 1, self.record_every))
        if times[-1] != self.n_generations:
            times.append(self.n_generations)
        return times


@dataclass
class HabitatSection:
    """Regular landscape grid."""
    nrow: int = 10
    ncol: int = 10
    resolution: float = 1.0
    xmin: float = 0.0
    ymin: float = 0.0
    missing_cells: List[int] = field(default_factory=list)        # NaN cells
    uninhabitable_cells: List[int] = field(default_factory=list)  # accessible sinks


@dataclass
class DispersalSection:
    """Kernel parameters for one dispersal process (pollen or seed)."""
    kernel: str = 'gaussian'   # 'gaussian', 'exponential' or 'cauchy'
    sigma: float = 1.0         # kernel scale (map units)
    radius: float = 3.0        # truncation radius (map units, inclusive)
    normalize: Optional[float] = 1.0  # row total; None keeps raw kernel weights
    min_prob: float = 0.0      # entries at or below this are dropped


@dataclass
class DemographySection:
    """Per-generation vital rates."""
    prob_seed: float = 0.5
    fecundity: float = 2.0
    prob_germination: float = 0.4        # r0 for beverton_holt
    germination_model: str = 'beverton_holt'  # 'constant' or 'beverton_holt'
    carrying_capacity: float = 100.0     # K for beverton_holt
    prob_survival: float = 0.6


@dataclass
class GeneticsSection:
    """Single-locus, two-allele genetics and starting composition."""
    genotypes: List[str] = field(default_factory=lambda: ['aa', 'aA', 'AA'])
    num_alleles: Optional[List[int]] = None  # copies of the tracked allele; default 0..G-1
    initial_density: float = 50.0            # individuals per habitable cell
    initial_frequency: float = 0.5           # frequency of the tracked allele


@dataclass
class OutputSection:
    """Output control."""
    directory: str = "results/"
    save_history: bool = False


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    habitat: HabitatSection = field(default_factory=HabitatSection)
    pollen: DispersalSection = field(
        default_factory=lambda: DispersalSection(normalize=0.01)
    )
    seed: DispersalSection = field(
        default_factory=lambda: DispersalSection(sigma=0.5, radius=2.0)
    )
    demography: DemographySection = field(default_factory=DemographySection)
    genetics: GeneticsSection = field(default_factory=GeneticsSection)
    output: OutputSection = field(default_factory=OutputSection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict, defaults: Any = None) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys.

    Fields absent from ``data`` come from ``defaults`` when given, else from
    the dataclass defaults.
    """
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if defaults is not None:
        return dataclasses.replace(defaults, **filtered)
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    template = SimulationConfig()
    sections = {}
    for f in dataclasses.fields(SimulationConfig):
        default = getattr(template, f.name)
        if f.name in data and isinstance(data[f.name], dict):
            sections[f.name] = _dict_to_section(type(default), data[f.name], default)
        else:
            sections[f.name] = default
    return SimulationConfig(**sections)


def _check_probability(value: float, name: str) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must be in [0, 1], got {value}")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Checks:
      - Run length and snapshot times are consistent
      - Grid dimensions and cell lists are in range
      - Dispersal kernels are known and scales are positive
      - Vital rates are probabilities (fecundity non-negative)
      - Genotype labels and allele counts agree
    """
    # Simulation
    sim = config.simulation
    if sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")
    if sim.times is not None:
        times = list(sim.times)
        if len(times) == 0:
            raise ConfigurationError("simulation.times must not be empty")
        if times[0] < 0:
            raise ConfigurationError(
                f"simulation.times must be non-negative, got {times[0]}"
            )
        if any(b <= a for a, b in zip(times, times[1:])):
            raise ConfigurationError(
                f"simulation.times must be strictly increasing, got {times}"
            )
    else:
        if sim.n_generations < 0:
            raise ConfigurationError(
                f"simulation.n_generations must be >= 0, got {sim.n_generations}"
            )
        if sim.record_every < 1:
            raise ConfigurationError(
                f"simulation.record_every must be >= 1, got {sim.record_every}"
            )

    # Habitat
    h = config.habitat
    if h.nrow < 1 or h.ncol < 1:
        raise ConfigurationError(
            f"habitat grid must be at least 1x1, got {h.nrow}x{h.ncol}"
        )
    if h.resolution <= 0:
        raise ConfigurationError(
            f"habitat.resolution must be positive, got {h.resolution}"
        )
    n_cells = h.nrow * h.ncol
    for name in ('missing_cells', 'uninhabitable_cells'):
        cells = getattr(h, name)
        bad = [c for c in cells if not 0 <= int(c) < n_cells]
        if bad:
            raise ConfigurationError(
                f"habitat.{name} out of range [0, {n_cells}): {bad}"
            )
    if len(set(h.missing_cells)) >= n_cells:
        raise ConfigurationError("habitat.missing_cells leaves no accessible cells")

    # Dispersal
    valid_kernels = {'gaussian', 'exponential', 'cauchy'}
    for name in ('pollen', 'seed'):
        d = getattr(config, name)
        if d.kernel not in valid_kernels:
            raise ConfigurationError(
                f"{name}.kernel must be one of {valid_kernels}, got '{d.kernel}'"
            )
        if d.sigma <= 0:
            raise ConfigurationError(f"{name}.sigma must be positive, got {d.sigma}")
        if d.radius < 0:
            raise ConfigurationError(f"{name}.radius must be >= 0, got {d.radius}")
        if d.normalize is not None and d.normalize <= 0:
            raise ConfigurationError(
                f"{name}.normalize must be positive or null, got {d.normalize}"
            )
        if d.min_prob < 0:
            raise ConfigurationError(f"{name}.min_prob must be >= 0, got {d.min_prob}")

    # Demography
    dem = config.demography
    for name in ('prob_seed', 'prob_germination', 'prob_survival'):
        _check_probability(getattr(dem, name), f"demography.{name}")
    if dem.fecundity < 0:
        raise ConfigurationError(
            f"demography.fecundity must be >= 0, got {dem.fecundity}"
        )
    valid_models = {'constant', 'beverton_holt'}
    if dem.germination_model not in valid_models:
        raise ConfigurationError(
            f"demography.germination_model must be one of {valid_models}, "
            f"got '{dem.germination_model}'"
        )
    if dem.germination_model == 'beverton_holt' and dem.carrying_capacity <= 0:
        raise ConfigurationError(
            f"demography.carrying_capacity must be positive, got {dem.carrying_capacity}"
        )

    # Genetics
    g = config.genetics
    if len(g.genotypes) == 0:
        raise ConfigurationError("genetics.genotypes must not be empty")
    if len(set(g.genotypes)) != len(g.genotypes):
        raise ConfigurationError(
            f"genetics.genotypes must be unique, got {g.genotypes}"
        )
    if g.num_alleles is None:
        if len(g.genotypes) != 3:
            raise ConfigurationError(
                "genetics.num_alleles is required unless there are exactly 3 genotypes"
            )
    elif len(g.num_alleles) != len(g.genotypes):
        raise ConfigurationError(
            f"genetics.num_alleles has {len(g.num_alleles)} entries for "
            f"{len(g.genotypes)} genotypes"
        )
    if g.initial_density < 0:
        raise ConfigurationError(
            f"genetics.initial_density must be >= 0, got {g.initial_density}"
        )
    _check_probability(g.initial_frequency, "genetics.initial_frequency")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
