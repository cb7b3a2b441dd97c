"""
Configuration management for the consensus pipeline.

Provides dataclass-based configuration with YAML loading support.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..errors import InvalidArgumentError


@dataclass
class AlignmentConfig:
    """Tolerances used when mapping volumes onto the master grid."""

    position_tolerance: float = 1e-3
    offset_tolerance: float = 1e-2

    def __post_init__(self):
        if self.position_tolerance < 0:
            raise InvalidArgumentError(f"position_tolerance must be >= 0, got {self.position_tolerance}")
        if self.offset_tolerance < 0:
            raise InvalidArgumentError(f"offset_tolerance must be >= 0, got {self.offset_tolerance}")


@dataclass
class StapleConfig:
    """STAPLE estimation parameters."""

    max_iterations: int = 5
    tolerance: float = 1e-6
    initial_sensitivity: float = 0.99999
    initial_specificity: float = 0.99999

    # None means the mean of all rater decisions
    prevalence: Optional[float] = None
    estimate_prevalence: bool = False

    remove_empty_indices: bool = False

    def __post_init__(self):
        for name in ("max_iterations", "tolerance", "initial_sensitivity", "initial_specificity"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidArgumentError(f"{name} must be a number, got {value!r}")
        if self.prevalence is not None and not isinstance(self.prevalence, (int, float)):
            raise InvalidArgumentError(f"prevalence must be a number or null, got {self.prevalence!r}")
        if int(self.max_iterations) != self.max_iterations:
            raise InvalidArgumentError(f"max_iterations must be an integer, got {self.max_iterations!r}")
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.tolerance < 0:
            raise InvalidArgumentError(f"tolerance must be >= 0, got {self.tolerance}")
        for name in ("initial_sensitivity", "initial_specificity"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise InvalidArgumentError(f"{name} must be in (0, 1), got {value}")
        if self.prevalence is not None and not 0.0 <= self.prevalence <= 1.0:
            raise InvalidArgumentError(f"prevalence must be in [0, 1], got {self.prevalence}")


@dataclass
class OutputConfig:
    """Where and what the pipeline writes."""

    output_root: Optional[Path] = None
    save_weights: bool = True
    plot: bool = False

    def __post_init__(self):
        """Convert string paths to Path objects."""
        if isinstance(self.output_root, str):
            self.output_root = Path(os.path.expandvars(self.output_root))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_root": str(self.output_root) if self.output_root else None,
            "save_weights": self.save_weights,
            "plot": self.plot,
        }


@dataclass
class Config:
    """
    Main configuration class combining all config sections.

    Can be loaded from YAML or created programmatically.
    """

    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    staple: StapleConfig = field(default_factory=StapleConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Config instance.
        """
        path = Path(path)

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a Config from a nested dictionary as produced by to_dict()."""
        unknown = set(data) - {"alignment", "staple", "output"}
        if unknown:
            raise InvalidArgumentError(f"Unknown configuration sections: {sorted(unknown)}")

        # Parse sub-configs
        try:
            alignment = AlignmentConfig(**(data.get("alignment") or {}))
            staple = StapleConfig(**(data.get("staple") or {}))
            output = OutputConfig(**(data.get("output") or {}))
        except TypeError as e:
            raise InvalidArgumentError(f"Invalid configuration: {e}") from e

        return cls(alignment=alignment, staple=staple, output=output)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Output path.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entire config to nested dictionary."""
        return {
            "alignment": asdict(self.alignment),
            "staple": asdict(self.staple),
            "output": self.output.to_dict(),
        }
