"""Pipeline configuration."""

from .config import AlignmentConfig, Config, OutputConfig, StapleConfig

__all__ = ["Config", "AlignmentConfig", "StapleConfig", "OutputConfig"]
