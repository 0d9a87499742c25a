"""Sample stream interfaces and built-in synthetic sources."""

from .base import SampleStream
from .synthetic import LinearStream, SwitchingLinearStream

__all__ = ["SampleStream", "LinearStream", "SwitchingLinearStream"]
