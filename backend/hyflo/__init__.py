"""HyFlo flow-reading validation workflow and live alert delivery."""

__version__ = "1.0.0"
