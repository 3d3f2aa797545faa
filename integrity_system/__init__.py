"""Process-integrity engine for writing journals: hash chain, checkpoints, certificates."""

__version__ = "1.0.0"
