"""Generation orchestration and self-correction pipeline."""

__version__ = "0.1.0"
