"""Plan-driven author/reviewer orchestration with quality gates."""

__version__ = "0.1.0"
