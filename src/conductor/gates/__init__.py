from conductor.gates.quality import (
    QualityCommandResult,
    QualityGateOptions,
    QualityGateResult,
    run_quality_gates,
)

__all__ = [
    "QualityCommandResult",
    "QualityGateOptions",
    "QualityGateResult",
    "run_quality_gates",
]
