from conductor.orchestrator.phase_execution import PhaseExecutionLoop, PhaseExecutionResult
from conductor.orchestrator.plan_generation import PlanGenerationResult, PlanGenerator
from conductor.orchestrator.plan_review import PlanReviewLoop, PlanReviewResult

__all__ = [
    "PhaseExecutionLoop",
    "PhaseExecutionResult",
    "PlanGenerationResult",
    "PlanGenerator",
    "PlanReviewLoop",
    "PlanReviewResult",
]
