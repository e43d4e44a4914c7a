"""Step-wise orchestration of contact attempts."""

from outreach_orchestrator.pipeline.orchestrator import OrchestrationPipeline
from outreach_orchestrator.pipeline.steps import StepRunner

__all__ = ["OrchestrationPipeline", "StepRunner"]
