"""
MLflow tracing for stage attempts and completion calls.
Disabled tracing turns every span into a no-op so callers never branch on it.
"""
import logging
import time
from typing import Optional, Dict, Any
from contextlib import contextmanager

import mlflow

from ..config import get_settings

logger = logging.getLogger(__name__)


class MLflowTracer:
    """Handles MLflow tracing for the stage pipeline."""

    def __init__(self, enabled: Optional[bool] = None, tracking_uri: Optional[str] = None):
        settings = get_settings()
        self.enabled = settings.MLFLOW_ENABLE_TRACING if enabled is None else enabled
        if self.enabled:
            try:
                mlflow.set_tracking_uri(tracking_uri or settings.MLFLOW_TRACKING_URI)
                mlflow.set_experiment(settings.MLFLOW_EXPERIMENT_NAME)
                logger.info("MLflow tracing enabled")
            except Exception as e:
                logger.warning(f"Failed to initialize MLflow tracing: {e}")
                self.enabled = False

    @contextmanager
    def span(
        self,
        name: str,
        span_type: str = "UNKNOWN",
        attributes: Optional[Dict[str, Any]] = None,
        inputs: Optional[Dict[str, Any]] = None
    ):
        """
        Create a traced span for an operation.

        Args:
            name: Name of the span (e.g., "stage.normalize", "llm.complete")
            span_type: Type of span (e.g., "LLM", "CHAIN", "PARSER")
            attributes: Additional metadata for the span
            inputs: Input data to the operation
        """
        if not self.enabled:
            yield None
            return

        with mlflow.start_span(name=name, span_type=span_type) as span:
            if attributes:
                span.set_attributes(attributes)
            if inputs:
                span.set_inputs(inputs)

            start_time = time.time()
            yield span
            elapsed = time.time() - start_time
            span.set_attribute("latency_ms", int(elapsed * 1000))

    def trace_completion(self, model: str, prompt_chars: int, response_chars: int, usage: Optional[Dict[str, int]] = None):
        """Attach completion details to the current span."""
        if not self.enabled:
            return
        attributes = {
            "model": model,
            "prompt_length": prompt_chars,
            "response_length": response_chars,
        }
        if usage:
            attributes.update(usage)
        self._annotate(attributes)

    def trace_validation(self, stage: str, outcome: str, issue_count: int = 0):
        """Attach the acceptance gate result to the current span."""
        if not self.enabled:
            return
        self._annotate({"stage": stage, "outcome": outcome, "issue_count": issue_count})

    def _annotate(self, attributes: Dict[str, Any]):
        try:
            current_span = mlflow.get_current_active_span()
            if current_span:
                current_span.set_attributes(attributes)
        except Exception as e:
            logger.warning(f"Failed to annotate span: {e}")


_tracer: Optional[MLflowTracer] = None


def get_tracer() -> MLflowTracer:
    global _tracer
    if _tracer is None:
        _tracer = MLflowTracer()
    return _tracer
