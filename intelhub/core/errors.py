"""
Error taxonomy for the intelligence pipeline.

Endpoints translate these into HTTP responses; the job runner stores
``ModelServiceError`` messages on the job record.
"""


class IntelligenceError(Exception):
    """Base class for pipeline errors."""

    status_code = 500


class ValidationError(IntelligenceError):
    """Request shape is invalid. Never persisted as a job."""

    status_code = 400


class UpstreamToolError(IntelligenceError):
    """A single tool call failed. Fed back to the agent, not fatal."""

    status_code = 502

    def __init__(self, tool: str, message: str):
        super().__init__(f"{tool}: {message}")
        self.tool = tool


class ModelServiceError(IntelligenceError):
    """The language model call failed. Fatal to the agent loop."""

    status_code = 502


class StoreTimeoutError(IntelligenceError):
    """A store read exceeded its time budget."""

    status_code = 503


class JobNotFoundError(IntelligenceError):
    status_code = 404

    def __init__(self, job_id):
        super().__init__(f"Intelligence job {job_id} not found")
        self.job_id = job_id
