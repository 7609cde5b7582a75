from intelhub.tasks import intelligence  # noqa: F401
from intelhub.tasks import job_reconciler  # noqa: F401

__all__ = [
    "intelligence",
    "job_reconciler",
]
