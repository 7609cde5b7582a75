from intelhub.models.jobs import IntelligenceJob
from intelhub.models.deals import Deal

__all__ = ["IntelligenceJob", "Deal"]
