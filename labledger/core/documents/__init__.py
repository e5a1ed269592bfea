from labledger.core.documents.models import DocumentSequence
from labledger.core.documents.number_generator import DocumentNumberGenerator, next_sample_id

__all__ = ["DocumentSequence", "DocumentNumberGenerator", "next_sample_id"]
