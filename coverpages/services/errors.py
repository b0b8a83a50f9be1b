# FILE: coverpages/services/errors.py
"""
Error taxonomy for the acquisition cache and pipeline
"""
from typing import Optional


class CoverPagesError(Exception):
    """Base error; code is what clients see in {message, code}"""

    code = "PROCESSING_ERROR"
    status_code = 500

    def __init__(self, message: str, book_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.book_id = book_id

    def to_dict(self):
        return {"message": self.message, "code": self.code}


class CorruptImage(CoverPagesError):
    """Image bytes could not be decoded or split"""
    code = "CORRUPT_IMAGE"
    status_code = 422


class NoPreviewAvailable(CoverPagesError):
    """The source has zero viewable pages; terminal"""
    code = "NO_PAGES_AVAILABLE"
    status_code = 404


class CapabilityUnavailable(CoverPagesError):
    """An external capability failed transiently; retried by a later run"""
    code = "CAPABILITY_UNAVAILABLE"
    status_code = 503

    def __init__(self, capability: str, message: str, book_id: Optional[str] = None):
        super().__init__(f"{capability}: {message}", book_id=book_id)
        self.capability = capability


class IncompleteArtifact(CoverPagesError):
    """An artifact exists but failed validation, or a prerequisite is missing"""
    code = "INCOMPLETE_ARTIFACT"
    status_code = 409

    def __init__(self, artifact: str, message: str, book_id: Optional[str] = None):
        super().__init__(f"{artifact}: {message}", book_id=book_id)
        self.artifact = artifact


class DuplicateSlotsExhausted(CoverPagesError):
    code = "DUPLICATE_SLOTS_EXHAUSTED"
    status_code = 409


class IdentityConflict(CoverPagesError):
    """Upload id is already linked to a different canonical id"""
    code = "IDENTITY_CONFLICT"
    status_code = 409


class InvalidBookId(CoverPagesError):
    code = "INVALID_BOOK_ID"
    status_code = 400
