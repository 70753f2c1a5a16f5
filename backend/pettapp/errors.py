from typing import Optional


class PetTappError(Exception):
    """Base class for errors raised by the directory core."""


class InvalidQueryError(PetTappError, ValueError):
    """A caller-supplied parameter was rejected before reaching the store."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidDocumentError(PetTappError, ValueError):
    """A write carried a value the collection's indexes cannot accept."""


class NotFoundError(PetTappError):
    pass


class ConflictError(PetTappError):
    pass


class StoreUnavailableError(PetTappError):
    """Transport or server failure talking to the document store. Retryable."""


class GeoIndexMissingError(StoreUnavailableError):
    def __init__(self, collection: str, key: str):
        super().__init__(f"No 2dsphere index on {collection}.{key}")
        self.collection = collection
        self.key = key


class MigrationStepFailedError(PetTappError):
    def __init__(self, step: int, step_name: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Migration step {step} ({step_name}) failed{detail}")
        self.step = step
        self.step_name = step_name
        self.cause = cause


class StoredDocumentError(PetTappError):
    """A stored document no longer fits the API model."""

    def __init__(self, collection: str, document_id: str):
        super().__init__(f"Unreadable {collection} document {document_id}")
        self.collection = collection
        self.document_id = document_id
