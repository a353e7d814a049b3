"""Per-type payload models validated before a job is created.

Each job type has one payload shape. Validation happens once, at the queue
service boundary; after that the payload travels as a plain dict that the
queue stores verbatim and only the renderer interprets. Unknown extra fields
are kept so renderers can grow without touching the queue.
"""

from typing import Any, ClassVar, Dict, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidPayloadError


class DocumentPayload(BaseModel):
    """Base payload: optional title, any extra renderer fields.

    Subclasses name the field that carries their logical identifier.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    identifier_field: ClassVar[Optional[str]] = "document_id"

    title: Optional[str] = Field(default=None, description="Document title")
    document_id: Optional[str] = Field(default=None, alias="documentId")

    @field_validator("*", mode="before")
    @classmethod
    def identifiers_as_text(cls, v: Any, info) -> Any:
        """Numeric identifiers are accepted and stored as strings."""
        if info.field_name != "title" and isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def logical_id(self) -> Optional[str]:
        if not self.identifier_field:
            return None
        return getattr(self, self.identifier_field, None) or None

    def to_payload(self) -> Dict[str, Any]:
        """Dict stored when the payload was submitted as a model instance."""
        return self.model_dump(by_alias=True, exclude_none=True)


class TestPaperPayload(DocumentPayload):
    """Question paper for a test."""

    identifier_field: ClassVar[Optional[str]] = "test_id"

    test_id: Optional[str] = Field(default=None, alias="testId")


class PracticeSheetPayload(DocumentPayload):
    """Daily practice problem sheet."""

    identifier_field: ClassVar[Optional[str]] = "dpp_id"

    dpp_id: Optional[str] = Field(default=None, alias="dppId")


class TestAnalysisPayload(DocumentPayload):
    """Per-attempt analysis report."""

    identifier_field: ClassVar[Optional[str]] = "analysis_id"

    analysis_id: Optional[str] = Field(default=None, alias="analysisId")


PAYLOAD_MODELS: Dict[str, Type[DocumentPayload]] = {
    "document": DocumentPayload,
    "test": TestPaperPayload,
    "dpp": PracticeSheetPayload,
    "test_analysis": TestAnalysisPayload,
}


def validate_payload(
    job_type: str,
    payload: Any,
    models: Mapping[str, Type[DocumentPayload]] = PAYLOAD_MODELS,
) -> DocumentPayload:
    """Validate payload against the model registered for job_type.

    Raises:
        InvalidPayloadError: Unknown job type or payload does not match
    """
    model = models.get(job_type.lower())
    if model is None:
        raise InvalidPayloadError(f"Unknown job type: {job_type}")

    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True)
    if not isinstance(payload, Mapping):
        raise InvalidPayloadError(
            f"Payload for {job_type} must be a mapping, got {type(payload).__name__}"
        )

    try:
        return model.model_validate(dict(payload))
    except ValidationError as e:
        raise InvalidPayloadError(f"Invalid payload for {job_type}: {e}") from e
