from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ErrorKind


EMPTY_MARKUP = "<!-- empty -->"
EMPTY_STYLING = "/* empty */"
EMPTY_SCRIPT = "// empty"


class ResourceKind(str, Enum):
    PROFILE_HISTORY = "profile_history"
    ARTIFACT = "artifact"


class ConversationTurn(BaseModel):
    user: str
    bot: str = ""

    @property
    def is_pending(self) -> bool:
        return not self.bot


class ImageRecord(BaseModel):
    """Metadata for one uploaded image; immutable once created."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    stored_name: str = Field(alias="filename")
    original_name: str = Field(alias="originalname")
    url: str
    uploaded_at: str = Field(alias="uploadedAt")
    caption: str = Field(default="", alias="description")
    analysis: str = Field(default="", alias="aiAnalysis")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class SiteProfile(BaseModel):
    """Requirements accumulated for one user's site.

    Keys are exchanged with the model in camelCase. Unknown keys are kept as
    extras so nothing the model infers is lost between turns.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    website_type: str = ""
    target_audience: str = ""
    main_goal: str = ""
    color_scheme: str = ""
    theme: str = ""
    pages: List[Any] = Field(default_factory=list)
    sections: List[Any] = Field(default_factory=list)
    features: List[Any] = Field(default_factory=list)
    content: Dict[str, Any] = Field(default_factory=dict)
    design_preferences: Dict[str, Any] = Field(default_factory=dict)
    images: List[ImageRecord] = Field(default_factory=list)
    fonts: str = ""
    contact_info: Dict[str, Any] = Field(default_factory=dict)
    social_links: Dict[str, Any] = Field(default_factory=dict)
    custom_scripts: str = ""
    branding: Dict[str, Any] = Field(default_factory=dict)
    update_requests: List[Any] = Field(default_factory=list)
    additional_notes: str = ""

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SiteArtifact(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    markup: str = EMPTY_MARKUP
    styling: str = EMPTY_STYLING
    script: str = EMPTY_SCRIPT
    revision: int = 0
    generated_at: Optional[str] = None

    @property
    def generated(self) -> bool:
        return self.revision > 0


@dataclass
class ImageUpload:
    original_name: str
    data: bytes
    mime_type: Optional[str] = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class ChatTurnResult(BaseModel):
    reply: str
    history: List[ConversationTurn]
    profile: SiteProfile


class ImageFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    original_name: str
    kind: ErrorKind
    message: str


class IngestionResult(BaseModel):
    images: List[ImageRecord] = Field(default_factory=list)
    failures: List[ImageFailure] = Field(default_factory=list)


class RegenerationResult(BaseModel):
    artifact: SiteArtifact


class ResetResult(BaseModel):
    user_id: str
    message: str


class UserSnapshot(BaseModel):
    profile: SiteProfile
    history: List[ConversationTurn]
    artifact: SiteArtifact


class OperationError(BaseModel):
    kind: ErrorKind
    message: str
    retryable: bool = False


T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    ok: bool
    data: Optional[T] = None
    error: Optional[OperationError] = None


# ---------------------------------------------------------------------------
# Transport payloads
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    user_id: str = Field(min_length=1)
    message: str = Field(min_length=1)


class PublishResult(BaseModel):
    ok: bool
    detail: str
    url: Optional[str] = None
