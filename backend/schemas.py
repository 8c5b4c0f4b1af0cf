"""
Pydantic schemas for storyboard artifacts, timeline messages and
request/response validation
"""

import math
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import SchemaValidationError, ValidationError, field_errors_from_pydantic
from models import MessageType

VideoFormat = Literal["1:1", "9:16", "16:9"]

# Every versioned payload must carry a non-empty version string
Version = Annotated[str, Field(min_length=1)]

DURATION_TOLERANCE = 1e-6

# Message payload versions this service understands
MESSAGE_CONTENT_VERSIONS = ("1",)
CURRENT_MESSAGE_VERSION = "1"


def _check_uuid(value: str) -> str:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        raise ValueError("must be a UUID")
    return value


def _check_url(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError("must be an http(s) URL")
    return value


# ===== Storyboard =====

class AssetSuggestion(BaseModel):
    """Suggested (or confirmed) visual asset for a scene"""
    id: Optional[str] = None
    type: Literal["image", "video"]
    description: str
    placeholderUrl: Optional[str] = None
    s3Key: Optional[str] = None

    @field_validator("placeholderUrl")
    @classmethod
    def validate_placeholder_url(cls, v):
        return _check_url(v) if v is not None else v


class Scene(BaseModel):
    """One scene of a storyboard"""
    id: str
    duration: float = Field(..., gt=0)
    onScreenText: str
    voiceoverText: str
    assetSuggestions: List[AssetSuggestion]

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        return _check_uuid(v)


class Storyboard(BaseModel):
    """
    Format-agnostic plan of scenes.

    ``totalDuration`` must equal the sum of scene durations; this is checked
    on every write.
    """
    version: Version
    format: VideoFormat
    totalDuration: float = Field(..., gt=0)
    scenes: List[Scene]

    @model_validator(mode="after")
    def check_total_duration(self):
        expected = sum(scene.duration for scene in self.scenes)
        if not math.isclose(self.totalDuration, expected, rel_tol=0, abs_tol=DURATION_TOLERANCE):
            raise ValueError(
                f"totalDuration {self.totalDuration} does not equal sum of scene durations {expected}"
            )
        return self


class ScriptTiming(BaseModel):
    start: float = Field(..., ge=0)
    end: float = Field(..., gt=0)


class ScriptScene(BaseModel):
    sceneId: str
    voiceover: str
    timing: ScriptTiming

    @field_validator("sceneId")
    @classmethod
    def validate_scene_id(cls, v):
        return _check_uuid(v)


class Script(BaseModel):
    """Voiceover script aligned with storyboard scenes"""
    version: Version
    tone: str
    scenes: List[ScriptScene]


class BrandColors(BaseModel):
    primary: str
    secondary: str
    accent: str


class BrandFonts(BaseModel):
    heading: str
    body: str


class BrandKit(BaseModel):
    """Brand identity extracted from the product page"""
    version: Version
    productName: str
    tagline: str
    benefits: List[str]
    colors: BrandColors
    fonts: BrandFonts
    tone: str
    pricing: Optional[str] = None
    testimonials: Optional[List[str]] = None
    logoUrl: Optional[str] = None

    @field_validator("logoUrl")
    @classmethod
    def validate_logo_url(cls, v):
        return _check_url(v) if v is not None else v


def _validate_artifact(model, payload: Any, field: str) -> Dict[str, Any]:
    try:
        validated = model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {field}",
            field_errors=field_errors_from_pydantic(e, prefix=field),
        )
    return validated.model_dump(mode="json", exclude_none=True)


def validate_storyboard(payload: Any) -> Dict[str, Any]:
    """Validate a storyboard and return its canonical JSON form"""
    return _validate_artifact(Storyboard, payload, "storyboard")


def validate_script(payload: Any) -> Dict[str, Any]:
    """Validate a script and return its canonical JSON form"""
    return _validate_artifact(Script, payload, "script")


def validate_brand_kit(payload: Any) -> Dict[str, Any]:
    """Validate a brand kit and return its canonical JSON form"""
    return _validate_artifact(BrandKit, payload, "brandKit")


def validate_snapshot(storyboard: Any, script: Any, brand_kit: Any):
    """
    Validate storyboard, script and brand kit independently.

    All three are checked before raising so the error lists every
    violation at once.

    Returns:
        Tuple of canonical (storyboard, script, brand_kit) dicts
    """
    results = {}
    field_errors: Dict[str, List[str]] = {}
    for name, validator, payload in (
        ("storyboard", validate_storyboard, storyboard),
        ("script", validate_script, script),
        ("brandKit", validate_brand_kit, brand_kit),
    ):
        try:
            results[name] = validator(payload)
        except ValidationError as e:
            field_errors.update(e.field_errors)

    if field_errors:
        raise ValidationError("Checkpoint content failed validation", field_errors=field_errors)

    return results["storyboard"], results["script"], results["brandKit"]


# ===== Message content =====

class ArtifactRef(BaseModel):
    """Typed pointer from a message to the entity it announces"""
    model_config = ConfigDict(extra="forbid")

    type: Literal["checkpoint", "render_job"]
    id: str

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        return _check_uuid(v)


class MessageContentBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: Version
    artifactRefs: List[ArtifactRef]

    @field_validator("version")
    @classmethod
    def validate_version(cls, v):
        if v not in MESSAGE_CONTENT_VERSIONS:
            raise ValueError(f"unsupported version '{v}'")
        return v


class UrlSubmittedContent(MessageContentBase):
    type: Literal["url_submitted"]
    url: str
    format: VideoFormat
    tone: Optional[str] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _check_url(v)


class GenerationProgressContent(MessageContentBase):
    type: Literal["generation_progress"]
    message: str
    progress: float = Field(..., ge=0, le=100)


class GenerationResultContent(MessageContentBase):
    type: Literal["generation_result"]
    checkpointId: str
    summary: str


class CheckpointCreatedContent(MessageContentBase):
    type: Literal["checkpoint_created"]
    checkpointId: str
    reason: Literal[
        "generation",
        "manual_edit",
        "scene_regeneration",
        "asset_generation",
        "brand_kit_update",
    ]


class CheckpointAppliedContent(MessageContentBase):
    type: Literal["checkpoint_applied"]
    checkpointId: str
    previousCheckpointId: Optional[str]


class SceneRegeneratedContent(MessageContentBase):
    type: Literal["scene_regenerated"]
    checkpointId: str
    sceneId: str
    instruction: str


class RenderRequestedContent(MessageContentBase):
    type: Literal["render_requested"]
    renderJobId: str
    format: VideoFormat


class RenderProgressContent(MessageContentBase):
    type: Literal["render_progress"]
    renderJobId: str
    progress: float = Field(..., ge=0, le=100)
    status: str


class RenderCompletedContent(MessageContentBase):
    type: Literal["render_completed"]
    renderJobId: str
    outputUrl: Optional[str]
    status: Literal["completed", "failed", "cancelled"]


MESSAGE_CONTENT_MODELS = {
    "url_submitted": UrlSubmittedContent,
    "generation_progress": GenerationProgressContent,
    "generation_result": GenerationResultContent,
    "checkpoint_created": CheckpointCreatedContent,
    "checkpoint_applied": CheckpointAppliedContent,
    "scene_regenerated": SceneRegeneratedContent,
    "render_requested": RenderRequestedContent,
    "render_progress": RenderProgressContent,
    "render_completed": RenderCompletedContent,
}

MessageContent = Annotated[
    Union[
        UrlSubmittedContent,
        GenerationProgressContent,
        GenerationResultContent,
        CheckpointCreatedContent,
        CheckpointAppliedContent,
        SceneRegeneratedContent,
        RenderRequestedContent,
        RenderProgressContent,
        RenderCompletedContent,
    ],
    Field(discriminator="type"),
]

message_content_adapter = TypeAdapter(MessageContent)

# Message types whose semantics announce a durable artifact, and the kind of
# artifact each must reference.
ARTIFACT_BEARING_TYPES = {
    "generation_result": "checkpoint",
    "checkpoint_created": "checkpoint",
    "checkpoint_applied": "checkpoint",
    "scene_regenerated": "checkpoint",
    **{message_type: "render_job" for message_type in MessageType.RENDER_EVENTS},
}


def validate_message_content(message_type: str, content: Any) -> Dict[str, Any]:
    """
    Validate message content against the schema selected by ``message_type``.

    Unknown types and missing or empty ``version`` are hard failures.

    Raises:
        SchemaValidationError: naming the offending fields
    """
    model = MESSAGE_CONTENT_MODELS.get(message_type)
    if model is None:
        raise SchemaValidationError(
            f"Unknown message type: {message_type}",
            field_errors={"type": [f"unknown message type '{message_type}'"]},
        )

    if not isinstance(content, dict):
        raise SchemaValidationError(
            "Message content must be an object",
            field_errors={"contentJson": ["must be an object"]},
        )

    if content.get("type") != message_type:
        raise SchemaValidationError(
            "Message content type does not match message type",
            field_errors={"type": [f"expected '{message_type}', got '{content.get('type')}'"]},
        )

    try:
        validated = model.model_validate(content)
    except PydanticValidationError as e:
        raise SchemaValidationError(
            f"Invalid {message_type} content",
            field_errors=field_errors_from_pydantic(e),
        )

    expected_artifact = ARTIFACT_BEARING_TYPES.get(message_type)
    if expected_artifact and not any(ref.type == expected_artifact for ref in validated.artifactRefs):
        raise SchemaValidationError(
            f"{message_type} must reference a {expected_artifact}",
            field_errors={"artifactRefs": [f"missing {expected_artifact} reference"]},
        )

    return validated.model_dump(mode="json")


def parse_message_content(content: Any):
    """Parse stored content into its tagged variant"""
    try:
        return message_content_adapter.validate_python(content)
    except PydanticValidationError as e:
        raise SchemaValidationError(
            "Invalid message content",
            field_errors=field_errors_from_pydantic(e),
        )


# ===== Requests =====

class CreateProjectRequest(BaseModel):
    """Request model for creating an empty project"""
    title: str = Field(..., min_length=1, max_length=200)


class GenerateRequest(BaseModel):
    """Request model for storyboard generation from a product URL"""
    url: str
    format: VideoFormat
    tone: Optional[str] = None
    idempotencyKey: Optional[str] = Field(None, min_length=1, max_length=200)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _check_url(v)

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com/products/ecowater-bottle",
                "format": "9:16",
                "tone": "energetic",
                "idempotencyKey": "2f1d7c9e-gen-1"
            }
        }


class UpdateSceneRequest(BaseModel):
    """Request model for a manual scene edit"""
    checkpointId: str
    sceneId: str
    duration: float = Field(..., gt=0)
    onScreenText: str = Field(..., min_length=1)
    voiceoverText: str = Field(..., min_length=1)


class SceneUpdateRequest(BaseModel):
    """Request model for a partial edit of one scene in the active checkpoint"""
    duration: Optional[float] = Field(None, gt=0)
    onScreenText: Optional[str] = None
    voiceoverText: Optional[str] = None


class RegenerateSceneRequest(BaseModel):
    """Request model for AI regeneration of one scene"""
    checkpointId: str
    sceneId: str
    instruction: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, min_length=1, max_length=200)


class GenerateAssetsRequest(BaseModel):
    """Request model for generating asset suggestions for one scene"""
    checkpointId: str
    sceneId: str
    prompt: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, min_length=1, max_length=200)


class AssetUploadUrlRequest(BaseModel):
    """Request model for a presigned asset upload URL"""
    sceneId: str
    assetId: str
    contentType: str = Field(..., min_length=1)


class ConfirmAssetRequest(BaseModel):
    """Request model for attaching an uploaded object to an asset suggestion"""
    assetId: str
    sceneId: str
    s3Key: str = Field(..., min_length=1)


class UpdateBrandKitRequest(BaseModel):
    """Request model for replacing the brand kit of a checkpoint"""
    checkpointId: str
    brandKit: Dict[str, Any]


class RenderRequest(BaseModel):
    """Request model for submitting a render"""
    checkpointId: str
    format: VideoFormat
    idempotencyKey: Optional[str] = Field(None, min_length=1, max_length=200)

    class Config:
        json_schema_extra = {
            "example": {
                "checkpointId": "550e8400-e29b-41d4-a716-446655440000",
                "format": "9:16",
                "idempotencyKey": "render-1"
            }
        }


# ===== Responses =====

class RenderProgressResponse(BaseModel):
    """Response model for render progress polling"""
    id: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    outputRef: Optional[str] = None
    lastError: Optional[str] = None


class DownloadUrlResponse(BaseModel):
    """Response model for a signed render download URL"""
    downloadUrl: str
    expiresIn: int


class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
    correlationId: str
