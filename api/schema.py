"""
Authoring-schema models for survey studio.

Every document that enters the backend (from disk, from the HTTP store,
from a request body or from an editor session mirror) is validated into
these models. JSON keys are camelCase; Python attributes are snake_case.
Unknown keys are kept (``extra="allow"``) so front-end fields the backend
does not interpret survive a load/save round trip.

Question elements are a closed sum type discriminated on ``type``: one
model per image-bearing kind and ``PlainQuestion`` for everything the
renderer handles natively.
"""

from typing import Annotated, Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter
from pydantic.alias_generators import to_camel

STORE_FORMAT_VERSION = "2.0"

IMAGE_QUESTION_TYPES = frozenset({
    "imagepicker",
    "imageranking",
    "imagerating",
    "imageboolean",
    "image",
    "imagematrix",
})


class SchemaModel(BaseModel):
    """Base model: camelCase aliases, permissive about unknown keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json_dict(self) -> Dict[str, Any]:
        """Canonical JSON form, as written to the store."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============= Images and projects =============


class ImageRef(SchemaModel):
    """A resolvable image: stable name plus display URL."""
    name: str
    url: str


class ImageDatasetConfig(SchemaModel):
    """Images available to a project."""
    preloaded_images: Optional[List[ImageRef]] = None
    preloaded_images_count: Optional[int] = None

    @property
    def is_lightweight(self) -> bool:
        """A count is declared but the image payload was left out."""
        return bool(self.preloaded_images_count) and self.preloaded_images is None

    def lightweight_copy(self) -> "ImageDatasetConfig":
        if not self.preloaded_images:
            return self.model_copy(deep=True)
        data = self.model_dump(by_alias=True, exclude_none=True)
        data.pop("preloadedImages", None)
        data["preloadedImagesCount"] = len(self.preloaded_images)
        return ImageDatasetConfig.model_validate(data)


class ResponseStorageConfig(SchemaModel):
    """Where participant responses are stored (endpoint + credential)."""
    enabled: Optional[bool] = None
    url: Optional[str] = None
    secret_key: Optional[str] = None
    table: Optional[str] = None


class Project(SchemaModel):
    """One survey authoring workspace."""
    id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    image_dataset_config: Optional[ImageDatasetConfig] = None
    response_storage_config: Optional[ResponseStorageConfig] = Field(
        default=None,
        validation_alias=AliasChoices("responseStorageConfig", "response_storage_config", "supabaseConfig"),
        serialization_alias="responseStorageConfig",
    )
    created_at: Optional[str] = None

    @property
    def is_lightweight(self) -> bool:
        return self.image_dataset_config is not None and self.image_dataset_config.is_lightweight

    @property
    def preloaded_images(self) -> List[ImageRef]:
        if self.image_dataset_config and self.image_dataset_config.preloaded_images:
            return list(self.image_dataset_config.preloaded_images)
        return []


# ============= Theme =============


class Theme(SchemaModel):
    """Named color tokens of a survey."""
    primary_color: Optional[str] = None
    primary_light: Optional[str] = None
    primary_dark: Optional[str] = None
    secondary_color: Optional[str] = None
    accent_color: Optional[str] = None
    success_color: Optional[str] = None
    background_color: Optional[str] = None
    card_background: Optional[str] = None
    header_background: Optional[str] = None
    text_color: Optional[str] = None
    secondary_text: Optional[str] = None
    disabled_text: Optional[str] = None
    border_color: Optional[str] = None
    focus_border: Optional[str] = None


# ============= Questions =============


class HuggingFaceConfig(SchemaModel):
    """Named external dataset reference."""
    dataset_name: Optional[str] = None
    hugging_face_token: Optional[str] = None
    config_name: Optional[str] = None
    split: Optional[str] = None
    image_column: Optional[str] = None


class BucketConfig(SchemaModel):
    """Bucket/credential-addressed image store."""
    url: str
    secret_key: Optional[str] = None


class PlainQuestion(SchemaModel):
    """Any question type the renderer handles natively; passed through."""
    type: str
    name: str = ""


class ImageQuestion(SchemaModel):
    """Fields shared by every image-bearing question."""

    DEFAULT_IMAGE_COUNT: ClassVar[int] = 1

    type: str
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    is_required: Optional[bool] = None
    random_image_selection: Optional[bool] = None
    image_count: Optional[int] = None
    image_source: Optional[str] = None
    hugging_face_config: Optional[HuggingFaceConfig] = None
    supabase_config: Optional[BucketConfig] = None
    bucket_path: Optional[str] = None
    image_names: Optional[List[str]] = None
    image_links: Optional[List[str]] = None
    image_html: Optional[str] = None
    image_fit: Optional[str] = None

    @property
    def resolved_image_count(self) -> int:
        if self.image_count and self.image_count > 0:
            return self.image_count
        return self.DEFAULT_IMAGE_COUNT


class ImagePickerQuestion(ImageQuestion):
    DEFAULT_IMAGE_COUNT: ClassVar[int] = 4

    type: str = "imagepicker"
    multi_select: Optional[bool] = None
    choices: Optional[List[Dict[str, Any]]] = None


class ImageRankingQuestion(ImageQuestion):
    DEFAULT_IMAGE_COUNT: ClassVar[int] = 4

    type: str = "imageranking"
    choices: Optional[List[Dict[str, Any]]] = None


class ImageRatingQuestion(ImageQuestion):
    type: str = "imagerating"
    rate_min: Optional[int] = None
    rate_max: Optional[int] = None
    min_rate_description: Optional[str] = None
    max_rate_description: Optional[str] = None


class ImageBooleanQuestion(ImageQuestion):
    type: str = "imageboolean"
    label_true: Optional[str] = None
    label_false: Optional[str] = None
    value_true: Optional[Any] = None
    value_false: Optional[Any] = None


class ImageDisplayQuestion(ImageQuestion):
    type: str = "image"
    image_link: Optional[str] = None
    image_name: Optional[str] = None


class ImageMatrixQuestion(ImageQuestion):
    type: str = "imagematrix"
    rows: Optional[List[Any]] = None
    columns: Optional[List[Any]] = None


def _question_tag(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("type")
    else:
        kind = getattr(value, "type", None)
    return kind if kind in IMAGE_QUESTION_TYPES else "plain"


Question = Annotated[
    Union[
        Annotated[ImagePickerQuestion, Tag("imagepicker")],
        Annotated[ImageRankingQuestion, Tag("imageranking")],
        Annotated[ImageRatingQuestion, Tag("imagerating")],
        Annotated[ImageBooleanQuestion, Tag("imageboolean")],
        Annotated[ImageDisplayQuestion, Tag("image")],
        Annotated[ImageMatrixQuestion, Tag("imagematrix")],
        Annotated[PlainQuestion, Tag("plain")],
    ],
    Discriminator(_question_tag),
]

question_adapter: TypeAdapter = TypeAdapter(Question)


# ============= Documents =============


class Page(SchemaModel):
    """Ordered container of questions."""
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    elements: List[Question] = Field(default_factory=list)


class SurveyDocument(SchemaModel):
    """Authoring-schema questionnaire definition."""
    title: Optional[str] = None
    description: Optional[str] = None
    logo: Optional[str] = None
    logo_position: Optional[str] = None
    show_question_numbers: Optional[Any] = None
    show_progress_bar: Optional[str] = None
    progress_bar_type: Optional[str] = None
    auto_grow_comment: Optional[bool] = None
    show_preview_before_complete: Optional[str] = None
    pages: List[Page] = Field(default_factory=list)
    theme: Optional[Theme] = None
    preloaded_images: Optional[List[ImageRef]] = None

    def iter_questions(self) -> Iterator[Tuple[Page, Any]]:
        for page in self.pages:
            for element in page.elements:
                yield page, element


class StoredProject(SchemaModel):
    """Document Store record: project plus its survey document."""
    project: Project
    survey_document: Optional[SurveyDocument] = Field(
        default=None,
        validation_alias=AliasChoices("surveyDocument", "survey_document", "surveyConfig"),
        serialization_alias="surveyDocument",
    )
    response_storage_config: Optional[ResponseStorageConfig] = Field(
        default=None,
        validation_alias=AliasChoices("responseStorageConfig", "response_storage_config", "supabaseConfig"),
        serialization_alias="responseStorageConfig",
    )
    saved_at: Optional[str] = None
    version: str = STORE_FORMAT_VERSION

    @property
    def is_lightweight(self) -> bool:
        return self.project.is_lightweight


# ============= Responses =============


class SurveyMetadata(SchemaModel):
    completion_time: Optional[str] = None
    user_agent: Optional[str] = None
    screen_resolution: Optional[str] = None
    survey_version: Optional[str] = None
    project_id: Optional[str] = None


class ResponseRecord(SchemaModel):
    """Write-once participant submission."""
    participant_id: str = "anonymous"
    responses: Dict[str, Any] = Field(default_factory=dict)
    displayed_images: Dict[str, List[str]] = Field(default_factory=dict)
    survey_metadata: SurveyMetadata = Field(default_factory=SurveyMetadata)


class SurveyTemplate(SchemaModel):
    """Reusable starting point for new surveys."""
    id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    survey_document: Optional[SurveyDocument] = Field(
        default=None,
        validation_alias=AliasChoices("surveyDocument", "survey_document", "surveyConfig"),
        serialization_alias="surveyDocument",
    )
