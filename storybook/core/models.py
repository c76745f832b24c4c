from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter, field_validator, model_validator

AspectRatio = Literal["1:1", "3:4", "4:3", "2:3", "3:2"]
TargetAge = Literal["3-5", "5-8"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Stage(str, Enum):
    OUTLINE = "outline"
    MANUSCRIPT = "manuscript"
    ILLUSTRATIONS = "illustrations"
    EXPORT = "export"

    @property
    def rank(self) -> int:
        return list(Stage).index(self)


class TextCompositionMode(str, Enum):
    AI_BAKED = "ai-baked"
    AI_OVERLAY = "ai-overlay"
    MANUAL = "manual"
    NONE = "none"


class ImageType(str, Enum):
    PAGE = "page"
    COVER = "cover"
    BACK_COVER = "back-cover"


class ReferenceType(str, Enum):
    CHARACTER = "character"
    PREVIOUS_PAGE = "previous-page"
    STYLE = "style"


# --- Outline ---

class Character(BaseModel):
    id: str = Field(description="Stable identifier referenced by plot points and pages")
    name: str = Field(description="Name of the character")
    role: Literal["protagonist", "supporting", "antagonist"] = Field(description="Narrative role")
    description: str = Field(description="Personality and story description")
    physical_description: str = Field(description="Detailed physical appearance description")
    age: Optional[str] = Field(default=None, description="Age of the character, if relevant")


class Setting(BaseModel):
    location: str = Field(description="Where the story takes place")
    time_period: str = Field(description="When the story takes place")
    atmosphere: str = Field(description="Overall feeling of the world")
    visual_details: str = Field(description="Concrete visual details for the illustrator")


class PlotPoint(BaseModel):
    id: str = Field(description="Stable identifier of the plot point")
    order: int = Field(description="Position of the plot point in the story")
    title: str
    description: str
    characters: List[str] = Field(default_factory=list, description="Ids of the characters involved")


class Outline(BaseModel):
    title: str
    subtitle: Optional[str] = None
    synopsis: str
    theme: str
    characters: List[Character] = Field(default_factory=list)
    setting: Setting
    plot_points: List[PlotPoint] = Field(default_factory=list)
    cover_description: str = Field(description="Front cover illustration description")
    back_cover_description: str = Field(description="Back cover illustration description")
    back_cover_blurb: str = Field(description="Marketing blurb for the back cover")

    @property
    def protagonist(self) -> Optional[Character]:
        for char in self.characters:
            if char.role == "protagonist":
                return char
        return self.characters[0] if self.characters else None

    def characters_by_ids(self, ids: List[str]) -> List[Character]:
        return [c for c in self.characters if c.id in ids]


# --- Manuscript ---

class ManuscriptPage(BaseModel):
    page_number: int = Field(ge=1, description="1-based page number")
    spread: Literal["left", "right", "full"] = "full"
    text: Optional[str] = None
    text_placement: Literal["top", "bottom", "overlay", "integrated", "none"] = "bottom"
    illustration_description: str = Field(description="Prompt material for the page illustration")
    characters: List[str] = Field(default_factory=list, description="Ids of the characters on this page")
    mood: str = ""
    action: str = ""


class Manuscript(BaseModel):
    pages: List[ManuscriptPage] = Field(default_factory=list)

    @field_validator("pages")
    @classmethod
    def _pages_are_contiguous(cls, pages: List[ManuscriptPage]) -> List[ManuscriptPage]:
        numbers = sorted(p.page_number for p in pages)
        if numbers != list(range(1, len(pages) + 1)):
            raise ValueError(f"Manuscript page numbers must be unique and contiguous from 1, got {numbers}")
        return sorted(pages, key=lambda p: p.page_number)

    def get_page(self, page_number: int) -> Optional[ManuscriptPage]:
        for page in self.pages:
            if page.page_number == page_number:
                return page
        return None


# --- Illustration targets ---

class CoverTarget(BaseModel):
    kind: Literal["cover"] = "cover"

    def describe(self) -> str:
        return "front cover"


class BackCoverTarget(BaseModel):
    kind: Literal["back-cover"] = "back-cover"

    def describe(self) -> str:
        return "back cover"


class PageTarget(BaseModel):
    kind: Literal["page"] = "page"
    page_number: int = Field(ge=1)

    def describe(self) -> str:
        return f"page {self.page_number}"


IllustrationTarget = Annotated[Union[CoverTarget, BackCoverTarget, PageTarget], Field(discriminator="kind")]

_target_adapter = TypeAdapter(IllustrationTarget)


def parse_target(value: Any) -> Union[CoverTarget, BackCoverTarget, PageTarget]:
    """Accepts a tagged dict or a legacy sentinel page number (0 cover, -1 back cover)."""
    if isinstance(value, (CoverTarget, BackCoverTarget, PageTarget)):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        if value == 0:
            return CoverTarget()
        if value == -1:
            return BackCoverTarget()
        return PageTarget(page_number=value)
    return _target_adapter.validate_python(value)


# --- Generated images ---

class ReferenceImageInfo(BaseModel):
    type: ReferenceType
    label: str
    source_path: Optional[str] = None


class ReferenceImage(BaseModel):
    """A reference passed to the image model. Never persisted."""
    type: ReferenceType
    label: str
    data: bytes = Field(repr=False)
    mime_type: str = "image/png"
    source_path: Optional[str] = None

    def info(self) -> ReferenceImageInfo:
        return ReferenceImageInfo(type=self.type, label=self.label, source_path=self.source_path)


class GenerationMetadata(BaseModel):
    session_id: str
    prompt: str = Field(description="Full prompt sent to the image model")
    reference_images: List[ReferenceImageInfo] = Field(default_factory=list)
    model_used: str
    generated_at: str = Field(default_factory=utc_now)
    generation_time_ms: int = 0
    aspect_ratio: AspectRatio
    message_index: Optional[int] = Field(default=None, description="Position in the session (1 = first)")


class PageImage(BaseModel):
    image_type: ImageType = ImageType.PAGE
    page_number: Optional[int] = Field(default=None, description="Content page number, unset for covers")
    image_path: str
    has_text_baked: bool = False
    baked_text: Optional[str] = None
    prompt: str
    generated_at: str = Field(default_factory=utc_now)
    model_used: str
    aspect_ratio: AspectRatio
    generation_metadata: Optional[GenerationMetadata] = None

    @property
    def target(self) -> Union[CoverTarget, BackCoverTarget, PageTarget]:
        if self.image_type == ImageType.COVER:
            return CoverTarget()
        if self.image_type == ImageType.BACK_COVER:
            return BackCoverTarget()
        return PageTarget(page_number=self.page_number)

    @property
    def sentinel_page_number(self) -> int:
        """Legacy encoding used by older clients: 0 cover, -1 back cover."""
        if self.image_type == ImageType.COVER:
            return 0
        if self.image_type == ImageType.BACK_COVER:
            return -1
        return self.page_number


class GeneratedImage(BaseModel):
    data: bytes = Field(repr=False)
    mime_type: str = "image/png"
    model: str
    aspect_ratio: AspectRatio
    generation_time_ms: int = 0
    cached: bool = False


# --- Project ---

class ProjectSettings(BaseModel):
    target_age: TargetAge = "3-5"
    target_page_count: int = Field(default=12, ge=1)
    aspect_ratio: AspectRatio = "3:4"
    tone_keywords: List[str] = Field(default_factory=lambda: ["whimsical"])
    art_style_keywords: List[str] = Field(
        default_factory=lambda: ["watercolor", "soft", "children book illustration"]
    )
    text_composition_mode: TextCompositionMode = TextCompositionMode.AI_BAKED
    font_style: str = "storybook-serif"
    text_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image"


class Project(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    name: str
    topic: str = ""
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    settings: ProjectSettings = Field(default_factory=ProjectSettings)
    current_stage: Stage = Stage.OUTLINE

    outline: Optional[Outline] = None
    manuscript: Optional[Manuscript] = None
    page_images: List[PageImage] = Field(default_factory=list)

    cover_image: Optional[PageImage] = None
    back_cover_image: Optional[PageImage] = None

    @model_validator(mode="after")
    def _artifacts_follow_pipeline_order(self) -> "Project":
        if self.manuscript is not None and self.outline is None:
            raise ValueError(f"Project {self.id}: a manuscript requires an outline")
        has_images = bool(self.page_images) or self.cover_image is not None or self.back_cover_image is not None
        if has_images and self.manuscript is None:
            raise ValueError(f"Project {self.id}: illustrations require a manuscript")
        return self

    def advance_stage(self, stage: Stage):
        """Moves the stage forward only; an earlier stage never overwrites a later one."""
        if stage.rank > self.current_stage.rank:
            self.current_stage = stage

    def touch(self):
        self.updated_at = utc_now()

    def get_page_image(self, page_number: int) -> Optional[PageImage]:
        for image in self.page_images:
            if image.page_number == page_number:
                return image
        return None

    def upsert_page_image(self, page_image: PageImage):
        images = [img for img in self.page_images if img.page_number != page_image.page_number]
        images.append(page_image)
        self.page_images = sorted(images, key=lambda img: img.page_number)


class ProjectSummary(BaseModel):
    id: str
    name: str
    created_at: str
    updated_at: str
    current_stage: Stage
    thumbnail_path: Optional[str] = None
    title: Optional[str] = None
    has_cover_image: bool = False
    has_page_images: bool = False


# --- Feedback ---

class IllustrationFeedback(BaseModel):
    cover: Optional[str] = None
    back_cover: Optional[str] = None
    pages: Dict[PositiveInt, str] = Field(default_factory=dict, description="Feedback per content page, applied in this order")


class RefinementResult(BaseModel):
    cover: Optional[PageImage] = None
    back_cover: Optional[PageImage] = None
    pages: List[PageImage] = Field(default_factory=list)
