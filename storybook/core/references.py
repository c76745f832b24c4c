import io
import logging
from typing import List, NamedTuple, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from storybook.core.models import BackCoverTarget, CoverTarget, ReferenceImage, ReferenceType
from storybook.core.observability import Observability
from storybook.core.storage import FilesystemStorage

logger = logging.getLogger(__name__)

PREVIOUS_PAGE_WINDOW = 2


class ImageSlot(NamedTuple):
    category: str
    image_id: str


FRONT_COVER_SLOT = ImageSlot("cover", "front")
BACK_COVER_SLOT = ImageSlot("cover", "back")


def page_slot(page_number: int) -> ImageSlot:
    return ImageSlot("pages", f"page-{page_number}")


def slot_for(target) -> ImageSlot:
    if isinstance(target, CoverTarget):
        return FRONT_COVER_SLOT
    if isinstance(target, BackCoverTarget):
        return BACK_COVER_SLOT
    return page_slot(target.page_number)


def sniff_mime_type(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format, "image/png")
    except (UnidentifiedImageError, OSError):
        return "image/png"


class ReferenceBuilder:
    """
    Decides which stored images go with each generation call.

    - front cover: nothing, it is the style anchor
    - content page: front cover + the two most recent pages of the run
    - back cover: nothing, the session carries the context
    - refinement: the current image of the same slot

    A reference that cannot be loaded is left out; it never fails the call.
    """

    def __init__(self, storage: FilesystemStorage, observability: Optional[Observability] = None):
        self.storage = storage
        self.observability = observability or Observability()

    async def load(
        self, project_id: str, slot: ImageSlot, ref_type: ReferenceType, label: str
    ) -> Optional[ReferenceImage]:
        try:
            data = await self.storage.load_image(project_id, slot.category, slot.image_id)
        except OSError as e:
            logger.warning(f"Reference image {slot.category}/{slot.image_id} unavailable, skipping: {e}")
            self.observability.record_event(
                "reference_missing", project_id=project_id, slot=f"{slot.category}/{slot.image_id}"
            )
            return None

        return ReferenceImage(
            type=ref_type,
            label=label,
            data=data,
            mime_type=sniff_mime_type(data),
            source_path=str(self.storage.get_image_path(project_id, slot.category, slot.image_id)),
        )

    def for_cover(self) -> List[ReferenceImage]:
        return []

    def for_back_cover(self) -> List[ReferenceImage]:
        return []

    async def for_page(self, project_id: str, recent_pages: Sequence[int]) -> List[ReferenceImage]:
        """
        Args:
            project_id: Project being illustrated.
            recent_pages: Page numbers generated so far, oldest first. Only the
                last two are used.
        """
        candidates = [(FRONT_COVER_SLOT, ReferenceType.STYLE, "Front cover")]
        for page_number in list(recent_pages)[-PREVIOUS_PAGE_WINDOW:]:
            candidates.append((page_slot(page_number), ReferenceType.PREVIOUS_PAGE, f"Page {page_number}"))

        references = []
        for slot, ref_type, label in candidates:
            ref = await self.load(project_id, slot, ref_type, label)
            if ref is not None:
                references.append(ref)
        return references

    async def for_refinement(self, project_id: str, slot: ImageSlot) -> List[ReferenceImage]:
        ref = await self.load(project_id, slot, ReferenceType.STYLE, "Original image")
        return [ref] if ref is not None else []
