import inspect
import logging
import time
from typing import Any, Callable, List, Optional, Tuple

from storybook.core import prompts
from storybook.core.ai_client import ImageSession
from storybook.core.errors import PageNotFoundError, PrerequisiteMissingError
from storybook.core.models import (
    BackCoverTarget,
    CoverTarget,
    GenerationMetadata,
    IllustrationFeedback,
    ImageType,
    PageImage,
    PageTarget,
    Project,
    RefinementResult,
    ReferenceImage,
    Stage,
    parse_target,
)
from storybook.core.observability import Observability
from storybook.core.references import (
    BACK_COVER_SLOT,
    FRONT_COVER_SLOT,
    ImageSlot,
    ReferenceBuilder,
    page_slot,
    slot_for,
)
from storybook.core.storage import FilesystemStorage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], Any]
ImageCompleteCallback = Callable[[PageImage, ImageType], Any]


async def _notify(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _require_illustration_inputs(project: Project):
    if project.outline is None:
        raise PrerequisiteMissingError("outline", f"project {project.id}")
    if project.manuscript is None:
        raise PrerequisiteMissingError("manuscript", f"project {project.id}")


class StoryIllustrator:
    """
    Generates and refines the illustrations of a picture book.

    A batch run goes cover -> pages in ascending order -> back cover, one call
    at a time, inside one image session. Every finished image is written to
    storage and to the project before the next call starts, so a failure
    leaves everything generated so far in place.
    """

    def __init__(self, image_client, storage: FilesystemStorage, observability: Optional[Observability] = None):
        self.image_client = image_client
        self.storage = storage
        self.observability = observability or Observability()
        self.references = ReferenceBuilder(storage, self.observability)

    async def _update_project(self, project_id: str, mutate: Callable[[Project], None]) -> Project:
        # Re-read before every write so edits made between steps are not lost
        project = await self.storage.load_project(project_id)
        mutate(project)
        project.touch()
        await self.storage.save_project(project)
        return project

    async def _render(
        self,
        session: ImageSession,
        project: Project,
        slot: ImageSlot,
        prompt: str,
        references: List[ReferenceImage],
    ) -> Tuple[str, GenerationMetadata]:
        aspect_ratio = project.settings.aspect_ratio
        start = time.monotonic()
        generated = await self.image_client.generate_with_references(
            session, prompt, references, aspect_ratio=aspect_ratio
        )
        elapsed_ms = int((time.monotonic() - start) * 1000)

        image_path = await self.storage.save_image(project.id, slot.category, slot.image_id, generated.data)
        metadata = GenerationMetadata(
            session_id=session.id,
            prompt=prompt,
            reference_images=[ref.info() for ref in references],
            model_used=generated.model,
            generation_time_ms=elapsed_ms,
            aspect_ratio=aspect_ratio,
            message_index=self.image_client.get_message_index(session),
        )
        self.observability.record_event(
            "image_generated",
            project_id=project.id,
            slot=f"{slot.category}/{slot.image_id}",
            references=len(references),
            time_ms=elapsed_ms,
        )
        return image_path, metadata

    @staticmethod
    def _page_image(
        image_type: ImageType,
        image_path: str,
        metadata: GenerationMetadata,
        page_number: Optional[int] = None,
        has_text_baked: bool = False,
        baked_text: Optional[str] = None,
    ) -> PageImage:
        return PageImage(
            image_type=image_type,
            page_number=page_number,
            image_path=image_path,
            has_text_baked=has_text_baked,
            baked_text=baked_text,
            prompt=metadata.prompt,
            generated_at=metadata.generated_at,
            model_used=metadata.model_used,
            aspect_ratio=metadata.aspect_ratio,
            generation_metadata=metadata,
        )

    async def _generate_content_page(
        self,
        session: ImageSession,
        project: Project,
        page_number: int,
        recent_pages: List[int],
        additional_prompt: Optional[str] = None,
    ) -> PageImage:
        page = project.manuscript.get_page(page_number)
        if page is None:
            raise PageNotFoundError(page_number)

        references = await self.references.for_page(project.id, recent_pages)
        prompt = prompts.with_references(
            prompts.page_prompt(page, project.outline, project.settings, additional_prompt),
            references,
        )
        logger.info(f"Generating page {page_number} with {len(references)} reference(s)")
        image_path, metadata = await self._render(session, project, page_slot(page_number), prompt, references)

        baked = prompts.includes_baked_text(project.settings, page)
        page_image = self._page_image(
            ImageType.PAGE,
            image_path,
            metadata,
            page_number=page_number,
            has_text_baked=baked,
            baked_text=page.text if baked else None,
        )

        def apply(p: Project):
            p.upsert_page_image(page_image)
            p.advance_stage(Stage.ILLUSTRATIONS)

        await self._update_project(project.id, apply)
        return page_image

    async def generate_page(self, project_id: str, page_number: int, additional_prompt: Optional[str] = None) -> PageImage:
        """Generates (or regenerates) one content page, replacing any existing image for it."""
        project = await self.storage.load_project(project_id)
        _require_illustration_inputs(project)
        if project.manuscript.get_page(page_number) is None:
            raise PageNotFoundError(page_number)

        preceding = sorted(
            img.page_number for img in project.page_images if img.page_number < page_number
        )
        session = self.image_client.create_session(project_id)
        try:
            return await self._generate_content_page(session, project, page_number, preceding, additional_prompt)
        finally:
            self.image_client.close_session(session)

    async def generate_all_pages(
        self,
        project_id: str,
        additional_prompt: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_image_complete: Optional[ImageCompleteCallback] = None,
    ) -> List[PageImage]:
        """
        Runs the full illustration batch for a project.

        Args:
            project_id: Project with an outline and a manuscript.
            additional_prompt: Extra instructions appended to every page prompt.
            on_progress: Called as (current, total, message) after every image.
            on_image_complete: Called as (image, image_type) after every image.

        Returns:
            The content page images in page order. Cover and back cover are
            reported through on_image_complete and stored on the project.
        """
        project = await self.storage.load_project(project_id)
        _require_illustration_inputs(project)

        outline = project.outline
        pages = project.manuscript.pages
        total = len(pages) + 2
        step = 0

        logger.info(f"Starting batch generation for {project_id} ({total} images)")
        self.observability.record_event("batch_started", project_id=project_id, total=total)

        session = self.image_client.create_session(project_id)
        try:
            # Front cover: the style anchor for everything after it
            cover_refs = self.references.for_cover()
            prompt = prompts.cover_prompt(outline, project.settings)
            image_path, metadata = await self._render(session, project, FRONT_COVER_SLOT, prompt, cover_refs)
            cover = self._page_image(ImageType.COVER, image_path, metadata)

            def set_cover(p: Project):
                p.cover_image = cover
                p.advance_stage(Stage.ILLUSTRATIONS)

            await self._update_project(project_id, set_cover)
            step += 1
            await _notify(on_progress, step, total, "Generated front cover")
            await _notify(on_image_complete, cover, ImageType.COVER)

            # Content pages, strictly in order: each one references the previous two
            page_images: List[PageImage] = []
            recent_pages: List[int] = []
            for page in pages:
                page_image = await self._generate_content_page(
                    session, project, page.page_number, recent_pages, additional_prompt
                )
                recent_pages.append(page.page_number)
                page_images.append(page_image)
                step += 1
                await _notify(on_progress, step, total, f"Generated page {page.page_number}")
                await _notify(on_image_complete, page_image, ImageType.PAGE)

            # Back cover relies on the session context only
            back_refs = self.references.for_back_cover()
            prompt = prompts.back_cover_prompt(outline, project.settings)
            image_path, metadata = await self._render(session, project, BACK_COVER_SLOT, prompt, back_refs)
            back_cover = self._page_image(ImageType.BACK_COVER, image_path, metadata)

            def set_back_cover(p: Project):
                p.back_cover_image = back_cover
                p.advance_stage(Stage.ILLUSTRATIONS)

            await self._update_project(project_id, set_back_cover)
            step += 1
            await _notify(on_progress, step, total, "Generated back cover")
            await _notify(on_image_complete, back_cover, ImageType.BACK_COVER)
        except Exception as e:
            logger.error(f"Batch generation for {project_id} failed after {step}/{total} images: {e}")
            self.observability.record_event("batch_failed", project_id=project_id, completed=step, error=str(e))
            raise
        finally:
            self.image_client.close_session(session)

        logger.info(f"Batch complete for {project_id} ({total} images generated)")
        self.observability.record_event("batch_complete", project_id=project_id, total=total)
        return page_images

    async def refine_illustration(self, project_id: str, target, feedback: str) -> PageImage:
        """
        Regenerates one illustration from user feedback, using the current image
        as the only reference. The new image replaces the old one in place.
        """
        target = parse_target(target)
        project = await self.storage.load_project(project_id)
        outline = project.outline

        if isinstance(target, CoverTarget):
            if outline is None:
                raise PrerequisiteMissingError("outline", "needed to refine the front cover")
            original = project.cover_image
            image_type = ImageType.COVER
            description = outline.cover_description
            text = outline.title
            characters = [outline.protagonist] if outline.protagonist else []
        elif isinstance(target, BackCoverTarget):
            if outline is None:
                raise PrerequisiteMissingError("outline", "needed to refine the back cover")
            original = project.back_cover_image
            image_type = ImageType.BACK_COVER
            description = outline.back_cover_description
            text = outline.back_cover_blurb
            characters = [outline.protagonist] if outline.protagonist else []
        else:
            if project.manuscript is None:
                raise PrerequisiteMissingError("manuscript", f"needed to refine {target.describe()}")
            page = project.manuscript.get_page(target.page_number)
            if page is None:
                raise PageNotFoundError(target.page_number)
            original = project.get_page_image(target.page_number)
            image_type = ImageType.PAGE
            description = page.illustration_description
            text = page.text
            characters = outline.characters_by_ids(page.characters) if outline else []

        if original is None:
            raise PrerequisiteMissingError(
                f"original image for {target.describe()}", "refinement requires a prior generation"
            )

        logger.info(f"Refining {target.describe()} of {project_id}")
        prompt = prompts.refinement_prompt(
            image_type, original.prompt, description, text, feedback, characters, project.settings
        )
        slot = slot_for(target)

        session = self.image_client.create_session(project_id)
        try:
            references = await self.references.for_refinement(project_id, slot)
            image_path, metadata = await self._render(session, project, slot, prompt, references)
            refined = PageImage(
                image_type=original.image_type,
                page_number=original.page_number,
                image_path=image_path,
                has_text_baked=original.has_text_baked,
                baked_text=original.baked_text,
                prompt=prompt,
                generated_at=metadata.generated_at,
                model_used=metadata.model_used,
                aspect_ratio=metadata.aspect_ratio,
                generation_metadata=metadata,
            )

            def splice(p: Project):
                if isinstance(target, CoverTarget):
                    p.cover_image = refined
                elif isinstance(target, BackCoverTarget):
                    p.back_cover_image = refined
                else:
                    p.upsert_page_image(refined)

            await self._update_project(project_id, splice)
        finally:
            self.image_client.close_session(session)

        self.observability.record_event("illustration_refined", project_id=project_id, target=target.describe())
        return refined

    async def refine_all_illustrations(self, project_id: str, feedback: IllustrationFeedback) -> RefinementResult:
        """
        Applies feedback in generation order: cover, pages, back cover.

        Every item is an independent refine_illustration call. A failure stops
        the loop; items refined before it stay refined.
        """
        result = RefinementResult()
        if feedback.cover:
            result.cover = await self.refine_illustration(project_id, CoverTarget(), feedback.cover)
        for page_number, page_feedback in feedback.pages.items():
            refined = await self.refine_illustration(project_id, PageTarget(page_number=page_number), page_feedback)
            result.pages.append(refined)
        if feedback.back_cover:
            result.back_cover = await self.refine_illustration(project_id, BackCoverTarget(), feedback.back_cover)
        return result
