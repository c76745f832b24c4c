
from storybook.core import prompts
from storybook.core.models import (
    ImageType,
    ManuscriptPage,
    ProjectSettings,
    ReferenceImage,
    ReferenceType,
    TextCompositionMode,
)


def make_page(**kwargs):
    defaults = dict(
        page_number=1,
        text="Luna looked up at the sky.",
        text_placement="bottom",
        illustration_description="Luna on a hill at night",
        characters=["char-owl"],
        mood="calm",
        action="looking up",
    )
    defaults.update(kwargs)
    return ManuscriptPage(**defaults)


class TestPrompts:
    def test_cover_prompt(self, outline):
        prompt = prompts.cover_prompt(outline, ProjectSettings())

        assert "FRONT COVER" in prompt
        assert "Luna and the Lost Star" in prompt
        assert outline.cover_description in prompt
        assert "small white rabbit, floppy ears, blue scarf" in prompt
        assert "Whispering Woods" in prompt
        assert "watercolor, soft, children book illustration" in prompt

    def test_page_prompt_uses_page_characters(self, outline):
        prompt = prompts.page_prompt(make_page(), outline, ProjectSettings())

        assert "Luna on a hill at night" in prompt
        assert "Oliver (supporting): brown owl with round glasses" in prompt
        assert "floppy ears" not in prompt

    def test_page_prompt_bakes_text(self, outline):
        prompt = prompts.page_prompt(make_page(), outline, ProjectSettings())

        assert "TEXT TO INCLUDE IN THE IMAGE" in prompt
        assert "\"Luna looked up at the sky.\"" in prompt
        assert "at the bottom of the image" in prompt

    def test_page_prompt_without_baked_text(self, outline):
        settings = ProjectSettings(text_composition_mode=TextCompositionMode.MANUAL)
        prompt = prompts.page_prompt(make_page(), outline, settings)
        assert "TEXT TO INCLUDE" not in prompt

        prompt = prompts.page_prompt(make_page(text=None), outline, ProjectSettings())
        assert "TEXT TO INCLUDE" not in prompt

    def test_additional_prompt(self, outline):
        prompt = prompts.page_prompt(make_page(), outline, ProjectSettings(), additional_prompt="more stars")
        assert "Additional instructions: more stars" in prompt

    def test_back_cover_prompt(self, outline):
        prompt = prompts.back_cover_prompt(outline, ProjectSettings())

        assert "BACK COVER" in prompt
        assert outline.back_cover_description in prompt
        assert outline.back_cover_blurb in prompt

    def test_reference_instructions(self):
        refs = [
            ReferenceImage(type=ReferenceType.STYLE, label="Front cover", data=b""),
            ReferenceImage(type=ReferenceType.PREVIOUS_PAGE, label="Page 1", data=b""),
        ]
        block = prompts.reference_instructions(refs)

        assert block.startswith("REFERENCE IMAGES PROVIDED:")
        assert "1. Front cover (style anchor)" in block
        assert "2. Page 1 (previous page)" in block

    def test_with_references_without_references(self):
        assert prompts.with_references("base", []) == "base"

    def test_refinement_prompt(self, outline):
        prompt = prompts.refinement_prompt(
            ImageType.PAGE,
            original_prompt="old prompt",
            illustration_description="Luna on a hill",
            page_text="Luna looked up.",
            feedback="make the sky darker",
            characters=outline.characters,
            settings=ProjectSettings(),
        )

        assert prompt.startswith("REFINE THIS PAGE ILLUSTRATION.")
        assert "Original prompt:\nold prompt" in prompt
        assert "Associated text:\nLuna looked up." in prompt
        assert "USER FEEDBACK (apply this):\nmake the sky darker" in prompt
        assert "CHARACTER REFERENCE" in prompt

    def test_refinement_prompt_cover_without_text(self):
        prompt = prompts.refinement_prompt(
            ImageType.BACK_COVER, "p", "d", None, "brighter", [], ProjectSettings()
        )
        assert prompt.startswith("REFINE THIS BACK COVER.")
        assert "Associated text" not in prompt
        assert "CHARACTER REFERENCE" not in prompt
