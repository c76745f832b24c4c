from typing import List, Optional

from storybook.core.models import (
    Character,
    ImageType,
    ManuscriptPage,
    Outline,
    ProjectSettings,
    ReferenceImage,
    ReferenceType,
    Setting,
    TextCompositionMode,
)

CHILD_FRIENDLY_FOOTER = (
    "IMPORTANT: This is for a children's book. The illustration should be:\n"
    "- Age-appropriate and child-friendly\n"
    "- Warm, inviting, and not scary\n"
    "- Professional picture book quality\n"
    "- Cohesive with a consistent art style"
)

_PLACEMENTS = {
    "top": "at the top of the image",
    "bottom": "at the bottom of the image",
}


def art_style(settings: ProjectSettings) -> str:
    return ", ".join(settings.art_style_keywords)


def setting_block(setting: Setting) -> str:
    return (
        "Setting:\n"
        f"- Location: {setting.location}\n"
        f"- Time period: {setting.time_period}\n"
        f"- Atmosphere: {setting.atmosphere}\n"
        f"- Visual Details: {setting.visual_details}"
    )


def character_reference_block(characters: List[Character]) -> str:
    """Physical descriptions the model has to reproduce exactly on every image."""
    if not characters:
        return ""
    lines = ["CHARACTER REFERENCE (must match exactly in every illustration):"]
    for char in characters:
        lines.append(f"- {char.name} ({char.role}): {char.physical_description}")
    return "\n".join(lines)


def baked_text_block(page: ManuscriptPage, font_style: str) -> str:
    placement = _PLACEMENTS.get(page.text_placement, "integrated naturally into the scene")
    return (
        "TEXT TO INCLUDE IN THE IMAGE:\n"
        f"\"{page.text}\"\n\n"
        "Text rendering instructions:\n"
        "- Render the text as part of the illustration\n"
        f"- Font style: {font_style} (friendly, child-appropriate)\n"
        f"- Text placement: {placement}\n"
        "- Text must be clearly legible against the background\n"
        "- Add a subtle semi-transparent background behind the text if needed for readability\n\n"
        "IMPORTANT: The text is essential - it must be included and fully readable."
    )


def includes_baked_text(settings: ProjectSettings, page: ManuscriptPage) -> bool:
    return settings.text_composition_mode == TextCompositionMode.AI_BAKED and bool(page.text)


def cover_prompt(outline: Outline, settings: ProjectSettings) -> str:
    protagonist = outline.protagonist
    sections = [
        f"Create the FRONT COVER of a children's picture book for ages {settings.target_age}.",
        f"Art Style: {art_style(settings)}, suitable for a children's picture book, "
        "warm and inviting colors, professional quality illustration.",
        f"Book title: \"{outline.title}\"" + (f" - {outline.subtitle}" if outline.subtitle else ""),
        f"Cover Description:\n{outline.cover_description}",
    ]
    if protagonist:
        sections.append(character_reference_block([protagonist]))
    sections.append(setting_block(outline.setting))
    sections.append(
        "This cover defines the visual style of the whole book: every following page "
        "will reuse its palette, line work and character designs."
    )
    sections.append(CHILD_FRIENDLY_FOOTER)
    return "\n\n".join(sections)


def page_prompt(
    page: ManuscriptPage,
    outline: Outline,
    settings: ProjectSettings,
    additional_prompt: Optional[str] = None,
) -> str:
    page_characters = outline.characters_by_ids(page.characters)
    sections = [
        f"Create a children's book illustration for ages {settings.target_age}.",
        f"Art Style: {art_style(settings)}, suitable for a children's picture book, "
        "warm and inviting colors, professional quality illustration.",
        f"Scene Description:\n{page.illustration_description}",
        f"Mood: {page.mood}\nAction: {page.action}",
        setting_block(outline.setting),
    ]
    if page_characters:
        sections.append(character_reference_block(page_characters))
    if includes_baked_text(settings, page):
        sections.append(baked_text_block(page, settings.font_style))
    if additional_prompt:
        sections.append(f"Additional instructions: {additional_prompt}")
    sections.append(CHILD_FRIENDLY_FOOTER)
    return "\n\n".join(sections)


def back_cover_prompt(outline: Outline, settings: ProjectSettings) -> str:
    protagonist = outline.protagonist
    sections = [
        f"Create the BACK COVER of the same children's picture book for ages {settings.target_age}.",
        f"Art Style: {art_style(settings)}. Keep exactly the style established earlier in this conversation.",
        f"Back Cover Description:\n{outline.back_cover_description}",
        f"Blurb (leave calm space for it, do not render it as text):\n{outline.back_cover_blurb}",
    ]
    if protagonist:
        sections.append(character_reference_block([protagonist]))
    sections.append(setting_block(outline.setting))
    sections.append(CHILD_FRIENDLY_FOOTER)
    return "\n\n".join(sections)


def reference_instructions(references: List[ReferenceImage]) -> str:
    """Tells the model what each attached image is and what to copy from it."""
    if not references:
        return ""
    lines = ["REFERENCE IMAGES PROVIDED:"]
    for i, ref in enumerate(references, start=1):
        if ref.type == ReferenceType.STYLE:
            role = "style anchor"
        elif ref.type == ReferenceType.PREVIOUS_PAGE:
            role = "previous page"
        else:
            role = "character sheet"
        lines.append(f"{i}. {ref.label} ({role})")
    lines.append(
        "\nMatch these references exactly:\n"
        "- Same art style and color palette\n"
        "- Same character proportions, colors and clothing\n"
        "- Same line weight and level of detail\n"
        "- Same background treatment"
    )
    return "\n".join(lines)


def with_references(prompt: str, references: List[ReferenceImage]) -> str:
    block = reference_instructions(references)
    return f"{prompt}\n\n{block}" if block else prompt


def refinement_prompt(
    image_type: ImageType,
    original_prompt: str,
    illustration_description: str,
    page_text: Optional[str],
    feedback: str,
    characters: List[Character],
    settings: ProjectSettings,
) -> str:
    label = {
        ImageType.COVER: "FRONT COVER",
        ImageType.BACK_COVER: "BACK COVER",
        ImageType.PAGE: "PAGE ILLUSTRATION",
    }[image_type]
    sections = [
        f"REFINE THIS {label}.",
        "The attached image is the current version. Keep everything that the feedback "
        "does not ask to change.",
        f"Original prompt:\n{original_prompt}",
        f"Illustration description:\n{illustration_description}",
    ]
    if page_text:
        sections.append(f"Associated text:\n{page_text}")
    sections.append(f"USER FEEDBACK (apply this):\n{feedback}")
    block = character_reference_block(characters)
    if block:
        sections.append(block)
    sections.append(f"Art Style: {art_style(settings)}")
    return "\n\n".join(sections)
