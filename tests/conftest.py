
import asyncio
import pytest
import sys
import os

# Add project root to sys.path so we can import storybook
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from storybook.core.illustrator import StoryIllustrator
from storybook.core.mock_clients import MockImageClient
from storybook.core.models import (
    Character,
    Manuscript,
    ManuscriptPage,
    Outline,
    PlotPoint,
    Project,
    ProjectSettings,
    Setting,
    Stage,
)
from storybook.core.observability import Observability
from storybook.core.storage import FilesystemStorage


@pytest.fixture
def mock_genai_client(mocker):
    """Fixture to mock the Google GenAI Client."""
    mock_client = mocker.patch('google.genai.Client')
    return mock_client


class FailingImageClient(MockImageClient):
    """Mock client that raises on the n-th generation call (1-based)."""

    def __init__(self, fail_on_call: int, **kwargs):
        super().__init__(**kwargs)
        self.fail_on_call = fail_on_call

    async def generate_with_references(self, session, prompt, references=None, aspect_ratio="3:4"):
        if len(self.calls) + 1 == self.fail_on_call:
            self.calls.append({"session_id": session.id, "prompt": prompt, "references": references or []})
            raise RuntimeError("Provider unavailable")
        return await super().generate_with_references(session, prompt, references, aspect_ratio)


def make_outline() -> Outline:
    return Outline(
        title="Luna and the Lost Star",
        synopsis="A little rabbit helps a fallen star find its way home.",
        theme="Kindness",
        characters=[
            Character(
                id="char-luna",
                name="Luna",
                role="protagonist",
                description="A curious little rabbit",
                physical_description="small white rabbit, floppy ears, blue scarf",
            ),
            Character(
                id="char-owl",
                name="Oliver",
                role="supporting",
                description="A wise old owl",
                physical_description="brown owl with round glasses",
            ),
        ],
        setting=Setting(
            location="Whispering Woods",
            time_period="Timeless",
            atmosphere="Cozy and magical",
            visual_details="Tall pines, fireflies, soft moonlight",
        ),
        plot_points=[
            PlotPoint(id="pp-1", order=1, title="The fall", description="A star falls", characters=["char-luna"]),
        ],
        cover_description="Luna holding a glowing star under the moon",
        back_cover_description="The star back in the sky, Luna waving",
        back_cover_blurb="Can one small rabbit bring a star home?",
    )


def make_manuscript(page_count: int) -> Manuscript:
    return Manuscript(pages=[
        ManuscriptPage(
            page_number=n,
            text=f"Text of page {n}.",
            illustration_description=f"Scene {n} in the woods",
            characters=["char-luna"] if n % 2 else ["char-luna", "char-owl"],
            mood="wonder",
            action=f"Luna does thing {n}",
        )
        for n in range(1, page_count + 1)
    ])


@pytest.fixture
def storage(tmp_path):
    return FilesystemStorage(tmp_path / "projects")


@pytest.fixture
def observability():
    return Observability()


def build_project(page_count: int = 3, project_id: str = "proj-1", **settings) -> Project:
    return Project(
        id=project_id,
        name="Luna",
        topic="a rabbit and a star",
        settings=ProjectSettings(**settings),
        current_stage=Stage.MANUSCRIPT,
        outline=make_outline(),
        manuscript=make_manuscript(page_count),
    )


@pytest.fixture
def make_project(storage):
    """Creates and stores a project with an outline and a manuscript of the given size."""
    async def _make(page_count: int = 3, project_id: str = "proj-1", **settings) -> Project:
        project = build_project(page_count, project_id, **settings)
        await storage.create_project(project)
        return project
    return _make


@pytest.fixture
def make_project_sync(storage):
    """Same as make_project, for tests that drive the app through a sync client."""
    def _make(page_count: int = 3, project_id: str = "proj-1", **settings) -> Project:
        project = build_project(page_count, project_id, **settings)
        asyncio.run(storage.create_project(project))
        return project
    return _make


@pytest.fixture
def image_client():
    return MockImageClient()


@pytest.fixture
def illustrator(image_client, storage, observability):
    return StoryIllustrator(image_client, storage, observability)


@pytest.fixture
def failing_image_client():
    """Factory for a mock image client that raises on the given call number."""
    return FailingImageClient


@pytest.fixture
def outline():
    return make_outline()


@pytest.fixture
def manuscript():
    return make_manuscript(3)
