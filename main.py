import asyncio
import json
import logging

import click
import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

from storybook.config import Config, setup_directories
from storybook.core.cache import FileCache
from storybook.core.errors import StorybookError
from storybook.core.illustrator import StoryIllustrator
from storybook.core.models import IllustrationFeedback, Project
from storybook.core.observability import Observability
from storybook.core.storage import FilesystemStorage

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
logger = logging.getLogger(__name__)


def build_components(use_mock: bool):
    """Wires storage, cache, image client and illustrator from Config."""
    setup_directories(Config.PROJECTS_PATH, Config.CACHE_PATH)
    observability = Observability(FileCache(Config.CACHE_PATH, Config.CACHE_TTL_DAYS, Config.CACHE_ENABLED))
    storage = FilesystemStorage(Config.PROJECTS_PATH)

    if use_mock:
        from storybook.core.mock_clients import MockImageClient
        image_client = MockImageClient()
    else:
        from storybook.core.ai_client import GenAIImageClient
        image_client = GenAIImageClient(observability)

    return storage, StoryIllustrator(image_client, storage, observability)


def _prepare(mock: bool):
    load_dotenv()
    use_mock = mock or Config.USE_MOCK_ADAPTERS
    if not use_mock:
        Config.validate()
    return build_components(use_mock)


@click.group()
def cli():
    """Illustrates children's picture books with Gemini."""


@cli.command()
@click.option('--host', default=None, help='Interface to bind (defaults to HOST).')
@click.option('--port', default=None, type=int, help='Port to listen on (defaults to PORT).')
@click.option('--mock', is_flag=True, help='Use the offline mock image client.')
def serve(host, port, mock):
    """Runs the HTTP API."""
    import uvicorn
    from storybook.api.app import create_app

    try:
        storage, illustrator = _prepare(mock)
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    uvicorn.run(create_app(illustrator, storage), host=host or Config.HOST, port=port or Config.PORT)


@cli.command('create-project')
@click.argument('project_file', type=click.Path(exists=True))
def create_project(project_file):
    """Stores a project (with outline and manuscript) from a JSON file."""
    with open(project_file, 'r', encoding='utf-8') as f:
        data = json.load(f)
    try:
        project = Project.model_validate(data)
    except ValidationError as e:
        logger.error(f"Invalid project file {project_file}: {e}")
        raise SystemExit(1)

    storage = FilesystemStorage(Config.PROJECTS_PATH)
    asyncio.run(storage.create_project(project))
    click.echo(f"Created project {project.id}")


@cli.command('list-projects')
def list_projects():
    """Lists stored projects, most recently updated first."""
    storage = FilesystemStorage(Config.PROJECTS_PATH)
    for summary in asyncio.run(storage.list_projects()):
        click.echo(f"{summary.id}\t{summary.current_stage.value}\t{summary.title or summary.name}")


@cli.command()
@click.argument('project_id')
@click.option('--additional-prompt', default=None, help='Extra instructions for every page.')
@click.option('--server', default=None, help='Run on a remote API (e.g. http://localhost:3001) instead of locally.')
@click.option('--mock', is_flag=True, help='Use the offline mock image client.')
def illustrate(project_id, additional_prompt, server, mock):
    """
    Generates the cover, every page and the back cover of a project.
    """
    def on_progress(current, total, message):
        click.echo(f"[{current}/{total}] {message}")

    def on_image_complete(image, image_type):
        click.echo(f"  -> {image_type.value}: {image.image_path}")

    if server:
        from storybook.api.client import ProgressCallbacks, fetch_with_progress

        async def run_remote():
            async with httpx.AsyncClient(base_url=server) as http_client:
                return await fetch_with_progress(
                    http_client,
                    "/api/generate/all-pages",
                    {"project_id": project_id, "additional_prompt": additional_prompt},
                    ProgressCallbacks(on_progress=on_progress, on_image_complete=on_image_complete),
                )

        try:
            pages = asyncio.run(run_remote())
        except (StorybookError, httpx.HTTPError) as e:
            logger.error(f"Illustration on {server} failed: {e}")
            raise SystemExit(1)
        click.echo(f"Done: {len(pages)} pages illustrated.")
        return

    try:
        _, illustrator = _prepare(mock)
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    try:
        pages = asyncio.run(illustrator.generate_all_pages(
            project_id,
            additional_prompt=additional_prompt,
            on_progress=on_progress,
            on_image_complete=on_image_complete,
        ))
    except StorybookError as e:
        logger.error(f"Illustration failed: {e}")
        raise SystemExit(1)
    click.echo(f"Done: {len(pages)} pages illustrated.")


@cli.command()
@click.argument('project_id')
@click.option('--cover', default=None, help='Feedback for the front cover.')
@click.option('--back-cover', default=None, help='Feedback for the back cover.')
@click.option('--page', 'pages', type=(click.IntRange(min=1), str), multiple=True, help='Page number and feedback, repeatable.')
@click.option('--mock', is_flag=True, help='Use the offline mock image client.')
def refine(project_id, cover, back_cover, pages, mock):
    """Regenerates illustrations from feedback (cover, then pages, then back cover)."""
    feedback = IllustrationFeedback(cover=cover, back_cover=back_cover, pages=dict(pages))
    if not (feedback.cover or feedback.back_cover or feedback.pages):
        raise click.UsageError("Give at least one of --cover, --back-cover or --page.")

    try:
        _, illustrator = _prepare(mock)
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    try:
        result = asyncio.run(illustrator.refine_all_illustrations(project_id, feedback))
    except StorybookError as e:
        logger.error(f"Refinement failed: {e}")
        raise SystemExit(1)
    refined = len(result.pages) + bool(result.cover) + bool(result.back_cover)
    click.echo(f"Refined {refined} illustration(s).")


if __name__ == '__main__':
    cli()
