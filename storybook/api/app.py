import asyncio
import logging
from typing import Any, Optional, Set

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from storybook.api.streaming import ProgressStream
from storybook.core.errors import (
    GenerationInProgressError,
    PageNotFoundError,
    PrerequisiteMissingError,
    ProjectNotFoundError,
)
from storybook.core.illustrator import StoryIllustrator
from storybook.core.models import IllustrationFeedback, parse_target
from storybook.core.references import sniff_mime_type
from storybook.core.storage import FilesystemStorage

logger = logging.getLogger(__name__)


class GenerateAllPagesRequest(BaseModel):
    project_id: str
    additional_prompt: Optional[str] = None


class GeneratePageRequest(BaseModel):
    project_id: str
    additional_prompt: Optional[str] = None


class RefineIllustrationRequest(BaseModel):
    project_id: str
    target: Any = Field(description="Tagged target ({'kind': 'page', 'page_number': 2}) or legacy page number")
    feedback: str = Field(min_length=1)


class RefineAllIllustrationsRequest(BaseModel):
    project_id: str
    feedback: IllustrationFeedback


class GenerationRegistry:
    """
    Tracks projects with a batch run in flight. A second batch for the same
    project is rejected instead of racing on the project file.
    """

    def __init__(self):
        self._active: Set[str] = set()

    def acquire(self, project_id: str):
        if project_id in self._active:
            raise GenerationInProgressError(project_id)
        self._active.add(project_id)

    def release(self, project_id: str):
        self._active.discard(project_id)

    def is_active(self, project_id: str) -> bool:
        return project_id in self._active


router = APIRouter(prefix="/api")


def _illustrator(request: Request) -> StoryIllustrator:
    return request.app.state.illustrator


def _storage(request: Request) -> FilesystemStorage:
    return request.app.state.storage


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/projects")
async def list_projects(request: Request):
    summaries = await _storage(request).list_projects()
    return [s.model_dump(mode="json") for s in summaries]


@router.get("/projects/{project_id}")
async def get_project(project_id: str, request: Request):
    project = await _storage(request).load_project(project_id)
    return project.model_dump(mode="json")


@router.get("/images/{project_id}/{category}/{image_id}")
async def get_image(project_id: str, category: str, image_id: str, request: Request):
    """Serves a stored image, so clients can show each one as soon as it is reported."""
    if ".." in project_id or ".." in image_id:
        raise HTTPException(status_code=404, detail="Image not found")
    # image_path in events ends with the file name; accept it as the id as well
    image_id = image_id.removesuffix(".png")
    try:
        data = await _storage(request).load_image(project_id, category, image_id)
    except (FileNotFoundError, ValueError) as e:
        logger.warning(f"Image {project_id}/{category}/{image_id} not served: {e}")
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(content=data, media_type=sniff_mime_type(data))


@router.post("/generate/all-pages")
async def generate_all_pages(body: GenerateAllPagesRequest, request: Request):
    illustrator = _illustrator(request)
    registry: GenerationRegistry = request.app.state.registry
    registry.acquire(body.project_id)

    if request.headers.get("accept") != "text/event-stream":
        try:
            page_images = await illustrator.generate_all_pages(
                body.project_id,
                additional_prompt=body.additional_prompt,
                on_progress=lambda current, total, message: logger.info(f"[{current}/{total}] {message}"),
            )
        finally:
            registry.release(body.project_id)
        return [img.model_dump(mode="json") for img in page_images]

    stream = ProgressStream()

    async def run():
        try:
            await stream.run(illustrator.generate_all_pages(
                body.project_id,
                additional_prompt=body.additional_prompt,
                on_progress=stream.on_progress,
                on_image_complete=stream.on_image_complete,
            ))
        finally:
            registry.release(body.project_id)

    # The run is its own task: a client that disconnects stops reading,
    # the step in flight still finishes and is persisted.
    task = asyncio.create_task(run())
    tasks: Set[asyncio.Task] = request.app.state.tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    return StreamingResponse(
        stream.sse(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/generate/page/{page_number}")
async def generate_page(page_number: int, body: GeneratePageRequest, request: Request):
    page_image = await _illustrator(request).generate_page(
        body.project_id, page_number, additional_prompt=body.additional_prompt
    )
    return page_image.model_dump(mode="json")


@router.post("/generate/illustration/refine")
async def refine_illustration(body: RefineIllustrationRequest, request: Request):
    try:
        target = parse_target(body.target)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid target: {e}")
    page_image = await _illustrator(request).refine_illustration(body.project_id, target, body.feedback)
    return page_image.model_dump(mode="json")


@router.post("/generate/illustrations/refine")
async def refine_illustrations(body: RefineAllIllustrationsRequest, request: Request):
    result = await _illustrator(request).refine_all_illustrations(body.project_id, body.feedback)
    return result.model_dump(mode="json")


def _error_response(status_code: int, message: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "details": str(exc)})


def create_app(illustrator: StoryIllustrator, storage: FilesystemStorage) -> FastAPI:
    app = FastAPI(title="Storybook Illustrator API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.illustrator = illustrator
    app.state.storage = storage
    app.state.registry = GenerationRegistry()
    app.state.tasks = set()

    @app.exception_handler(PrerequisiteMissingError)
    async def prerequisite_missing(request: Request, exc: PrerequisiteMissingError):
        return _error_response(400, "Prerequisite missing", exc)

    @app.exception_handler(PageNotFoundError)
    async def page_not_found(request: Request, exc: PageNotFoundError):
        return _error_response(400, "Page not found", exc)

    @app.exception_handler(ProjectNotFoundError)
    async def project_not_found(request: Request, exc: ProjectNotFoundError):
        return _error_response(404, "Project not found", exc)

    @app.exception_handler(GenerationInProgressError)
    async def generation_in_progress(request: Request, exc: GenerationInProgressError):
        return _error_response(409, "Generation already in progress", exc)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(f"Error handling {request.method} {request.url.path}: {exc}")
        return _error_response(500, "Request failed", exc)

    app.include_router(router)
    return app
