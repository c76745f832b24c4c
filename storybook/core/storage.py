import asyncio
import json
import logging
import os
import shutil
import weakref
from pathlib import Path
from typing import List

from pydantic import ValidationError

from storybook.core.errors import ProjectNotFoundError
from storybook.core.models import Project, ProjectSummary

logger = logging.getLogger(__name__)

IMAGE_CATEGORIES = ("pages", "cover", "composed", "references")


class FilesystemStorage:
    """
    Project store on the local filesystem.

    Layout per project:
        <root>/<id>/project.json
        <root>/<id>/images/<category>/<image_id>.png
        <root>/<id>/exports/<export_id>.pdf

    Writes to the same project file are serialized with a per-project lock.
    Reads are not locked; a project is always read back as the last complete
    write because files are replaced atomically.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def project_path(self, project_id: str) -> Path:
        return self.base_path / project_id

    def project_file(self, project_id: str) -> Path:
        return self.project_path(project_id) / "project.json"

    def get_image_path(self, project_id: str, category: str, image_id: str) -> Path:
        if category not in IMAGE_CATEGORIES:
            raise ValueError(f"Unknown image category: {category}")
        return self.project_path(project_id) / "images" / category / f"{image_id}.png"

    def export_path(self, project_id: str, export_id: str) -> Path:
        return self.project_path(project_id) / "exports" / f"{export_id}.pdf"

    # --- sync helpers, run in a worker thread ---

    def _write_json(self, path: Path, data: dict):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=4)
        os.replace(tmp_path, path)

    def _read_project(self, project_id: str) -> Project:
        path = self.project_file(project_id)
        if not path.exists():
            raise ProjectNotFoundError(project_id)
        with open(path, "r", encoding="utf-8") as f:
            return Project.model_validate(json.load(f))

    def _write_bytes(self, path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    # --- projects ---

    async def create_project(self, project: Project):
        project_dir = self.project_path(project.id)
        for category in IMAGE_CATEGORIES:
            (project_dir / "images" / category).mkdir(parents=True, exist_ok=True)
        (project_dir / "exports").mkdir(parents=True, exist_ok=True)
        await self.save_project(project)
        logger.info(f"Created project {project.id}")

    async def load_project(self, project_id: str) -> Project:
        project = await asyncio.to_thread(self._read_project, project_id)
        logger.debug(f"Loaded project: {project_id}")
        return project

    async def save_project(self, project: Project):
        data = project.model_dump(mode="json")
        async with self._lock(project.id):
            await asyncio.to_thread(self._write_json, self.project_file(project.id), data)
        logger.debug(f"Saved project: {project.id}")

    async def delete_project(self, project_id: str):
        project_dir = self.project_path(project_id)
        async with self._lock(project_id):
            if project_dir.exists():
                await asyncio.to_thread(shutil.rmtree, project_dir)
        logger.info(f"Deleted project {project_id}")

    async def project_exists(self, project_id: str) -> bool:
        return self.project_file(project_id).exists()

    async def list_projects(self) -> List[ProjectSummary]:
        summaries = []
        entries = await asyncio.to_thread(lambda: sorted(self.base_path.iterdir()))
        for entry in entries:
            if not entry.is_dir():
                continue
            try:
                project = await self.load_project(entry.name)
            except (ProjectNotFoundError, ValidationError, ValueError) as e:
                logger.warning(f"Skipping invalid project directory {entry.name}: {e}")
                continue

            thumbnail = None
            if project.cover_image:
                thumbnail = project.cover_image.image_path
            elif project.page_images:
                thumbnail = project.page_images[0].image_path

            summaries.append(ProjectSummary(
                id=project.id,
                name=project.name,
                created_at=project.created_at,
                updated_at=project.updated_at,
                current_stage=project.current_stage,
                thumbnail_path=thumbnail,
                title=project.outline.title if project.outline else None,
                has_cover_image=project.cover_image is not None,
                has_page_images=bool(project.page_images),
            ))
        # ISO timestamps sort chronologically
        return sorted(summaries, key=lambda s: s.updated_at, reverse=True)

    # --- images ---

    async def save_image(self, project_id: str, category: str, image_id: str, data: bytes) -> str:
        path = self.get_image_path(project_id, category, image_id)
        await asyncio.to_thread(self._write_bytes, path, data)
        logger.debug(f"Saved image: {category}/{image_id}")
        return str(path)

    async def load_image(self, project_id: str, category: str, image_id: str) -> bytes:
        path = self.get_image_path(project_id, category, image_id)
        return await asyncio.to_thread(path.read_bytes)

    async def delete_image(self, project_id: str, category: str, image_id: str):
        path = self.get_image_path(project_id, category, image_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    # --- exports ---

    async def save_export(self, project_id: str, export_id: str, data: bytes) -> str:
        path = self.export_path(project_id, export_id)
        await asyncio.to_thread(self._write_bytes, path, data)
        return str(path)

    async def load_export(self, project_id: str, export_id: str) -> bytes:
        return await asyncio.to_thread(self.export_path(project_id, export_id).read_bytes)
