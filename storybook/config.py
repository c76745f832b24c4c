import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")

    # Models
    TEXT_MODEL_NAME = os.getenv("TEXT_MODEL_NAME", "gemini-2.5-flash")
    IMAGE_MODEL_NAME = os.getenv("IMAGE_MODEL_NAME", "gemini-2.5-flash-image")

    # Storage
    PROJECTS_PATH = Path(os.getenv("PROJECTS_PATH", "projects"))

    # Cache for provider responses
    CACHE_PATH = Path(os.getenv("CACHE_PATH", ".cache"))
    CACHE_ENABLED = _env_flag("CACHE_ENABLED", "true")
    CACHE_TTL_DAYS = int(os.getenv("CACHE_TTL_DAYS", "7"))

    # HTTP server
    HOST = os.getenv("HOST", "127.0.0.1")
    PORT = int(os.getenv("PORT", "3001"))

    # Offline development without provider keys
    USE_MOCK_ADAPTERS = _env_flag("USE_MOCK_ADAPTERS")

    @staticmethod
    def validate():
        if Config.USE_MOCK_ADAPTERS:
            return
        if not Config.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY environment variable is not set.")


# Ensure the storage directory structure exists
def setup_directories(projects_path: Path, cache_path: Path = None):
    dirs = [projects_path]
    if cache_path is not None:
        dirs += [cache_path / "text", cache_path / "images"]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
