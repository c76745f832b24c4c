from .ai_client import GenAIImageClient, GenAITextClient, ImageSession
from .illustrator import StoryIllustrator
from .observability import Observability
from .references import ReferenceBuilder
from .storage import FilesystemStorage
