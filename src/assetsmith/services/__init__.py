"""Remote service clients used by the pipeline stages."""

from assetsmith.services.base import RemoteTask, RemoteTaskClient, TaskStatus
from assetsmith.services.images import ImageGenerationService, build_prompt
from assetsmith.services.meshy import MeshOptions, MeshyClient, extract_texture_urls

__all__ = [
    "ImageGenerationService",
    "MeshOptions",
    "MeshyClient",
    "RemoteTask",
    "RemoteTaskClient",
    "TaskStatus",
    "build_prompt",
    "extract_texture_urls",
]
