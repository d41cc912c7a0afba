"""External integration client implementations."""

from subsync.infrastructure.integrations.eagle_client import EagleLibraryClient
from subsync.infrastructure.integrations.ytdlp_client import YtDlpFetchTool

__all__ = [
    "EagleLibraryClient",
    "YtDlpFetchTool",
]
