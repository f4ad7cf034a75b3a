"""Server artifact resolution and transfer."""

from .backends import (
    ArtifactBackend,
    ArtifactResolver,
    BuildListing,
    FabricBackend,
    ForgeBackend,
    PaperBackend,
    VanillaBackend,
    parse_core_type,
)
from .downloader import Downloader
from .forge import ForgeLaunch, install_forge_server
from .http import JsonClient
from .models import ArtifactSource, CancellationToken, Checksum, CoreType, DownloadTask, ProgressSnapshot
from .progress import ProgressReporter

__all__ = [
    "ArtifactBackend",
    "ArtifactResolver",
    "ArtifactSource",
    "BuildListing",
    "CancellationToken",
    "Checksum",
    "CoreType",
    "DownloadTask",
    "Downloader",
    "FabricBackend",
    "ForgeBackend",
    "ForgeLaunch",
    "install_forge_server",
    "JsonClient",
    "PaperBackend",
    "parse_core_type",
    "ProgressReporter",
    "ProgressSnapshot",
    "VanillaBackend",
]
