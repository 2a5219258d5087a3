"""
Artifact Layer.

This package is responsible for everything between a source URL and an
unpacked candidate tree: streaming the download, verifying the artifact and
safely extracting it.
"""

from .downloader import Downloader
from .extractor import ExtractionResult, extract_archive
from .integrity import ArtifactVerifier

__all__ = ["ArtifactVerifier", "Downloader", "ExtractionResult", "extract_archive"]
