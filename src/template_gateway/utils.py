"""
Utility functions for filenames and storage keys.

This module provides helper functions for:
- Splitting and rewriting file extensions
- Deriving converted-document and manifest names
- The default document and manifest extensions for bundles
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Iterable


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Directory components are preserved in the stem so that archive-relative
    names keep their folders.

    Args:
        filename: The filename to split (can include path)

    Returns:
        A tuple of (stem, extension) where extension includes the dot

    Example:
        >>> split_extension("document.dot")
        ("document", ".dot")
        >>> split_extension("letters/intro.v2.dot")
        ("letters/intro.v2", ".dot")
    """
    path = PurePosixPath(filename)
    suffix = path.suffix
    stem = filename[: -len(suffix)] if suffix else filename
    return stem, suffix


def converted_filename(docid: str, extension: str = ".docx") -> str:
    """
    Storage key of the converted document for a docid.

    Example:
        >>> converted_filename("doc1.dot")
        "doc1.docx"
    """
    stem, _ = split_extension(docid)
    return f"{stem}{extension}"


def manifest_filename_for_archive(archive_name: str, manifest_suffix: str = ".csv") -> str:
    """Name the manifest after its archive: ``bundle.zip`` becomes ``bundle.csv``."""
    stem, suffix = split_extension(archive_name)
    if suffix.lower() != ".zip":
        stem = archive_name
    return f"{stem}{manifest_suffix}"


def allowed_document_extensions() -> Iterable[str]:
    """
    Get the list of legacy document extensions accepted in bundles.

    Returns:
        An iterable of extensions (Word 97-2003 templates and documents)
    """
    return [".dot", ".doc"]


def manifest_extension() -> str:
    return ".csv"
