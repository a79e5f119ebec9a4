"""
Archive unpacking for template bundles.

A bundle is a ZIP archive holding legacy Word templates and a single CSV
manifest describing them. This module splits the archive into document
entries and the manifest entry; it does not touch storage or the registry.
"""

from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass, field
from typing import Iterable, List

from .errors import InvalidArchiveError, MissingManifestError
from .utils import allowed_document_extensions, manifest_extension

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    data: bytes


@dataclass
class UnpackedArchive:
    manifest: ArchiveEntry
    documents: List[ArchiveEntry] = field(default_factory=list)


def unpack_archive(
    archive_bytes: bytes,
    document_suffixes: Iterable[str] | None = None,
    manifest_suffix: str | None = None,
) -> UnpackedArchive:
    """
    Split an archive into document entries and its manifest.

    Entries are classified by lowercased name suffix. Directory entries are
    skipped. An archive with no documents is accepted; an archive without a
    manifest is not.

    Args:
        archive_bytes: Raw ZIP bytes
        document_suffixes: Suffixes that mark document entries (default: .dot, .doc)
        manifest_suffix: Suffix that marks the manifest entry (default: .csv)

    Returns:
        UnpackedArchive with documents in archive order

    Raises:
        InvalidArchiveError: If the bytes are not a ZIP archive
        MissingManifestError: If no manifest entry is present
    """
    doc_suffixes = tuple(s.lower() for s in (document_suffixes or allowed_document_extensions()))
    csv_suffix = (manifest_suffix or manifest_extension()).lower()

    try:
        archive = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except zipfile.BadZipFile as exc:
        raise InvalidArchiveError(f"Upload is not a valid ZIP archive: {exc}") from exc

    documents: List[ArchiveEntry] = []
    manifests: List[ArchiveEntry] = []

    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            lowered = info.filename.lower()
            if lowered.endswith(csv_suffix):
                target = manifests
            elif lowered.endswith(doc_suffixes):
                target = documents
            else:
                continue
            try:
                target.append(ArchiveEntry(info.filename, archive.read(info)))
            except zipfile.BadZipFile as exc:
                raise InvalidArchiveError(f"Failed to read file: {info.filename}: {exc}") from exc

    if not manifests:
        raise MissingManifestError(f"No {csv_suffix} manifest found in ZIP archive")

    if len(manifests) > 1:
        logger.warning(
            f"Archive contains {len(manifests)} manifests; using {manifests[0].name} "
            f"and ignoring {', '.join(m.name for m in manifests[1:])}"
        )

    logger.info(f"Unpacked archive: {len(documents)} documents, manifest {manifests[0].name}")
    return UnpackedArchive(manifest=manifests[0], documents=documents)
