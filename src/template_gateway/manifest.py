"""
Manifest parsing.

The manifest is a CSV file with one row per document template. Two header
conventions are in circulation: snake_case keys (``docid``, ``system_name``)
and the human-readable headers exported from spreadsheets (``DocID``,
``System Name``). Each logical field lists its accepted headers in order and
the first non-empty value wins.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Dict, Iterator, Mapping, Optional, Tuple

from .errors import ManifestParseError
from .models import RegistryEntry

logger = logging.getLogger(__name__)

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "template_type": ("template_type", "Template Type"),
    "system_name": ("system_name", "System Name"),
    "name": ("name", "Name"),
    "categories": ("categories", "Categories"),
    "data_context": ("data_context", "Data Context"),
    "participant_role": ("participant_role", "Participant Role"),
    "output_title": ("output_title", "Output Title"),
    "output_file_name": ("output_file_name", "Output File Name"),
    "document_source": ("document_source", "Document Source"),
    "docid": ("docid", "DocID"),
}

REQUIRED_FIELDS = ("docid", "name")


def resolve_field(row: Mapping[str, Optional[str]], field: str) -> Optional[str]:
    for header in FIELD_ALIASES[field]:
        value = row.get(header)
        if value is not None and value.strip():
            return value.strip()
    return None


def normalize_row(row: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    return {field: resolve_field(row, field) for field in FIELD_ALIASES}


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ManifestParseError(f"Manifest is not valid UTF-8: {exc}") from exc


def parse_manifest(data: bytes, batch_id: Optional[int] = None) -> Iterator[RegistryEntry]:
    """
    Lazily parse manifest rows into registry entries.

    Rows missing a docid or name are skipped. The returned iterator is single
    pass; parse again to re-read the manifest.

    Args:
        data: Raw manifest bytes
        batch_id: Batch to tag every accepted row with

    Yields:
        RegistryEntry with empty derived fields

    Raises:
        ManifestParseError: If the bytes cannot be decoded or the CSV is malformed
    """
    text = _decode(data)
    reader = csv.DictReader(io.StringIO(text, newline=""), strict=True)

    try:
        for row in reader:
            fields = normalize_row(row)
            missing = [name for name in REQUIRED_FIELDS if not fields[name]]
            if missing:
                logger.debug(f"Skipping manifest row at line {reader.line_num}: missing {', '.join(missing)}")
                continue
            yield RegistryEntry(**fields, batch_id=batch_id)
    except csv.Error as exc:
        raise ManifestParseError(f"Malformed manifest near line {reader.line_num}: {exc}") from exc
