"""
In-memory patching of DOCX containers.

The Template Platform identifies a deployed template by a custom document
property stored in ``docProps/custom.xml``. This module adds that property to
a converted document, registering the custom-properties part in
``[Content_Types].xml`` and ``_rels/.rels`` when the document did not carry
one before.

All edits are computed against an in-memory copy of the container and
written out together; every untouched entry is copied byte for byte with its
original compression settings.
"""

from __future__ import annotations

import io
import re
import zipfile
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

import xml.etree.ElementTree as ET

from .errors import ContainerError

CUSTOM_PART = "docProps/custom.xml"
CONTENT_TYPES_PART = "[Content_Types].xml"
ROOT_RELS_PART = "_rels/.rels"

CUSTOM_PROPS_NS = "http://schemas.openxmlformats.org/officeDocument/2006/custom-properties"
VT_NS = "http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes"
CUSTOM_PROPS_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.custom-properties+xml"
CUSTOM_PROPS_REL_TYPE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/custom-properties"
PROPERTY_FMTID = "{D5CDD505-2E9C-101B-9397-08002B2CF9AE}"

DEFAULT_PROPERTY_NAME = "SharedoTemplateId__0"
FIRST_PID = 2

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'

DEFAULT_CONTENT_TYPES = f"""{XML_DECLARATION}
<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">
    <Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>
    <Default Extension="xml" ContentType="application/xml"/>
    <Override PartName="/word/document.xml" ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>
    <Override PartName="/docProps/core.xml" ContentType="application/vnd.openxmlformats-package.core-properties+xml"/>
    <Override PartName="/docProps/app.xml" ContentType="application/vnd.openxmlformats-officedocument.extended-properties+xml"/>
    <Override PartName="/{CUSTOM_PART}" ContentType="{CUSTOM_PROPS_CONTENT_TYPE}"/>
</Types>"""

DEFAULT_ROOT_RELS = f"""{XML_DECLARATION}
<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">
    <Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" Target="word/document.xml"/>
    <Relationship Id="rId2" Type="http://schemas.openxmlformats.org/package/2006/relationships/metadata/core-properties" Target="docProps/core.xml"/>
    <Relationship Id="rId3" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/extended-properties" Target="docProps/app.xml"/>
    <Relationship Id="rId4" Type="{CUSTOM_PROPS_REL_TYPE}" Target="{CUSTOM_PART}"/>
</Relationships>"""

_PID_RE = re.compile(r'\bpid="(\d+)"')
_REL_ID_RE = re.compile(r'\bId="([^"]+)"')
_PROPERTIES_OPEN_RE = re.compile(r"<Properties\b[^>]*>")


def property_element(pid: int, name: str, value: str) -> str:
    safe_name = escape(name, {'"': "&quot;"})
    return (
        f'<property fmtid="{PROPERTY_FMTID}" pid="{pid}" name="{safe_name}">'
        f"<vt:lpwstr>{escape(value)}</vt:lpwstr></property>"
    )


def new_custom_properties(name: str, value: str) -> str:
    return (
        f"{XML_DECLARATION}\n"
        f'<Properties xmlns="{CUSTOM_PROPS_NS}" xmlns:vt="{VT_NS}">\n'
        f"    {property_element(FIRST_PID, name, value)}\n"
        "</Properties>"
    )


def next_pid(custom_xml: str) -> int:
    pids = [int(match) for match in _PID_RE.findall(custom_xml)]
    return max(pids) + 1 if pids else FIRST_PID


def _insert_before_closing(xml_text: str, closing_tag: str, fragment: str) -> str:
    insert_point = xml_text.rfind(closing_tag)
    if insert_point == -1:
        raise ContainerError(f"XML part does not contain {closing_tag}")
    return xml_text[:insert_point] + f"    {fragment}\n" + xml_text[insert_point:]


def append_custom_property(custom_xml: str, name: str, value: str) -> str:
    """
    Append a property to an existing custom.xml, leaving the others untouched.

    The new pid is one past the highest existing pid.
    """
    if not re.search(r"xmlns:vt\s*=", custom_xml):
        opening = _PROPERTIES_OPEN_RE.search(custom_xml)
        if opening is None:
            raise ContainerError("custom.xml has no <Properties> root element")
        tag = opening.group(0)
        closing = "/>" if tag.endswith("/>") else ">"
        declared = f'{tag[: -len(closing)]} xmlns:vt="{VT_NS}"{closing}'
        custom_xml = custom_xml[: opening.start()] + declared + custom_xml[opening.end():]

    if re.search(r"<Properties\b[^>]*/>", custom_xml):
        custom_xml = re.sub(r"<Properties\b([^>]*?)\s*/>", r"<Properties\1>\n</Properties>", custom_xml, count=1)

    return _insert_before_closing(
        custom_xml, "</Properties>", property_element(next_pid(custom_xml), name, value)
    )


def ensure_content_type_override(content_types_xml: Optional[str]) -> Optional[str]:
    """Return updated [Content_Types].xml, or None if nothing needs to change."""
    if content_types_xml is None:
        return DEFAULT_CONTENT_TYPES
    if re.search(rf'PartName="/{re.escape(CUSTOM_PART)}"', content_types_xml):
        return None
    override = f'<Override PartName="/{CUSTOM_PART}" ContentType="{CUSTOM_PROPS_CONTENT_TYPE}"/>'
    return _insert_before_closing(content_types_xml, "</Types>", override)


def next_relationship_id(rels_xml: str) -> str:
    existing = set(_REL_ID_RE.findall(rels_xml))
    numbers = [int(rid[3:]) for rid in existing if rid.startswith("rId") and rid[3:].isdigit()]
    candidate = max(numbers) + 1 if numbers else 1
    while f"rId{candidate}" in existing:
        candidate += 1
    return f"rId{candidate}"


def ensure_custom_relationship(rels_xml: Optional[str]) -> Optional[str]:
    """Return updated _rels/.rels, or None if nothing needs to change."""
    if rels_xml is None:
        return DEFAULT_ROOT_RELS
    if CUSTOM_PROPS_REL_TYPE in rels_xml:
        return None
    relationship = (
        f'<Relationship Id="{next_relationship_id(rels_xml)}" '
        f'Type="{CUSTOM_PROPS_REL_TYPE}" Target="{CUSTOM_PART}"/>'
    )
    return _insert_before_closing(rels_xml, "</Relationships>", relationship)


def _read_container(data: bytes) -> Tuple[List[zipfile.ZipInfo], Dict[str, bytes]]:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            infos = archive.infolist()
            contents = {info.filename: archive.read(info) for info in infos}
    except zipfile.BadZipFile as exc:
        raise ContainerError(f"Document is not a valid ZIP container: {exc}") from exc
    return infos, contents


def _decode_part(contents: Dict[str, bytes], name: str) -> Optional[str]:
    raw = contents.get(name)
    if raw is None:
        return None
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ContainerError(f"{name} is not UTF-8 encoded: {exc}") from exc


def _write_container(infos: List[zipfile.ZipInfo], contents: Dict[str, bytes], updates: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as out:
        for info in infos:
            entry = zipfile.ZipInfo(info.filename, date_time=info.date_time)
            entry.compress_type = info.compress_type
            entry.external_attr = info.external_attr
            out.writestr(entry, updates.get(info.filename, contents[info.filename]))
        known = {info.filename for info in infos}
        for name, payload in updates.items():
            if name not in known:
                out.writestr(name, payload)
    return buffer.getvalue()


def add_custom_property(data: bytes, value: str, name: str = DEFAULT_PROPERTY_NAME) -> bytes:
    """
    Embed a custom document property in a DOCX container.

    Args:
        data: DOCX bytes
        value: Property value (the deployed template identifier)
        name: Property name

    Returns:
        New DOCX bytes with the property added

    Raises:
        ContainerError: If the container or one of its metadata parts cannot
            be read; no partial result is produced
    """
    infos, contents = _read_container(data)
    updates: Dict[str, bytes] = {}

    custom_xml = _decode_part(contents, CUSTOM_PART)
    if custom_xml is not None:
        updates[CUSTOM_PART] = append_custom_property(custom_xml, name, value).encode("utf-8")
    else:
        updates[CUSTOM_PART] = new_custom_properties(name, value).encode("utf-8")

    content_types = ensure_content_type_override(_decode_part(contents, CONTENT_TYPES_PART))
    if content_types is not None:
        updates[CONTENT_TYPES_PART] = content_types.encode("utf-8")

    rels = ensure_custom_relationship(_decode_part(contents, ROOT_RELS_PART))
    if rels is not None:
        updates[ROOT_RELS_PART] = rels.encode("utf-8")

    for part, payload in updates.items():
        try:
            ET.fromstring(payload)
        except ET.ParseError as exc:
            raise ContainerError(f"Patched {part} is not well-formed XML: {exc}") from exc

    return _write_container(infos, contents, updates)


def read_custom_properties(data: bytes) -> Dict[str, str]:
    """
    Read the custom document properties of a DOCX container.

    Returns:
        Mapping of property name to its text value, in document order
    """
    _, contents = _read_container(data)
    custom_xml = contents.get(CUSTOM_PART)
    if custom_xml is None:
        return {}
    root = ET.fromstring(custom_xml)
    properties: Dict[str, str] = {}
    for prop in root.findall(f"{{{CUSTOM_PROPS_NS}}}property"):
        value = next(iter(prop), None)
        properties[prop.get("name", "")] = value.text if value is not None and value.text else ""
    return properties
