"""
Upload, convert and deploy workflows for document templates.

This module composes the archive unpacker, manifest parser, registry store,
blob store, converter and Template Platform client into three operations:

- ingest: store an archive's documents and manifest, record a batch and
  upsert one registry entry per manifest row
- convert: convert a registered document to DOCX and record the result
- deploy: publish a converted document to the Template Platform as a
  document template

Each operation is a single sequence of awaited steps. Blocking storage and
database calls run in worker threads so that ingest can upload documents
concurrently. Any failure ends the operation; nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

from omegaconf import DictConfig

from .archive import unpack_archive
from .configuration import REQUIRED_PLATFORM_KEYS
from .converter import DocumentConverter
from .database import RegistryDatabase
from .docx_patcher import DEFAULT_PROPERTY_NAME, add_custom_property
from .errors import (
    ConfigurationError,
    NoValidEntriesError,
    NotConvertedError,
    NotFoundError,
    TemplateCreationError,
    UploadError,
    ValidationError,
)
from .manifest import parse_manifest
from .models import ConversionResult, DeploymentResult, IngestResult, ManifestFile, RegistryEntry
from .platform_client import PlatformClient, TokenCache
from .s3_service import CONVERSIONS_BUCKET, UPLOADS_BUCKET, BlobStore, blob_store_from_settings
from .utils import allowed_document_extensions, converted_filename, manifest_extension

logger = logging.getLogger(__name__)


@dataclass
class WorkflowOptions:
    """
    Tunables for the workflows.

    Attributes:
        document_suffixes: Archive entry suffixes treated as documents
        manifest_suffix: Archive entry suffix treated as the manifest
        embed_template_id: Patch the template system name into the DOCX
            before deploying
        property_name: Custom document property that carries the system name
        default_folder_id: Platform folder id for generated documents
        template_repository: Platform repository holding template files
    """

    document_suffixes: Tuple[str, ...] = field(default_factory=lambda: tuple(allowed_document_extensions()))
    manifest_suffix: str = field(default_factory=manifest_extension)
    embed_template_id: bool = True
    property_name: str = DEFAULT_PROPERTY_NAME
    default_folder_id: int = 5006002
    template_repository: str = "templates"

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "WorkflowOptions":
        return cls(
            document_suffixes=tuple(settings.archive.document_suffixes),
            manifest_suffix=settings.archive.manifest_suffix,
            embed_template_id=bool(settings.deploy.embed_template_id),
            property_name=settings.deploy.property_name,
            default_folder_id=int(settings.deploy.default_folder_id),
            template_repository=settings.deploy.template_repository,
        )


def build_template_definition(
    entry: RegistryEntry,
    template_type: str,
    context_type: str,
    path_id: str,
    default_folder_id: int = 5006002,
    template_repository: str = "templates",
) -> Dict[str, Any]:
    """
    Build the Template Platform definition for a registry entry.

    Approval, delivery and output-destination lists are left empty; the
    template has a single mandatory pack document whose only source is the
    uploaded file.
    """
    no_rules = {"operator": "and", "ruleSetSystemNames": []}
    return {
        "systemName": entry.system_name,
        "templateType": template_type,
        "active": True,
        "title": entry.name,
        "description": entry.name,
        "tags": [],
        "processTags": [],
        "toRoleRequired": False,
        "regardingRoleRequired": False,
        "toRoles": [],
        "regardingRoles": [],
        "recipientLocationRequired": False,
        "recipientConfig": {"recipientLocationRequired": False},
        "contextTypeSystemName": context_type,
        "formIds": [],
        "approval": {"competencySystemNames": []},
        "deliveryChannels": [],
        "refreshOnDelivery": False,
        "deliveryRefreshTags": [],
        "defaultFolderId": default_folder_id,
        "outputDestinations": [],
        "pdfOptions": {
            "generate": False,
            "deleteOriginal": False,
            "fileName": "[_titleAsFilename].pdf",
        },
        "packDocuments": [
            {
                "id": None,
                "type": "document",
                "outputTitle": entry.output_title,
                "outputFileName": entry.output_file_name,
                "copies": 1,
                "isMandatory": True,
                "order": 1,
                "sources": [
                    {
                        "id": None,
                        "filePath": path_id,
                        "order": 1,
                        "status": None,
                        "ruleSetSelection": dict(no_rules),
                    }
                ],
            }
        ],
        "templateRepository": template_repository,
        "displayInMenus": True,
        "displayContexts": [],
        "displayRuleSetSelection": dict(no_rules),
        "legacyPhaseRestrictions": [],
        "contentBlock": {
            "availableForTemplateAuthors": True,
            "availableForDocumentAuthors": True,
        },
        "multiPartyTemplateSources": [],
        "legalForm": {
            "outputFileName": "[_titleAsFilename].pdf",
            "reference": "context.reference",
            "fields": [],
        },
    }


class TemplateWorkflow:
    """
    Coordinator for the ingest, convert and deploy operations.

    The converter and platform client are optional at construction so that
    ingest and registry reads work without their configuration; operations
    that need them raise ConfigurationError.
    """

    def __init__(
        self,
        database: RegistryDatabase,
        blobs: BlobStore,
        converter: Optional[DocumentConverter] = None,
        platform: Optional[PlatformClient] = None,
        options: Optional[WorkflowOptions] = None,
    ) -> None:
        self.database = database
        self.blobs = blobs
        self.converter = converter
        self.platform = platform
        self.options = options or WorkflowOptions()

    @classmethod
    def from_settings(cls, settings: DictConfig, token_cache: Optional[TokenCache] = None) -> "TemplateWorkflow":
        converter = None
        if settings.converter.url:
            converter = DocumentConverter(
                url=settings.converter.url,
                timeout_budget=int(settings.converter.timeout_budget),
                grace_seconds=float(settings.converter.grace_seconds),
            )

        platform = None
        if all(settings.platform.get(key) for key in REQUIRED_PLATFORM_KEYS):
            platform = PlatformClient.from_settings(settings.platform, token_cache=token_cache)

        return cls(
            database=RegistryDatabase(settings.database.path),
            blobs=blob_store_from_settings(settings.storage),
            converter=converter,
            platform=platform,
            options=WorkflowOptions.from_settings(settings),
        )

    def _require_converter(self) -> DocumentConverter:
        if self.converter is None:
            raise ConfigurationError("DOCUMENT_CONVERTER_URL is not set")
        return self.converter

    def require_platform(self) -> PlatformClient:
        if self.platform is None:
            raise ConfigurationError(
                f"Missing required Template Platform settings: {', '.join(REQUIRED_PLATFORM_KEYS)}"
            )
        return self.platform

    # ------------------------------------------------------------------
    # Registry reads
    # ------------------------------------------------------------------

    async def list_registry(self) -> List[RegistryEntry]:
        return await asyncio.to_thread(self.database.list_all)

    async def get_entry(self, docid: str) -> RegistryEntry:
        entry = await asyncio.to_thread(self.database.get_by_docid, docid)
        if entry is None:
            raise NotFoundError(docid)
        return entry

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def ingest(self, archive_bytes: bytes, manifest_filename: Optional[str] = None) -> IngestResult:
        """
        Store an archive's documents and manifest and register its rows.

        Steps:
        1. Unpack the archive into documents and manifest
        2. Upload all documents to the uploads bucket concurrently
        3. Upload the manifest
        4. Create (or reuse) the batch keyed by the manifest's storage path
        5. Parse the manifest, tagging rows with the batch id
        6. Upsert rows one by one in manifest order

        Args:
            archive_bytes: Raw ZIP archive
            manifest_filename: Name to store the manifest under (defaults to
                its name inside the archive)

        Returns:
            IngestResult with batch id, stored paths and upserted entries

        Raises:
            MissingManifestError, InvalidArchiveError, ManifestParseError,
            NoValidEntriesError, StorageError, PersistenceError
        """
        unpacked = unpack_archive(
            archive_bytes,
            document_suffixes=self.options.document_suffixes,
            manifest_suffix=self.options.manifest_suffix,
        )

        uploaded_files = await asyncio.gather(
            *(
                asyncio.to_thread(self.blobs.put, UPLOADS_BUCKET, document.name, document.data)
                for document in unpacked.documents
            )
        )
        logger.info(f"Uploaded {len(uploaded_files)} documents to {UPLOADS_BUCKET}")

        manifest_name = manifest_filename or unpacked.manifest.name
        manifest_path = await asyncio.to_thread(
            self.blobs.put, UPLOADS_BUCKET, manifest_name, unpacked.manifest.data
        )

        batch_id = await asyncio.to_thread(self.database.create_or_reuse_batch, manifest_path)
        logger.info(f"Using batch {batch_id} for manifest {manifest_path}")

        rows = list(parse_manifest(unpacked.manifest.data, batch_id=batch_id))
        if not rows:
            raise NoValidEntriesError(f"No valid rows found in manifest {manifest_name}")

        entries: List[RegistryEntry] = []
        for row in rows:
            entries.append(await asyncio.to_thread(self.database.upsert_entry, row, batch_id))
        logger.info(f"Upserted {len(entries)} registry entries for batch {batch_id}")

        return IngestResult(
            batch_id=batch_id,
            uploaded_files=list(uploaded_files),
            registry_entries=entries,
            manifest_file=ManifestFile(file_name=manifest_name, storage_path=manifest_path),
        )

    # ------------------------------------------------------------------
    # Convert
    # ------------------------------------------------------------------

    async def convert(self, docid: str) -> ConversionResult:
        """
        Convert a registered document to DOCX.

        Re-running overwrites both the stored conversion and the recorded path.

        Raises:
            NotFoundError, StorageError, ConversionTimeoutError, ConversionError
        """
        converter = self._require_converter()
        await self.get_entry(docid)

        original = await asyncio.to_thread(self.blobs.get, UPLOADS_BUCKET, docid)
        converted = await converter.convert(original, docid)

        converted_path = await asyncio.to_thread(
            self.blobs.put, CONVERSIONS_BUCKET, converted_filename(docid), converted
        )
        await asyncio.to_thread(self.database.update_converted_path, docid, converted_path)

        logger.info(f"Converted {docid} to {converted_path}")
        return ConversionResult(docid=docid, converted_file_path=converted_path)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def _resolve_template_type(self, platform: PlatformClient, entry: RegistryEntry) -> str:
        if not entry.template_type:
            return ""
        system_name = await platform.resolve_template_type_system_name(entry.template_type)
        if system_name:
            return system_name
        logger.warning(f'Template type "{entry.template_type}" not found on the Template Platform, using empty string')
        return ""

    async def _resolve_context_type(self, platform: PlatformClient, entry: RegistryEntry) -> str:
        if not entry.data_context:
            raise ValidationError(f"Registry entry '{entry.docid}' has no data_context; it is required for deployment")
        system_name = await platform.resolve_context_type_system_name(entry.data_context)
        if not system_name:
            raise ValidationError(f'Context type "{entry.data_context}" not found in Template Platform work types')
        return system_name

    async def deploy(self, docid: str, template_folder: str) -> DeploymentResult:
        """
        Deploy a converted document as a Template Platform template.

        Steps:
        1. Look up the entry
        2. Resolve the template type (a miss is logged and tolerated)
        3. Resolve the context type (a miss is fatal)
        4. Require a converted document
        5. Fetch it and, if enabled, embed the system name as a custom property
        6. Upload it to the template folder and record pathId/downloadUrl
        7. Create the template and return its platform id

        Raises:
            NotFoundError, ValidationError, NotConvertedError, StorageError,
            ContainerError, UploadError, TemplateCreationError, AuthenticationError
        """
        platform = self.require_platform()
        entry = await self.get_entry(docid)

        template_type = await self._resolve_template_type(platform, entry)
        context_type = await self._resolve_context_type(platform, entry)

        if not entry.is_converted:
            raise NotConvertedError(docid)
        if not entry.system_name:
            raise ValidationError(f"Registry entry '{docid}' has no system_name; it is required for deployment")

        document = await asyncio.to_thread(self.blobs.get, CONVERSIONS_BUCKET, entry.converted_file_path)
        if self.options.embed_template_id:
            document = add_custom_property(document, entry.system_name, name=self.options.property_name)

        filename = PurePosixPath(entry.converted_file_path).name
        descriptors = await platform.upload_document(document, filename, template_folder)
        if not descriptors:
            raise UploadError(None, f"Upload of {filename} returned no file descriptors")

        uploaded = descriptors[0]
        path_id = uploaded.get("pathId")
        download_url = uploaded.get("downloadUrl") or ""
        if not path_id:
            raise UploadError(None, f"Upload of {filename} returned no pathId")

        await asyncio.to_thread(self.database.update_platform_info, docid, path_id, download_url)

        definition = build_template_definition(
            entry,
            template_type=template_type,
            context_type=context_type,
            path_id=path_id,
            default_folder_id=self.options.default_folder_id,
            template_repository=self.options.template_repository,
        )
        result = await platform.create_template(entry.system_name, definition)

        template_id = result.get("id") if isinstance(result, dict) else None
        if template_id is None or template_id == "":
            raise TemplateCreationError(None, f"Template {entry.system_name} was created without an id: {result!r}")
        logger.info(f"Deployed {docid} to {template_folder} as template {entry.system_name} (id {template_id})")
        return DeploymentResult(id=str(template_id))

    async def delete_template(self, system_name: str) -> Dict[str, Any]:
        return await self.require_platform().delete_template(system_name)
