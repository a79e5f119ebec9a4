"""
Tests for the ingest, convert and deploy workflows.

The blob store, converter and ShareDo API are stubbed; the registry is a real
SQLite file per test.
"""

import logging

import httpx
import pytest

from template_gateway.docx_patcher import DEFAULT_PROPERTY_NAME, read_custom_properties
from template_gateway.errors import (
    ConfigurationError,
    ConversionTimeoutError,
    MissingManifestError,
    NoValidEntriesError,
    NotConvertedError,
    NotFoundError,
    TemplateCreationError,
    UploadError,
    ValidationError,
)
from template_gateway.models import RegistryEntry
from template_gateway.s3_service import CONVERSIONS_BUCKET, UPLOADS_BUCKET
from template_gateway.workflow import TemplateWorkflow, WorkflowOptions, build_template_definition


async def ingest_and_convert(workflow, sample_archive, docid="doc1.dot"):
    await workflow.ingest(sample_archive, manifest_filename="bundle.csv")
    return await workflow.convert(docid)


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_stores_files_and_registers_rows(self, workflow, blobs, sample_archive, manifest_csv):
        result = await workflow.ingest(sample_archive, manifest_filename="bundle.csv")

        assert result.uploaded_files == ["doc1.dot", "doc2.dot"]
        assert [entry.docid for entry in result.registry_entries] == ["doc1.dot", "doc2.dot"]
        assert all(entry.batch_id == result.batch_id for entry in result.registry_entries)
        assert result.manifest_file.file_name == "bundle.csv"
        assert result.manifest_file.storage_path == "bundle.csv"
        assert blobs.objects[(UPLOADS_BUCKET, "doc1.dot")] == b"legacy-doc-1"
        assert blobs.objects[(UPLOADS_BUCKET, "bundle.csv")] == manifest_csv.encode("utf-8")
        assert (UPLOADS_BUCKET, "README.txt") not in blobs.objects

    @pytest.mark.asyncio
    async def test_manifest_defaults_to_its_archive_name(self, workflow, blobs, sample_archive):
        result = await workflow.ingest(sample_archive)

        assert result.manifest_file.file_name == "manifest.csv"
        assert (UPLOADS_BUCKET, "manifest.csv") in blobs.objects

    @pytest.mark.asyncio
    async def test_reingest_reuses_batch_and_updates_rows(self, workflow, db, sample_archive):
        first = await workflow.ingest(sample_archive, manifest_filename="bundle.csv")
        second = await workflow.ingest(sample_archive, manifest_filename="bundle.csv")

        assert second.batch_id == first.batch_id
        assert [entry.id for entry in second.registry_entries] == [entry.id for entry in first.registry_entries]
        assert len(db.list_all()) == 2

    @pytest.mark.asyncio
    async def test_missing_manifest_stores_nothing(self, workflow, blobs, archive_factory):
        with pytest.raises(MissingManifestError):
            await workflow.ingest(archive_factory({"doc1.dot": b"a"}))

        assert blobs.objects == {}

    @pytest.mark.asyncio
    async def test_manifest_without_valid_rows(self, workflow, archive_factory):
        archive = archive_factory({"doc1.dot": b"a", "manifest.csv": b"docid,name\n,No Id\n"})

        with pytest.raises(NoValidEntriesError):
            await workflow.ingest(archive)


class TestConvert:
    @pytest.mark.asyncio
    async def test_convert_stores_docx_and_records_path(self, workflow, blobs, db, converter_stub, sample_archive):
        result = await ingest_and_convert(workflow, sample_archive)

        assert result.docid == "doc1.dot"
        assert result.converted_file_path == "doc1.docx"
        assert blobs.objects[(CONVERSIONS_BUCKET, "doc1.docx")] == converter_stub.output
        assert db.get_by_docid("doc1.dot").converted_file_path == "doc1.docx"
        assert b"legacy-doc-1" in converter_stub.requests[0].content

    @pytest.mark.asyncio
    async def test_convert_is_repeatable(self, workflow, db, converter_stub, sample_archive):
        await ingest_and_convert(workflow, sample_archive)
        again = await workflow.convert("doc1.dot")

        assert again.converted_file_path == "doc1.docx"
        assert len(converter_stub.requests) == 2

    @pytest.mark.asyncio
    async def test_unknown_docid(self, workflow, converter_stub):
        with pytest.raises(NotFoundError):
            await workflow.convert("nope.dot")

        assert converter_stub.requests == []

    @pytest.mark.asyncio
    async def test_timeout_leaves_entry_unconverted(self, workflow, db, converter_stub, sample_archive):
        await workflow.ingest(sample_archive, manifest_filename="bundle.csv")
        converter_stub.status_code = 408

        with pytest.raises(ConversionTimeoutError):
            await workflow.convert("doc1.dot")

        assert db.get_by_docid("doc1.dot").converted_file_path == ""

    @pytest.mark.asyncio
    async def test_converter_must_be_configured(self, db, blobs, sample_archive):
        workflow = TemplateWorkflow(db, blobs)
        await workflow.ingest(sample_archive)

        with pytest.raises(ConfigurationError):
            await workflow.convert("doc1.dot")


class TestDeploy:
    @pytest.mark.asyncio
    async def test_deploy_publishes_template(self, workflow, db, platform_stub, sample_archive):
        await ingest_and_convert(workflow, sample_archive)

        result = await workflow.deploy("doc1.dot", "letters")

        assert result.id == "42"
        entry = db.get_by_docid("doc1.dot")
        assert entry.sharedo_pathid == "/letters/doc1.docx"
        assert entry.sharedo_downloadurl == "https://files.sharedo.test/letters/doc1.docx"

        definition = platform_stub.created["doc-one"]
        assert definition["systemName"] == "doc-one"
        assert definition["templateType"] == "letter"
        assert definition["contextTypeSystemName"] == "matter"
        assert definition["title"] == "Doc One"
        [pack] = definition["packDocuments"]
        assert pack["outputTitle"] == "Doc One Title"
        assert pack["outputFileName"] == "doc-one.docx"
        assert pack["sources"][0]["filePath"] == "/letters/doc1.docx"

    @pytest.mark.asyncio
    async def test_uploaded_document_carries_template_id(self, workflow, platform_stub, sample_archive):
        await ingest_and_convert(workflow, sample_archive)

        await workflow.deploy("doc1.dot", "letters")

        [upload] = platform_stub.requests_to("/api/repository/templates/letters", method="POST")
        body = upload.content
        start = body.index(b"PK\x03\x04")
        end = body.rindex(b"\r\n--")
        assert read_custom_properties(body[start:end]) == {DEFAULT_PROPERTY_NAME: "doc-one"}

    @pytest.mark.asyncio
    async def test_embedding_can_be_disabled(self, db, blobs, converter, platform_client, platform_stub, converter_stub, sample_archive):
        workflow = TemplateWorkflow(db, blobs, converter, platform_client, WorkflowOptions(embed_template_id=False))
        await ingest_and_convert(workflow, sample_archive)

        await workflow.deploy("doc1.dot", "letters")

        [upload] = platform_stub.requests_to("/api/repository/templates/letters", method="POST")
        assert converter_stub.output in upload.content

    @pytest.mark.asyncio
    async def test_unconverted_entry_is_rejected_before_upload(self, workflow, platform_stub, sample_archive):
        await workflow.ingest(sample_archive, manifest_filename="bundle.csv")

        with pytest.raises(NotConvertedError):
            await workflow.deploy("doc1.dot", "letters")

        assert platform_stub.requests_to("/api/repository/templates/letters", method="POST") == []
        assert platform_stub.created == {}

    @pytest.mark.asyncio
    async def test_unknown_docid(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.deploy("nope.dot", "letters")

    @pytest.mark.asyncio
    async def test_unknown_template_type_is_tolerated(self, workflow, platform_stub, sample_archive, caplog):
        platform_stub.template_types = []
        await ingest_and_convert(workflow, sample_archive)

        with caplog.at_level(logging.WARNING, logger="template_gateway.workflow"):
            await workflow.deploy("doc1.dot", "letters")

        assert platform_stub.created["doc-one"]["templateType"] == ""
        assert "Letter" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_context_type_is_fatal(self, workflow, platform_stub, sample_archive):
        platform_stub.work_types = [{"name": "Task", "systemName": "task"}]
        await ingest_and_convert(workflow, sample_archive)

        with pytest.raises(ValidationError):
            await workflow.deploy("doc1.dot", "letters")

        assert platform_stub.created == {}

    @pytest.mark.asyncio
    async def test_missing_data_context_is_fatal(self, workflow, archive_factory):
        archive = archive_factory({"doc1.dot": b"a", "manifest.csv": b"docid,name,system_name\ndoc1.dot,One,one\n"})
        await workflow.ingest(archive)
        await workflow.convert("doc1.dot")

        with pytest.raises(ValidationError):
            await workflow.deploy("doc1.dot", "letters")

    @pytest.mark.asyncio
    async def test_unconverted_entry_without_system_name_reports_not_converted(self, workflow, archive_factory):
        archive = archive_factory({"doc1.dot": b"a", "manifest.csv": b"docid,name,data_context\ndoc1.dot,One,Matter\n"})
        await workflow.ingest(archive)

        with pytest.raises(NotConvertedError):
            await workflow.deploy("doc1.dot", "letters")

    @pytest.mark.asyncio
    async def test_template_without_id_is_a_creation_failure(self, workflow, platform_stub, sample_archive):
        platform_stub.overrides[("POST", "/api/admin/docGen/templates/doc-one")] = httpx.Response(
            200, json={"systemName": "doc-one"}
        )
        await ingest_and_convert(workflow, sample_archive)

        with pytest.raises(TemplateCreationError) as exc_info:
            await workflow.deploy("doc1.dot", "letters")

        assert exc_info.value.status_code is None
        assert "doc-one" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_system_name_is_fatal(self, workflow, archive_factory):
        archive = archive_factory({"doc1.dot": b"a", "manifest.csv": b"docid,name,data_context\ndoc1.dot,One,Task\n"})
        await workflow.ingest(archive)
        await workflow.convert("doc1.dot")

        with pytest.raises(ValidationError):
            await workflow.deploy("doc1.dot", "letters")

    @pytest.mark.asyncio
    async def test_empty_upload_response(self, workflow, platform_stub, sample_archive):
        platform_stub.upload_response = []
        await ingest_and_convert(workflow, sample_archive)

        with pytest.raises(UploadError):
            await workflow.deploy("doc1.dot", "letters")

        assert platform_stub.created == {}

    @pytest.mark.asyncio
    async def test_platform_must_be_configured(self, db, blobs, converter):
        workflow = TemplateWorkflow(db, blobs, converter)

        with pytest.raises(ConfigurationError):
            await workflow.deploy("doc1.dot", "letters")

    @pytest.mark.asyncio
    async def test_delete_template(self, workflow):
        assert await workflow.delete_template("doc-one") == {"deleted": True}


class TestTemplateDefinition:
    def test_fixed_fields(self):
        entry = RegistryEntry(
            docid="doc1.dot",
            name="Doc One",
            system_name="doc-one",
            output_title="Title",
            output_file_name="out.docx",
        )

        definition = build_template_definition(entry, "letter", "matter", "/letters/doc1.docx")

        assert definition["active"] is True
        assert definition["description"] == "Doc One"
        assert definition["defaultFolderId"] == 5006002
        assert definition["templateRepository"] == "templates"
        assert definition["pdfOptions"] == {
            "generate": False,
            "deleteOriginal": False,
            "fileName": "[_titleAsFilename].pdf",
        }
        assert definition["legalForm"]["reference"] == "context.reference"
        assert definition["tags"] == [] and definition["formIds"] == []
        [pack] = definition["packDocuments"]
        assert pack["isMandatory"] is True
        assert pack["copies"] == 1
        assert pack["sources"][0]["ruleSetSelection"] == {"operator": "and", "ruleSetSystemNames": []}
