"""
Pytest configuration and fixtures for Template Gateway tests.
"""

import io
import json
import os
import tempfile
import zipfile
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["GATEWAY_DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="gateway_test_db_"), "registry.db")
os.environ["DOCUMENT_CONVERTER_URL"] = "http://converter.test/convert"
os.environ["SHAREDO_HOSTNAME"] = "acme"
os.environ["SHAREDO_DOMAIN"] = "sharedo.test"
os.environ["SHAREDO_USERNAME"] = "alice"
os.environ["SHAREDO_APPNAME"] = "gateway-app"
os.environ["SHAREDO_APPSECRET"] = "gateway-secret"

from template_gateway.converter import DocumentConverter
from template_gateway.database import RegistryDatabase
from template_gateway.errors import StorageError
from template_gateway.main import app, get_workflow
from template_gateway.platform_client import PlatformClient, TokenCache
from template_gateway.workflow import TemplateWorkflow, WorkflowOptions


PLATFORM_HOST = "acme"
PLATFORM_DOMAIN = "sharedo.test"

MANIFEST_CSV = (
    "docid,name,system_name,template_type,data_context,output_title,output_file_name\n"
    "doc1.dot,Doc One,doc-one,Letter,Matter,Doc One Title,doc-one.docx\n"
    "doc2.dot,Doc Two,doc-two,Letter,Matter,,\n"
)


class InMemoryBlobStore:
    """Blob store fake keyed by (bucket, path)."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], bytes] = {}

    def get(self, bucket: str, path: str) -> bytes:
        try:
            return self.objects[(bucket, path)]
        except KeyError:
            raise StorageError(bucket, path, "NoSuchKey") from None

    def put(self, bucket: str, path: str, data: bytes, overwrite: bool = True) -> str:
        if not overwrite and (bucket, path) in self.objects:
            raise StorageError(bucket, path, "object already exists")
        self.objects[(bucket, path)] = data
        return path


def build_archive(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def build_docx(custom_xml: Optional[str] = None, with_override: bool = False) -> bytes:
    """Minimal DOCX container; custom.xml is only registered when asked."""
    override = (
        '<Override PartName="/docProps/custom.xml" '
        'ContentType="application/vnd.openxmlformats-officedocument.custom-properties+xml"/>'
        if with_override
        else ""
    )
    content_types = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">\n'
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>\n'
        '<Default Extension="xml" ContentType="application/xml"/>\n'
        '<Override PartName="/word/document.xml" '
        'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>\n'
        f"{override}\n"
        "</Types>"
    )
    rels = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">\n'
        '<Relationship Id="rId1" '
        'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
        'Target="word/document.xml"/>\n'
        "</Relationships>"
    )
    document = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
        "<w:body><w:p><w:r><w:t>Dear [Name]</w:t></w:r></w:p></w:body></w:document>"
    )
    files = {
        "[Content_Types].xml": content_types.encode("utf-8"),
        "_rels/.rels": rels.encode("utf-8"),
        "word/document.xml": document.encode("utf-8"),
    }
    if custom_xml is not None:
        files["docProps/custom.xml"] = custom_xml.encode("utf-8")
    return build_archive(files)


class PlatformStub:
    """
    Request handler standing in for the ShareDo identity server and API.

    Each request is recorded; responses can be overridden per path.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.overrides: Dict[Tuple[str, str], httpx.Response] = {}
        self.template_types = [
            {"name": "Letter", "systemName": "letter"},
            {"name": "Pack", "systemName": "pack"},
        ]
        self.work_types = [
            {
                "name": "Case",
                "systemName": "case",
                "derivedTypes": [{"name": "Matter", "systemName": "matter"}],
            },
            {"name": "Task", "systemName": "task"},
        ]
        self.upload_response: object = None
        self.created: Dict[str, dict] = {}

    def requests_to(self, path: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.path == path and (method is None or request.method == method)
        ]

    @property
    def token_requests(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.host.endswith("-identity." + PLATFORM_DOMAIN)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        override = self.overrides.get((request.method, path))
        if override is not None:
            return override

        if path == "/connect/token":
            return httpx.Response(200, json={"access_token": "token-abc", "expires_in": 3600, "token_type": "Bearer"})
        if path == "/api/sharedo/reporting/documentadmincharts/document-templates/types":
            return httpx.Response(200, json=self.template_types)
        if path == "/api/modeller/sharedoTypes":
            return httpx.Response(200, json=self.work_types)
        if path == "/api/modeller/participantTypes":
            return httpx.Response(200, json=[{"name": "Client", "systemName": "client"}])
        if path == "/api/admin/docGen/templates/_tags":
            return httpx.Response(200, json=["letters", "court"])
        if path == "/api/repository":
            return httpx.Response(200, json=[{"name": "templates"}])
        if path.startswith("/api/repository/templates") and request.method == "GET":
            return httpx.Response(
                200,
                json={"items": [{"name": "doc-one.docx"}], "repositoryUrl": "https://files.sharedo.test/templates"},
            )
        if path.startswith("/api/repository/templates/") and request.method == "POST":
            folder = path.rsplit("/", 1)[-1]
            if self.upload_response is not None:
                return httpx.Response(200, json=self.upload_response)
            return httpx.Response(
                200,
                json=[
                    {
                        "pathId": f"/{folder}/doc1.docx",
                        "downloadUrl": f"https://files.sharedo.test/{folder}/doc1.docx",
                    }
                ],
            )
        if path.startswith("/api/admin/docGen/templates/") and request.method == "POST":
            system_name = path.rsplit("/", 1)[-1]
            self.created[system_name] = json.loads(request.content)
            return httpx.Response(200, json={"id": 42, "systemName": system_name})
        if path == "/api/checkanddelete/document-template" and request.method == "DELETE":
            system_name = json.loads(request.content)["systemName"]
            if system_name == "missing-template":
                return httpx.Response(404, text="Template not found")
            return httpx.Response(200, json={"deleted": True})

        return httpx.Response(404, text=f"No stub for {request.method} {path}")


class ConverterStub:
    """Request handler standing in for the conversion service."""

    def __init__(self, output: bytes):
        self.output = output
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.error: Optional[str] = None
        self.raise_timeout = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_timeout:
            raise httpx.ReadTimeout("converter did not answer", request=request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text=self.error or "conversion failed")
        return httpx.Response(200, content=self.output)


@pytest.fixture
def manifest_csv() -> str:
    return MANIFEST_CSV


@pytest.fixture
def archive_factory():
    return build_archive


@pytest.fixture
def docx_factory():
    return build_docx


@pytest.fixture
def sample_archive() -> bytes:
    """Bundle with two templates, a manifest and an unrelated file."""
    return build_archive(
        {
            "doc1.dot": b"legacy-doc-1",
            "doc2.dot": b"legacy-doc-2",
            "README.txt": b"ignored",
            "manifest.csv": MANIFEST_CSV.encode("utf-8"),
        }
    )


@pytest.fixture
def db(tmp_path) -> RegistryDatabase:
    return RegistryDatabase(tmp_path / "registry.db")


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def platform_stub() -> PlatformStub:
    return PlatformStub()


@pytest.fixture
def converter_stub() -> ConverterStub:
    return ConverterStub(build_docx())


@pytest.fixture
def platform_client(platform_stub) -> PlatformClient:
    return PlatformClient(
        hostname=PLATFORM_HOST,
        domain=PLATFORM_DOMAIN,
        username="alice",
        app_name="gateway-app",
        app_secret="gateway-secret",
        token_cache=TokenCache(),
        transport=httpx.MockTransport(platform_stub),
    )


@pytest.fixture
def converter(converter_stub) -> DocumentConverter:
    return DocumentConverter("http://converter.test/convert", transport=httpx.MockTransport(converter_stub))


@pytest.fixture
def workflow(db, blobs, converter, platform_client) -> TemplateWorkflow:
    return TemplateWorkflow(db, blobs, converter, platform_client, WorkflowOptions())


@pytest.fixture
def client(workflow):
    """Create a test client with the workflow dependency swapped for the stubbed one."""
    app.dependency_overrides[get_workflow] = lambda: workflow
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
