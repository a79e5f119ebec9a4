from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

DESCRIPTIVE_FIELDS = (
    "template_type",
    "system_name",
    "name",
    "categories",
    "data_context",
    "participant_role",
    "output_title",
    "output_file_name",
    "document_source",
)


class RegistryEntry(BaseModel):
    id: Optional[int] = None
    docid: str
    template_type: Optional[str] = None
    system_name: Optional[str] = None
    name: Optional[str] = None
    categories: Optional[str] = None
    data_context: Optional[str] = None
    participant_role: Optional[str] = None
    output_title: Optional[str] = None
    output_file_name: Optional[str] = None
    document_source: Optional[str] = None
    batch_id: Optional[int] = None
    converted_file_path: str = ""
    sharedo_pathid: str = ""
    sharedo_downloadurl: str = ""

    @property
    def is_converted(self) -> bool:
        return bool(self.converted_file_path and self.converted_file_path.strip())


class UploadBatch(BaseModel):
    id: int
    timestamp: datetime
    filepath: str


class ManifestFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    storage_path: str = Field(alias="storagePath")


class IngestResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_id: int = Field(alias="batchId")
    uploaded_files: List[str] = Field(alias="uploadedFiles")
    registry_entries: List[RegistryEntry] = Field(alias="registryEntries")
    manifest_file: ManifestFile = Field(alias="manifestFile")


class ConversionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    docid: str
    converted_file_path: str = Field(alias="convertedFilePath")


class DeployRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    docid: str = Field(min_length=1)
    template_folder: str = Field(alias="templateFolder", min_length=1)


class DeploymentResult(BaseModel):
    id: str


class AccessToken(BaseModel):
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    expires_at: float
    cached: bool = False


class AuthStatus(AccessToken):
    authenticated: bool = True


class RepositoryListing(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[Dict[str, Any]] = Field(default_factory=list)
    repository_url: str = Field(default="", alias="repositoryUrl")


class ErrorResponse(BaseModel):
    error: str
    message: str
