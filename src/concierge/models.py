"""Core domain models used across the application."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


# ======================================================================
# Conversation
# ======================================================================
class ChatTurn(BaseModel):
    """One entry of the conversation history."""

    model_config = {"frozen": True}

    role: Literal["user", "assistant"]
    content: str

    def to_message(self) -> dict:
        return {"role": self.role, "content": self.content}


# ======================================================================
# Retrieval sources
# ======================================================================
class DataSourceDescriptor(BaseModel):
    """Routing metadata for one retrieval source."""

    model_config = {"frozen": True}

    name: str
    description: str = ""
    keywords: list[str] = Field(default_factory=list)


class FieldsMapping(BaseModel):
    """Which index fields the chat service reads documents from."""

    content_fields_separator: str = "\n"
    content_fields: list[str] = Field(default_factory=lambda: ["content"])
    filepath_field: Optional[str] = None
    title_field: Optional[str] = "title"
    url_field: Optional[str] = None
    vector_fields: Optional[list[str]] = None


class ApiKeyAuthentication(BaseModel):
    type: Literal["api_key"] = "api_key"
    key: str


class AzureSearchParameters(BaseModel):
    """Parameters of an ``azure_search`` data source as sent on the wire."""

    endpoint: str
    index_name: str
    key: Optional[str] = None
    authentication: Optional[ApiKeyAuthentication] = None
    semantic_configuration: str = ""
    query_type: Literal[
        "simple",
        "semantic",
        "vector",
        "vector_simple_hybrid",
        "vector_semantic_hybrid",
    ] = "simple"
    fields_mapping: FieldsMapping = Field(default_factory=FieldsMapping)
    top_n_documents: int = Field(default=20, ge=1)
    in_scope: bool = True
    role_information: Optional[str] = None
    embedding_dependency: Optional[dict] = None

    @model_validator(mode="after")
    def _require_credentials(self) -> "AzureSearchParameters":
        if not self.key and self.authentication is None:
            raise ValueError("azure_search source needs either 'key' or 'authentication'")
        return self


class AzureSearchSource(BaseModel):
    """Tagged data-source variant; ``type`` selects the parameter schema."""

    type: Literal["azure_search"] = "azure_search"
    parameters: AzureSearchParameters

    def to_payload(self) -> dict:
        """Serialize to the ``data_sources`` element of a completion request."""
        return self.model_dump(exclude_none=True)


class DataSourceEntry(BaseModel):
    """A retrieval source together with the metadata the router sees."""

    name: str
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    data_source: AzureSearchSource

    @property
    def descriptor(self) -> DataSourceDescriptor:
        return DataSourceDescriptor(
            name=self.name, description=self.description, keywords=list(self.keywords)
        )


class DataSourceCatalogue(BaseModel):
    """Ordered list of retrieval sources; list position is the routing index."""

    sources: list[DataSourceEntry] = Field(min_length=1)

    def __len__(self) -> int:
        return len(self.sources)

    def __getitem__(self, index: int) -> DataSourceEntry:
        return self.sources[index]

    @property
    def descriptors(self) -> list[DataSourceDescriptor]:
        return [entry.descriptor for entry in self.sources]


# ======================================================================
# Avatar
# ======================================================================
class IceServerConfig(BaseModel):
    """Short-lived relay credentials for the avatar peer connection."""

    urls: str
    username: str
    credential: str
