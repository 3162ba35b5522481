from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workspace_sync.core.name_normalize import normalize

StructureType = Literal["area", "iteration"]

# record kinds understood by RemoteWorkspaceClient.fetch_records/create_record
WORK_ITEM = "work_item"
AREA = "area"
ITERATION = "iteration"
QUERY = "query"
QUERY_FOLDER = "query_folder"
WORK_ITEM_TYPE = "work_item_type"
SECURITY_GROUP = "security_group"


class RemoteRecord(BaseModel):
    """Base for records fetched from a remote workspace."""

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class WorkItemRecord(RemoteRecord):
    title: str
    work_item_type: str
    state: str | None = None
    description: str | None = None
    assigned_to: str | None = None
    area_path: str | None = None
    iteration_path: str | None = None
    priority: int | None = None
    team_project: str | None = None


class WorkItemFields(BaseModel):
    """Closed set of work item fields the engine reads or writes."""

    title: str | None = None
    work_item_type: str | None = None
    description: str | None = None
    state: str | None = None
    assigned_to: str | None = None
    area_path: str | None = None
    iteration_path: str | None = None
    priority: int | None = None

    def changed(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def is_empty(self) -> bool:
        return not self.changed()


class ClassificationNode(RemoteRecord):
    name: str
    structure: StructureType
    children: list[ClassificationNode] = Field(default_factory=list)


class NodeFields(BaseModel):
    name: str


class QueryItem(RemoteRecord):
    name: str
    path: str
    is_folder: bool = False
    wiql: str | None = None
    is_public: bool = True
    children: list[QueryItem] = Field(default_factory=list)


class QueryFields(BaseModel):
    name: str | None = None
    wiql: str | None = None
    is_public: bool | None = None
    is_folder: bool | None = None

    def changed(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class GroupMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: str = ""
    email: str = ""
    principal_name: str = ""
    descriptor: str | None = None

    def identity_matches(self, other: GroupMember) -> bool:
        """Email OR principal name equality, ignoring case; blanks never match."""

        if self.email and other.email and normalize(self.email) == normalize(other.email):
            return True
        if self.principal_name and other.principal_name:
            return normalize(self.principal_name) == normalize(other.principal_name)
        return False

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (normalize(self.display_name), normalize(self.email), normalize(self.principal_name))

    def __str__(self) -> str:
        identity = self.email or self.principal_name
        return f"{self.display_name} <{identity}>" if identity else self.display_name


class GroupInfo(BaseModel):
    group_name: str
    principal_name: str | None = None
    descriptor: str | None = None
    members: list[GroupMember] = Field(default_factory=list)

    def find_member(self, candidate: GroupMember) -> GroupMember | None:
        for member in self.members:
            if member.identity_matches(candidate):
                return member
        return None


ClassificationNode.model_rebuild()
QueryItem.model_rebuild()
