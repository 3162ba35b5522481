"""Azure DevOps REST implementation of :class:`RemoteWorkspaceClient`."""
from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote, urlparse

import httpx
from pydantic import BaseModel

from workspace_sync.core.name_normalize import normalize
from workspace_sync.core.schema import (
    AREA,
    ITERATION,
    QUERY,
    QUERY_FOLDER,
    WORK_ITEM,
    WORK_ITEM_TYPE,
    ClassificationNode,
    GroupInfo,
    GroupMember,
    NodeFields,
    QueryFields,
    QueryItem,
    WorkItemFields,
    WorkItemRecord,
)
from workspace_sync.core.tree import AREA_SEPARATOR
from workspace_sync.domain.errors import NotFound, PermissionDenied, RemoteError, RemoteUnavailable
from workspace_sync.domain.workspaces import WorkspaceRef

from .remote import FetchOptions, expect_fields

logger = logging.getLogger(__name__)

FIELD_MAP: dict[str, str] = {
    "title": "System.Title",
    "work_item_type": "System.WorkItemType",
    "state": "System.State",
    "description": "System.Description",
    "assigned_to": "System.AssignedTo",
    "area_path": "System.AreaPath",
    "iteration_path": "System.IterationPath",
    "priority": "Microsoft.VSTS.Common.Priority",
    "team_project": "System.TeamProject",
}
STRUCTURE_SEGMENTS = {AREA: "Areas", ITERATION: "Iterations"}
WORK_ITEM_BATCH = 200
MAX_QUERY_DEPTH = 2
GROUP_DESCRIPTOR_PREFIXES = ("vssgp.", "aadgp.")
ALL_WORK_ITEMS_WIQL = "SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = @project ORDER BY [System.Id]"


class AzureDevOpsClient:
    """Talks to one Azure DevOps organization over its REST API.

    Work items are listed through WIQL and fetched in batches; query folders
    deeper than the API's two-level ``$depth`` are expanded with follow-up
    requests. Security group data comes from the Graph API on the ``vssps``
    host.
    """

    def __init__(
        self,
        organization_url: str,
        personal_access_token: str | None = None,
        *,
        graph_url: str | None = None,
        api_version: str = "7.1",
        graph_api_version: str = "7.1-preview.1",
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        parsed = urlparse(organization_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("organization_url must include scheme and host")

        self._organization_url = organization_url.rstrip("/")
        if graph_url is None:
            graph_url = f"{parsed.scheme}://vssps.{parsed.netloc}{parsed.path}"
        self._graph_url = graph_url.rstrip("/")
        self._api_version = api_version
        self._graph_api_version = graph_api_version

        auth = httpx.BasicAuth("", personal_access_token) if personal_access_token else None
        self._client = http_client or httpx.Client(timeout=timeout, auth=auth)
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _project_url(self, workspace: WorkspaceRef, path: str) -> str:
        return f"{self._organization_url}/{quote(workspace.id, safe='')}/_apis/{path}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        graph: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        query = {"api-version": self._graph_api_version if graph else self._api_version}
        if params:
            query.update(params)
        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(method, url, params=query, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._translate(exc) from exc
        except httpx.TimeoutException as exc:
            raise RemoteUnavailable(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise RemoteUnavailable(f"{method} {url} failed: {exc}") from exc
        return response

    @staticmethod
    def _translate(exc: httpx.HTTPStatusError) -> RemoteError:
        response = exc.response
        status = response.status_code
        try:
            message = response.json().get("message") or response.text
        except ValueError:
            message = response.text
        message = f"{exc.request.method} {exc.request.url.path} -> {status}: {message}"
        if status in (401, 403):
            return PermissionDenied(message, status_code=status)
        if status == 404:
            return NotFound(message, status_code=status)
        if status == 429 or status >= 500:
            return RemoteUnavailable(message, status_code=status)
        return RemoteError(message, status_code=status)

    def _get_json(self, url: str, **kwargs: Any) -> Any:
        return self._request("GET", url, **kwargs).json()

    @staticmethod
    def _identity_name(value: Any) -> str | None:
        if isinstance(value, dict):
            return value.get("uniqueName") or value.get("displayName")
        return value

    def _parse_work_item(self, data: dict[str, Any]) -> WorkItemRecord:
        fields = data.get("fields") or {}
        values = {name: fields.get(ref) for name, ref in FIELD_MAP.items()}
        values["assigned_to"] = self._identity_name(values["assigned_to"])
        values["title"] = values["title"] or ""
        values["work_item_type"] = values["work_item_type"] or ""
        return WorkItemRecord(id=data["id"], **values)

    @staticmethod
    def _json_patch(fields: WorkItemFields) -> list[dict[str, Any]]:
        changed = fields.changed()
        changed.pop("work_item_type", None)
        return [{"op": "add", "path": f"/fields/{FIELD_MAP[name]}", "value": value} for name, value in changed.items()]

    @staticmethod
    def _parse_node(data: dict[str, Any], structure: str) -> ClassificationNode:
        node = ClassificationNode(id=data["id"], name=data["name"], structure=structure)
        stack = [(data, node)]
        while stack:
            raw, parsed = stack.pop()
            for child in raw.get("children") or []:
                child_node = ClassificationNode(id=child["id"], name=child["name"], structure=structure)
                parsed.children.append(child_node)
                stack.append((child, child_node))
        return node

    @staticmethod
    def _parse_query(data: dict[str, Any]) -> QueryItem:
        return QueryItem(
            id=data["id"],
            name=data["name"],
            path=data.get("path") or data["name"],
            is_folder=bool(data.get("isFolder")),
            wiql=data.get("wiql"),
            is_public=bool(data.get("isPublic", True)),
        )

    # ------------------------------------------------------------------
    # fetches
    # ------------------------------------------------------------------
    def _fetch_work_items(self, workspace: WorkspaceRef) -> list[WorkItemRecord]:
        result = self._request(
            "POST",
            self._project_url(workspace, "wit/wiql"),
            json={"query": ALL_WORK_ITEMS_WIQL},
        ).json()
        ids = [str(item["id"]) for item in result.get("workItems") or []]
        records: list[WorkItemRecord] = []
        for start in range(0, len(ids), WORK_ITEM_BATCH):
            batch = ids[start : start + WORK_ITEM_BATCH]
            payload = self._get_json(
                self._project_url(workspace, "wit/workitems"),
                params={"ids": ",".join(batch), "fields": ",".join(FIELD_MAP.values())},
            )
            records.extend(self._parse_work_item(item) for item in payload.get("value") or [])
        logger.debug("fetched %d work items from %s", len(records), workspace.display_name)
        return records

    def _fetch_classification(self, workspace: WorkspaceRef, structure: str, depth: int | None) -> list[ClassificationNode]:
        params = {"$depth": depth} if depth else None
        data = self._get_json(
            self._project_url(workspace, f"wit/classificationnodes/{STRUCTURE_SEGMENTS[structure]}"),
            params=params,
        )
        return [self._parse_node(data, structure)]

    def _fetch_queries(self, workspace: WorkspaceRef, depth: int | None) -> list[QueryItem]:
        api_depth = min(depth or MAX_QUERY_DEPTH, MAX_QUERY_DEPTH)
        params = {"$depth": api_depth, "$expand": "all"}
        data = self._get_json(self._project_url(workspace, "wit/queries"), params=params)

        roots = [self._parse_query(raw) for raw in data.get("value") or []]
        pending = list(zip(data.get("value") or [], roots, [1] * len(roots)))
        while pending:
            raw, item, level = pending.pop()
            children = raw.get("children")
            if children is None and raw.get("hasChildren") and item.is_folder and (depth is None or level < depth):
                expanded = self._get_json(self._project_url(workspace, f"wit/queries/{raw['id']}"), params=params)
                children = expanded.get("children") or []
            for child_raw in children or []:
                child = self._parse_query(child_raw)
                item.children.append(child)
                pending.append((child_raw, child, level + 1))
        return roots

    def resolve_workspace(self, workspace_id: str) -> WorkspaceRef:
        data = self._get_json(f"{self._organization_url}/_apis/projects/{quote(workspace_id, safe='')}")
        return WorkspaceRef(id=data["id"], display_name=data["name"], host_endpoint=self._organization_url)

    def fetch_records(self, workspace: WorkspaceRef, kind: str, options: FetchOptions | None = None) -> list[Any]:
        depth = options.depth if options else None
        if kind == WORK_ITEM:
            return self._fetch_work_items(workspace)
        if kind in STRUCTURE_SEGMENTS:
            return self._fetch_classification(workspace, kind, depth)
        if kind == QUERY:
            return self._fetch_queries(workspace, depth)
        if kind == WORK_ITEM_TYPE:
            data = self._get_json(self._project_url(workspace, "wit/workitemtypes"))
            return [item["name"] for item in data.get("value") or []]
        raise RemoteError(f"unsupported record kind '{kind}'")

    def fetch_record_detail(self, workspace: WorkspaceRef, record_id: str) -> WorkItemRecord:
        data = self._get_json(self._project_url(workspace, f"wit/workitems/{quote(str(record_id), safe='')}"))
        return self._parse_work_item(data)

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    def create_record(
        self,
        workspace: WorkspaceRef,
        kind: str,
        fields: BaseModel,
        parent_ref: str | None = None,
    ) -> str:
        if kind == WORK_ITEM:
            fields = expect_fields(fields, WorkItemFields, kind)
            work_item_type = fields.work_item_type or "Task"
            response = self._request(
                "POST",
                self._project_url(workspace, f"wit/workitems/${quote(work_item_type, safe='')}"),
                content=json.dumps(self._json_patch(fields)),
                headers={"Content-Type": "application/json-patch+json"},
            )
        elif kind in STRUCTURE_SEGMENTS:
            fields = expect_fields(fields, NodeFields, kind)
            path = STRUCTURE_SEGMENTS[kind]
            if parent_ref:
                path += "/" + "/".join(quote(part, safe="") for part in parent_ref.split(AREA_SEPARATOR) if part)
            response = self._request(
                "POST",
                self._project_url(workspace, f"wit/classificationnodes/{path}"),
                json={"name": fields.name},
            )
        elif kind in (QUERY, QUERY_FOLDER):
            fields = expect_fields(fields, QueryFields, kind)
            body: dict[str, Any] = {"name": fields.name, "isFolder": kind == QUERY_FOLDER}
            if kind == QUERY:
                body["wiql"] = fields.wiql
            parent = quote(parent_ref or "", safe="/")
            response = self._request("POST", self._project_url(workspace, f"wit/queries/{parent}"), json=body)
        else:
            raise RemoteError(f"cannot create records of kind '{kind}'")
        return str(response.json()["id"])

    def _node_path(self, workspace: WorkspaceRef, structure: str, record_id: str) -> str:
        roots = self._fetch_classification(workspace, structure, None)
        stack = [(child, [child.name]) for root in roots for child in root.children]
        while stack:
            node, segments = stack.pop()
            if str(node.id) == str(record_id):
                return "/".join(quote(part, safe="") for part in segments)
            stack.extend((child, [*segments, child.name]) for child in node.children)
        raise NotFound(f"{structure} node {record_id} not found in {workspace.display_name}")

    def update_record(self, workspace: WorkspaceRef, kind: str, record_id: str, patch: BaseModel) -> None:
        if kind == WORK_ITEM:
            patch = expect_fields(patch, WorkItemFields, kind)
            self._request(
                "PATCH",
                self._project_url(workspace, f"wit/workitems/{quote(str(record_id), safe='')}"),
                content=json.dumps(self._json_patch(patch)),
                headers={"Content-Type": "application/json-patch+json"},
            )
        elif kind in STRUCTURE_SEGMENTS:
            patch = expect_fields(patch, NodeFields, kind)
            path = self._node_path(workspace, kind, record_id)
            self._request(
                "PATCH",
                self._project_url(workspace, f"wit/classificationnodes/{STRUCTURE_SEGMENTS[kind]}/{path}"),
                json={"name": patch.name},
            )
        elif kind in (QUERY, QUERY_FOLDER):
            patch = expect_fields(patch, QueryFields, kind)
            body = {key: value for key, value in patch.changed().items() if key in ("name", "wiql")}
            self._request("PATCH", self._project_url(workspace, f"wit/queries/{quote(str(record_id), safe='')}"), json=body)
        else:
            raise RemoteError(f"cannot update records of kind '{kind}'")

    # ------------------------------------------------------------------
    # security groups
    # ------------------------------------------------------------------
    def _graph(self, path: str) -> str:
        return f"{self._graph_url}/_apis/graph/{path}"

    def _find_group(self, workspace: WorkspaceRef, group_name: str) -> dict[str, Any] | None:
        scope = self._get_json(self._graph(f"descriptors/{quote(workspace.id, safe='')}"), graph=True)["value"]
        params: dict[str, Any] = {"scopeDescriptor": scope}
        wanted = normalize(group_name)
        while True:
            response = self._request("GET", self._graph("groups"), params=params, graph=True)
            for group in response.json().get("value") or []:
                if normalize(group.get("displayName")) == wanted:
                    return group
            token = response.headers.get("x-ms-continuationtoken")
            if not token:
                return None
            params = {"scopeDescriptor": scope, "continuationToken": token}

    def _read_members(self, group_descriptor: str) -> list[GroupMember]:
        """Users of a group, following nested groups down to their users."""

        members: list[GroupMember] = []
        visited = {group_descriptor}
        pending = [group_descriptor]
        while pending:
            current = pending.pop()
            memberships = self._get_json(
                self._graph(f"Memberships/{current}"),
                params={"direction": "Down"},
                graph=True,
            )
            for membership in memberships.get("value") or []:
                descriptor = membership.get("memberDescriptor") or ""
                if not descriptor or descriptor in visited:
                    continue
                visited.add(descriptor)
                if descriptor.startswith(GROUP_DESCRIPTOR_PREFIXES):
                    logger.debug("expanding nested group %s of %s", descriptor, current)
                    pending.append(descriptor)
                    continue
                user = self._get_json(self._graph(f"users/{descriptor}"), graph=True)
                member = GroupMember(
                    display_name=user.get("displayName") or "",
                    email=user.get("mailAddress") or "",
                    principal_name=user.get("principalName") or "",
                    descriptor=user.get("descriptor") or descriptor,
                )
                if not any(member.identity_matches(known) for known in members):
                    members.append(member)
        return sorted(members, key=lambda member: member.sort_key)

    def fetch_group_members(self, workspace: WorkspaceRef, group_name: str) -> GroupInfo | None:
        try:
            group = self._find_group(workspace, group_name)
            if group is None:
                logger.warning("group '%s' not found in %s", group_name, workspace.display_name)
                return None
            members = self._read_members(group["descriptor"])
        except (PermissionDenied, NotFound) as exc:
            logger.warning("group '%s' in %s is not accessible: %s", group_name, workspace.display_name, exc)
            return None
        return GroupInfo(
            group_name=group.get("displayName") or group_name,
            principal_name=group.get("principalName"),
            descriptor=group["descriptor"],
            members=members,
        )

    def _member_descriptor(self, member: GroupMember) -> str:
        identity = member.email or member.principal_name
        if not identity:
            raise NotFound(f"member '{member.display_name}' has no email or principal name to look up")
        result = self._request(
            "POST",
            self._graph("subjectquery"),
            json={"query": identity, "subjectKind": ["User"]},
            graph=True,
        ).json()
        for subject in result.get("value") or []:
            if member.identity_matches(
                GroupMember(email=subject.get("mailAddress") or "", principal_name=subject.get("principalName") or "")
            ):
                return subject["descriptor"]
        raise NotFound(f"user '{identity}' is not known to {self._organization_url}")

    def add_group_member(self, workspace: WorkspaceRef, group_name: str, member: GroupMember) -> None:
        group = self._find_group(workspace, group_name)
        if group is None:
            raise NotFound(f"group '{group_name}' not found in {workspace.display_name}")
        subject = self._member_descriptor(member)
        self._request("PUT", self._graph(f"memberships/{subject}/{group['descriptor']}"), graph=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


__all__ = ["AzureDevOpsClient"]
