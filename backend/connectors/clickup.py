"""
ClickUp connector – walks the space → folder → list hierarchy and fetches tasks.

ClickUp calls the top-level organisation a "team". Inside a team, spaces hold
folder-less lists and folders; folders hold lists; lists own tasks.

Crawl order inside a space is folder-less lists first, then each folder's
lists in the order ClickUp returned the folders. A failure listing one
folder's lists is logged and that folder is skipped; any other fetch failure
surfaces as ``TransientFetchError`` for the caller to decide on.

All HTTP goes through one ``ClickUpClient`` so quota tracking and audit
logging cover every call.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import httpx

from connectors.base import BaseConnector, TransientFetchError
from connectors.clickup_client import ClickUpClient

if TYPE_CHECKING:
    from models.workspace import Workspace
    from services.task_store import TaskStore

logger = logging.getLogger(__name__)

# Non-UUID workspace id used for key validation; keeps audit logging off
VALIDATION_WORKSPACE_ID: str = "key-validation"

TASK_QUERY: dict[str, Any] = {
    "order_by": "created",
    "subtasks": "true",
    "include_closed": "true",
    "archived": "false",
}


@dataclass(frozen=True)
class ListRef:
    """A task-owning list and where it sits in the hierarchy."""

    list_id: str
    name: Optional[str]
    space_id: Optional[str]
    space_name: Optional[str]
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None


def _dedupe(refs: list[ListRef]) -> list[ListRef]:
    seen: set[str] = set()
    unique: list[ListRef] = []
    for ref in refs:
        if ref.list_id in seen:
            continue
        seen.add(ref.list_id)
        unique.append(ref)
    return unique


class ClickUpConnector(BaseConnector):
    """Connector for ClickUp – hierarchy discovery and task fetches."""

    source_system: str = "clickup"

    def __init__(
        self,
        workspace_id: str,
        client: ClickUpClient,
        store: Optional["TaskStore"] = None,
    ) -> None:
        super().__init__(workspace_id, store)
        self.client = client

    @classmethod
    def from_api_key(
        cls,
        workspace_id: str,
        api_key: str,
        store: Optional["TaskStore"] = None,
        **client_kwargs: Any,
    ) -> "ClickUpConnector":
        """Build a connector (and its client) from a plaintext API key."""
        if store is None:
            from services.task_store import TaskStore

            store = TaskStore()
        client = ClickUpClient(workspace_id, api_key, store, **client_kwargs)
        return cls(workspace_id, client, store)

    @classmethod
    def for_workspace(
        cls,
        workspace: "Workspace",
        store: Optional["TaskStore"] = None,
        **client_kwargs: Any,
    ) -> "ClickUpConnector":
        """Decrypt the workspace's stored key and build a connector for it."""
        from services.credentials import decrypt_secret

        api_key: str = decrypt_secret(workspace.encrypted_api_key, workspace.api_key_iv)
        return cls.from_api_key(str(workspace.id), api_key, store, **client_kwargs)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "ClickUpConnector":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── REST helpers ─────────────────────────────────────────────────────

    async def _get(self, scope: str, scope_id: str, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            return await self.client.get_json(path, params)
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to fetch ClickUp %s %s: %s",
                scope,
                scope_id,
                exc,
                extra={"workspace_id": self.workspace_id, "scope": scope, "scope_id": scope_id},
            )
            raise TransientFetchError(scope, scope_id, str(exc) or type(exc).__name__) from exc

    # ── Key validation ───────────────────────────────────────────────────

    async def validate_api_key(self) -> bool:
        """Return True when ClickUp accepts the key (``GET /user``)."""
        try:
            await self.client.get_json("/user")
        except httpx.HTTPError as exc:
            logger.warning("ClickUp API key validation failed: %s", exc)
            return False
        return True

    # ── Hierarchy ────────────────────────────────────────────────────────

    async def get_teams(self) -> list[dict[str, Any]]:
        return (await self._get("teams", self.workspace_id, "/team")).get("teams") or []

    async def get_spaces(self, team_id: str) -> list[dict[str, Any]]:
        data = await self._get("team", team_id, f"/team/{team_id}/space", {"archived": "false"})
        return data.get("spaces") or []

    async def get_space(self, space_id: str) -> dict[str, Any]:
        return await self._get("space", space_id, f"/space/{space_id}")

    async def get_folders(self, space_id: str) -> list[dict[str, Any]]:
        data = await self._get("space", space_id, f"/space/{space_id}/folder", {"archived": "false"})
        return data.get("folders") or []

    async def get_folder_lists(self, folder_id: str) -> list[dict[str, Any]]:
        data = await self._get("folder", folder_id, f"/folder/{folder_id}/list", {"archived": "false"})
        return data.get("lists") or []

    async def get_folderless_lists(self, space_id: str) -> list[dict[str, Any]]:
        data = await self._get("space", space_id, f"/space/{space_id}/list", {"archived": "false"})
        return data.get("lists") or []

    async def get_list(self, list_id: str) -> ListRef:
        """Resolve a single list id to its place in the hierarchy."""
        data = await self._get("list", list_id, f"/list/{list_id}")
        folder: dict[str, Any] = data.get("folder") or {}
        space: dict[str, Any] = data.get("space") or {}
        return ListRef(
            list_id=str(data.get("id") or list_id),
            name=data.get("name"),
            space_id=space.get("id"),
            space_name=space.get("name"),
            # ClickUp reports folder-less lists under a hidden folder
            folder_id=None if folder.get("hidden") else folder.get("id"),
            folder_name=None if folder.get("hidden") else folder.get("name"),
        )

    async def get_space_lists(
        self, space_id: str, space_name: Optional[str] = None
    ) -> list[ListRef]:
        """
        Flatten one space into its lists: folder-less lists first, then the
        lists of each folder. A folder whose lists cannot be fetched is
        skipped with a warning.
        """
        refs: list[ListRef] = [
            ListRef(
                list_id=str(lst["id"]),
                name=lst.get("name"),
                space_id=space_id,
                space_name=space_name,
            )
            for lst in await self.get_folderless_lists(space_id)
        ]

        for folder in await self.get_folders(space_id):
            folder_id: str = str(folder["id"])
            try:
                folder_lists = await self.get_folder_lists(folder_id)
            except TransientFetchError as exc:
                logger.warning(
                    "Skipping folder %s in space %s: %s",
                    folder_id,
                    space_id,
                    exc,
                    extra={"workspace_id": self.workspace_id, "space_id": space_id, "folder_id": folder_id},
                )
                continue
            refs.extend(
                ListRef(
                    list_id=str(lst["id"]),
                    name=lst.get("name"),
                    space_id=space_id,
                    space_name=space_name,
                    folder_id=folder_id,
                    folder_name=folder.get("name"),
                )
                for lst in folder_lists
            )

        return _dedupe(refs)

    async def list_all_lists(self, team_ids: list[str]) -> list[ListRef]:
        """Every list of every space under the given teams, without duplicates."""
        refs: list[ListRef] = []
        for team_id in team_ids:
            for space in await self.get_spaces(team_id):
                refs.extend(await self.get_space_lists(str(space["id"]), space.get("name")))
        return _dedupe(refs)

    async def get_hierarchy(self, team_id: str) -> list[dict[str, Any]]:
        """Spaces → folders → lists (with task counts) for the hierarchy view."""
        hierarchy: list[dict[str, Any]] = []
        for space in await self.get_spaces(team_id):
            space_id: str = str(space["id"])
            folders: list[dict[str, Any]] = []
            for folder in await self.get_folders(space_id):
                lists = await self.get_folder_lists(str(folder["id"]))
                folders.append({
                    "id": str(folder["id"]),
                    "name": folder.get("name"),
                    "lists": [_list_summary(lst) for lst in lists],
                })
            hierarchy.append({
                "id": space_id,
                "name": space.get("name"),
                "folders": folders,
                "lists": [_list_summary(lst) for lst in await self.get_folderless_lists(space_id)],
            })
        return hierarchy

    # ── Tasks ────────────────────────────────────────────────────────────

    async def get_tasks(self, list_id: str) -> list[dict[str, Any]]:
        """All tasks of one list (closed and subtasks included), in API order."""
        try:
            tasks = await self.client.fetch_all_pages(f"/list/{list_id}/task", TASK_QUERY, "tasks")
        except httpx.HTTPError as exc:
            raise TransientFetchError("list", list_id, str(exc) or type(exc).__name__) from exc
        logger.info(
            "Fetched %d tasks from list %s",
            len(tasks),
            list_id,
            extra={"workspace_id": self.workspace_id, "list_id": list_id},
        )
        return tasks

    async def list_all_tasks_under_space(
        self, space_id: str, space_name: Optional[str] = None
    ) -> list[tuple[ListRef, dict[str, Any]]]:
        """
        Tasks of every list in a space, paired with the list they came from.

        A list whose tasks cannot be fetched fails the whole space.
        """
        results: list[tuple[ListRef, dict[str, Any]]] = []
        for ref in await self.get_space_lists(space_id, space_name):
            for task in await self.get_tasks(ref.list_id):
                results.append((ref, task))
        return results


def _list_summary(lst: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(lst["id"]),
        "name": lst.get("name"),
        "task_count": lst.get("task_count"),
    }
