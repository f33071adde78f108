"""
ClickUp hierarchy endpoints.

Endpoints:
- POST /api/clickup/validate-key - Check an API key against ClickUp
- GET /api/clickup/spaces - Spaces of the workspace's team(s)
- GET /api/clickup/folders - Folders of a space
- GET /api/clickup/lists - Every list of a space, folders flattened
- GET /api/clickup/folder-lists - Lists of a folder
- GET /api/clickup/hierarchy - Spaces, folders and lists in one tree
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import UUID

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from connectors.base import CredentialError, RateLimitExhaustedError, TransientFetchError
from connectors.clickup import VALIDATION_WORKSPACE_ID, ClickUpConnector
from services.task_store import TaskStore

router = APIRouter()
logger = logging.getLogger(__name__)


class ValidateKeyRequest(BaseModel):
    api_key: str


class ValidateKeyResponse(BaseModel):
    valid: bool


def get_store() -> TaskStore:
    return TaskStore()


def build_connector(workspace: Any, store: TaskStore) -> ClickUpConnector:
    return ClickUpConnector.for_workspace(workspace, store)


def build_validation_connector(api_key: str, store: TaskStore) -> ClickUpConnector:
    return ClickUpConnector.from_api_key(VALIDATION_WORKSPACE_ID, api_key, store)


@asynccontextmanager
async def _workspace_connector(workspace_id: str) -> AsyncIterator[tuple[Any, ClickUpConnector]]:
    """Yield the workspace and a connector for it, mapping failures to HTTP errors."""
    try:
        UUID(workspace_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid workspace ID")

    store = get_store()
    workspace = await store.get_active_workspace(workspace_id)
    if workspace is None:
        raise HTTPException(status_code=404, detail="Workspace not found")

    try:
        connector = build_connector(workspace, store)
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=f"Invalid ClickUp credentials: {e}")

    try:
        yield workspace, connector
    except (TransientFetchError, RateLimitExhaustedError) as e:
        logger.warning("ClickUp request failed for workspace %s: %s", workspace_id, e)
        raise HTTPException(status_code=502, detail=f"ClickUp request failed: {e}")
    finally:
        await connector.aclose()


async def _team_ids(workspace: Any, connector: ClickUpConnector) -> list[str]:
    if workspace.clickup_team_id:
        return [workspace.clickup_team_id]
    return [str(team["id"]) for team in await connector.get_teams()]


@router.post("/validate-key", response_model=ValidateKeyResponse)
async def validate_key(request: ValidateKeyRequest) -> ValidateKeyResponse:
    """Return whether ClickUp accepts the given API key."""
    try:
        connector = build_validation_connector(request.api_key, get_store())
    except CredentialError:
        return ValidateKeyResponse(valid=False)

    async with connector:
        try:
            valid = await connector.validate_api_key()
        except RateLimitExhaustedError as e:
            logger.warning("ClickUp key validation was rate limited: %s", e)
            raise HTTPException(status_code=502, detail=f"ClickUp request failed: {e}")
    return ValidateKeyResponse(valid=valid)


@router.get("/spaces")
async def get_spaces(workspace_id: str) -> dict[str, Any]:
    async with _workspace_connector(workspace_id) as (workspace, connector):
        spaces: list[dict[str, Any]] = []
        for team_id in await _team_ids(workspace, connector):
            spaces.extend(await connector.get_spaces(team_id))
    return {"spaces": spaces}


@router.get("/folders")
async def get_folders(workspace_id: str, space_id: str) -> dict[str, Any]:
    async with _workspace_connector(workspace_id) as (_, connector):
        folders = await connector.get_folders(space_id)
    return {"folders": folders}


@router.get("/lists")
async def get_lists(workspace_id: str, space_id: str) -> dict[str, Any]:
    """Folder-less lists first, then the lists of each folder."""
    async with _workspace_connector(workspace_id) as (_, connector):
        refs = await connector.get_space_lists(space_id)
    return {
        "lists": [
            {
                "id": ref.list_id,
                "name": ref.name,
                "folder_id": ref.folder_id,
                "folder_name": ref.folder_name,
            }
            for ref in refs
        ]
    }


@router.get("/folder-lists")
async def get_folder_lists(workspace_id: str, folder_id: str) -> dict[str, Any]:
    async with _workspace_connector(workspace_id) as (_, connector):
        lists = await connector.get_folder_lists(folder_id)
    return {"lists": lists}


@router.get("/hierarchy")
async def get_hierarchy(workspace_id: str) -> dict[str, Any]:
    """Spaces → folders → lists for every team of the workspace."""
    async with _workspace_connector(workspace_id) as (workspace, connector):
        spaces: list[dict[str, Any]] = []
        for team_id in await _team_ids(workspace, connector):
            spaces.extend(await connector.get_hierarchy(team_id))
    return {"spaces": spaces}
