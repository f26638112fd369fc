from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..schemas import AuthMode, SearchParams, SearchResponse, ServerType
from ..services.search import SearchClient
from .deps import get_search_client

router = APIRouter()


@router.get("/", response_model=SearchResponse)
async def search_servers(
    query: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=0),
    offset: Optional[int] = Query(None, ge=0),
    server_type: Optional[ServerType] = Query(None, alias="type"),
    tags: Optional[str] = Query(None, description="Comma separated"),
    auth_mode: Optional[AuthMode] = Query(None),
    is_member: Optional[bool] = Query(None),
    sort: Optional[str] = Query(None),
    search: SearchClient = Depends(get_search_client),
):
    params = SearchParams(
        query=query,
        limit=limit,
        offset=offset,
        server_type=server_type,
        tags=tags,
        auth_mode=auth_mode,
        is_member=is_member,
        sort=sort,
    )
    return await search.search(params)
