import asyncio
import logging
import time
from typing import Any, Dict

import requests

from ..core.config import (
    MEILISEARCH_API_KEY,
    MEILISEARCH_INDEX,
    MEILISEARCH_TIMEOUT_SECONDS,
    MEILISEARCH_URL,
    SEARCH_MAX_LIMIT,
)
from ..core.errors import UpstreamUnavailableError
from ..models import Server
from ..schemas import SearchParams, SearchResponse, ServerSearchHit
from .servers import parse_tags
from .store import ServerStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10

SEARCHABLE_ATTRIBUTES = ["name", "desc", "ip", "tags", "type", "version"]
FILTERABLE_ATTRIBUTES = ["type", "tags", "auth_mode", "is_member", "is_hide", "version"]
SORTABLE_ATTRIBUTES = ["id", "name", "is_member"]

SORT_OPTIONS = {
    "name_asc": ["name:asc"],
    "name_desc": ["name:desc"],
    "member_first": ["is_member:desc", "name:asc"],
}


class SearchUnavailableError(UpstreamUnavailableError):
    public_message = "Search service unavailable"


def server_document(server: Server) -> Dict[str, Any]:
    return {
        "id": server.id,
        "name": server.name,
        "type": server.type,
        "version": server.version,
        "desc": server.desc,
        "link": server.link,
        "ip": None if server.is_hide else server.ip,
        "is_member": bool(server.is_member),
        "is_hide": bool(server.is_hide),
        "auth_mode": server.auth_mode,
        "tags": parse_tags(server.tags),
    }


def _to_hit(document: Dict[str, Any]) -> ServerSearchHit:
    hit = ServerSearchHit(
        id=document["id"],
        name=document.get("name") or "",
        ip=document.get("ip"),
        type=document.get("type") or "JAVA",
        version=document.get("version") or "",
        desc=document.get("desc") or "",
        link=document.get("link") or "",
        is_member=bool(document.get("is_member")),
        auth_mode=document.get("auth_mode") or "OFFICIAL",
        is_hide=bool(document.get("is_hide")),
        tags=parse_tags(document.get("tags")),
    )
    if hit.is_hide:
        hit.ip = None
    return hit


class SearchClient:
    """Thin Meilisearch client over its HTTP API."""

    def __init__(
        self,
        base_url: str = MEILISEARCH_URL,
        api_key: str = MEILISEARCH_API_KEY,
        index: str = MEILISEARCH_INDEX,
        timeout: float = MEILISEARCH_TIMEOUT_SECONDS,
        http: Any = requests,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.index = index
        self.timeout = timeout
        self.http = http

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, path: str, body: Any = None) -> Any:
        url = f"{self.base_url}/indexes/{self.index}{path}"
        try:
            resp = self.http.request(
                method, url, headers=self._headers(), json=body, timeout=self.timeout
            )
            resp.raise_for_status()
            return resp.json() if resp.content else None
        except (requests.RequestException, ValueError) as exc:
            raise SearchUnavailableError(f"Meilisearch {method} {path} failed: {exc}") from exc

    async def _call(self, method: str, path: str, body: Any = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, body)

    async def init_index(self) -> None:
        await self._call("PUT", "/settings/searchable-attributes", SEARCHABLE_ATTRIBUTES)
        await self._call("PUT", "/settings/filterable-attributes", FILTERABLE_ATTRIBUTES)
        await self._call("PUT", "/settings/sortable-attributes", SORTABLE_ATTRIBUTES)
        logger.info("Search index %s configured", self.index)

    async def sync_servers(self, store: ServerStore) -> int:
        servers = await store.fetch_all_servers()
        documents = [server_document(server) for server in servers]
        await self._call("POST", "/documents?primaryKey=id", documents)
        logger.info("Synced %s servers to search index", len(documents))
        return len(documents)

    async def sync_loop(self, store: ServerStore, interval: float) -> None:
        logger.info("Search index sync running every %s seconds", interval)
        while True:
            try:
                await self.sync_servers(store)
            except Exception:
                logger.exception("Search index sync failed")
            await asyncio.sleep(interval)

    async def search(self, params: SearchParams) -> SearchResponse:
        started = time.perf_counter()
        limit = min(params.limit if params.limit is not None else DEFAULT_LIMIT, SEARCH_MAX_LIMIT)
        offset = params.offset or 0

        body: Dict[str, Any] = {"limit": limit, "offset": offset}
        if params.query and params.query.strip():
            body["q"] = params.query
        filter_string = params.parse_filters().to_filter_string()
        if filter_string:
            body["filter"] = filter_string
        sort = SORT_OPTIONS.get(params.sort or "")
        if sort:
            body["sort"] = sort

        result = await self._call("POST", "/search", body) or {}
        hits = [_to_hit(doc) for doc in result.get("hits") or [] if isinstance(doc, dict)]
        return SearchResponse(
            hits=hits,
            total=int(result.get("estimatedTotalHits") or 0),
            limit=limit,
            offset=offset,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

