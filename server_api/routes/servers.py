from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from ..core.security import Claims
from ..schemas import (
    AuthMode,
    GalleryImageOut,
    ServerDetail,
    ServerFilters,
    ServerGallery,
    ServerListResponse,
    ServerManagersResponse,
    ServerTotalPlayers,
    ServerType,
    SuccessResponse,
)
from ..services.servers import ServerService, compute_total_pages
from .deps import get_current_claims, get_current_claims_optional, get_server_service

router = APIRouter()


def _user_id(claims: Optional[Claims]) -> Optional[int]:
    return claims.user_id if claims is not None else None


@router.get("/", response_model=ServerListResponse)
async def list_servers(
    page: int = Query(1),
    page_size: int = Query(5),
    is_member: bool = Query(True),
    type: Optional[List[ServerType]] = Query(None),
    auth_mode: Optional[List[AuthMode]] = Query(None),
    tags: Optional[List[str]] = Query(None),
    seed: Optional[int] = Query(None),
    claims: Optional[Claims] = Depends(get_current_claims_optional),
    servers: ServerService = Depends(get_server_service),
):
    filters = ServerFilters(
        is_member=is_member,
        types=[item.value for item in type] if type else None,
        auth_modes=[item.value for item in auth_mode] if auth_mode else None,
        tags=tags,
    )
    records, total = await servers.list_servers(filters, _user_id(claims), page, page_size, seed)
    return ServerListResponse(
        data=records,
        total=total,
        total_pages=compute_total_pages(total, page_size),
    )


@router.get("/players", response_model=ServerTotalPlayers)
async def get_total_players(servers: ServerService = Depends(get_server_service)):
    return ServerTotalPlayers(total_players=await servers.total_players())


@router.get("/{server_id}", response_model=ServerDetail)
async def get_server_detail(
    server_id: int,
    claims: Optional[Claims] = Depends(get_current_claims_optional),
    servers: ServerService = Depends(get_server_service),
):
    return await servers.get_server_detail(server_id, _user_id(claims))


@router.put("/{server_id}", response_model=ServerDetail)
async def update_server(
    server_id: int,
    name: str = Form(""),
    ip: str = Form(""),
    desc: str = Form(""),
    tags: List[str] = Form([]),
    version: str = Form(""),
    link: str = Form(""),
    cover: Optional[UploadFile] = File(None),
    claims: Claims = Depends(get_current_claims),
    servers: ServerService = Depends(get_server_service),
):
    fields = {
        "name": name,
        "ip": ip,
        "desc": desc,
        "tags": tags,
        "version": version,
        "link": link,
    }
    cover_bytes = await cover.read() if cover is not None else None
    return await servers.update_server(server_id, fields, claims.user_id, cover=cover_bytes)


@router.get("/{server_id}/managers", response_model=ServerManagersResponse)
async def get_server_managers(
    server_id: int,
    servers: ServerService = Depends(get_server_service),
):
    return await servers.get_server_managers(server_id)


@router.get("/{server_id}/gallery", response_model=ServerGallery)
async def get_server_gallery(
    server_id: int,
    servers: ServerService = Depends(get_server_service),
):
    return await servers.get_server_gallery(server_id)


@router.post("/{server_id}/gallery", response_model=GalleryImageOut)
async def upload_gallery_image(
    server_id: int,
    title: str = Form(...),
    description: str = Form(""),
    image: UploadFile = File(...),
    claims: Claims = Depends(get_current_claims),
    servers: ServerService = Depends(get_server_service),
):
    content = await image.read()
    return await servers.add_gallery_image(server_id, title, description, content, claims.user_id)


@router.delete("/{server_id}/gallery/{image_id}", response_model=SuccessResponse)
async def delete_gallery_image(
    server_id: int,
    image_id: int,
    claims: Claims = Depends(get_current_claims),
    servers: ServerService = Depends(get_server_service),
):
    await servers.delete_gallery_image(server_id, image_id, claims.user_id)
    return SuccessResponse(message="Gallery image deleted")
