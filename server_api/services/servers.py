import asyncio
import json
import logging
import math
import random
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..core.config import STATIC_BASE_PATH
from ..core.errors import (
    ApiError,
    AuthenticationError,
    AuthorizationError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from ..models import MANAGER_ROLES, File, Server, ServerStats, UserServer
from ..schemas import (
    AuthMode,
    GalleryImageOut,
    ManagerInfo,
    ServerDetail,
    ServerFilters,
    ServerGallery,
    ServerManagersResponse,
    ServerStatus,
    ServerType,
    UpdateServerRequest,
)
from .file_upload import FileUploadService
from .store import ServerStore

logger = logging.getLogger(__name__)

GUEST_PERMISSION = "guest"


def compute_total_pages(total: int, page_size: int) -> int:
    if page_size <= 0:
        raise ValidationError("page_size must be at least 1")
    return int(math.ceil(total / page_size))


def parse_tags(raw: Any) -> Optional[List[str]]:
    """Decode the serialized tag column; None when it is not a JSON array."""
    if raw is None:
        return None
    if isinstance(raw, list):
        values = raw
    else:
        try:
            values = json.loads(raw)
        except (TypeError, ValueError):
            return None
    if not isinstance(values, list):
        return None
    return [value for value in values if isinstance(value, str)]


def server_has_required_tags(raw_tags: Any, required: Sequence[str]) -> bool:
    tags = parse_tags(raw_tags)
    if not tags:
        return False
    wanted = set(required)
    return any(tag in wanted for tag in tags)


def shuffle_servers(servers: List[Any], seed: Optional[int] = None) -> None:
    rng = random.Random(seed) if seed is not None else random.Random()
    rng.shuffle(servers)


def paginate(items: Sequence[Any], page: int, page_size: int) -> List[Any]:
    start = (page - 1) * page_size
    if start >= len(items):
        return []
    return list(items[start:start + page_size])


def build_image_url(file_path: str, static_base: str = STATIC_BASE_PATH) -> str:
    if file_path.startswith("http://") or file_path.startswith("https://"):
        return file_path
    return f"{static_base}/{file_path.lstrip('/')}"


def build_status_map(rows: Iterable[ServerStats]) -> Dict[int, ServerStatus]:
    """Rows must arrive newest first; the first row seen per server wins."""
    statuses: Dict[int, ServerStatus] = {}
    seen = set()
    for row in rows:
        if row.server_id in seen:
            continue
        seen.add(row.server_id)
        status = ServerStatus.from_payload(row.stat_data)
        if status is not None:
            statuses[row.server_id] = status
    return statuses


def build_permission_map(rows: Iterable[UserServer]) -> Dict[int, str]:
    return {row.server_id: row.role for row in rows}


def build_file_map(rows: Iterable[File]) -> Dict[str, str]:
    return {row.hash_value: row.file_path for row in rows}


def to_server_detail(
    server: Server,
    status: Optional[ServerStatus] = None,
    permission: Optional[str] = None,
    cover_url: Optional[str] = None,
) -> ServerDetail:
    return ServerDetail(
        id=server.id,
        name=server.name,
        ip=None if server.is_hide else server.ip,
        type=ServerType.parse(server.type),
        version=server.version or "",
        desc=server.desc or "",
        link=server.link or "",
        is_member=bool(server.is_member),
        auth_mode=AuthMode.parse(server.auth_mode),
        tags=parse_tags(server.tags),
        is_hide=bool(server.is_hide),
        status=status,
        permission=permission or GUEST_PERMISSION,
        cover_url=cover_url,
    )


async def join_all(*aws: Awaitable[Any]) -> List[Any]:
    """Await every lookup concurrently; the first failure cancels the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def _resolved(value: Any) -> Any:
    return value


class ServerService:
    def __init__(
        self,
        store: ServerStore,
        uploads: FileUploadService,
        static_base: str = STATIC_BASE_PATH,
    ):
        self.store = store
        self.uploads = uploads
        self.static_base = static_base

    def image_url(self, file_path: str) -> str:
        return build_image_url(file_path, self.static_base)

    async def list_servers(
        self,
        filters: ServerFilters,
        user_id: Optional[int],
        page: int,
        page_size: int,
        seed: Optional[int] = None,
    ) -> Tuple[List[ServerDetail], int]:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if page_size < 1:
            raise ValidationError("page_size must be at least 1")

        servers = await self.store.fetch_servers(
            is_member=filters.is_member,
            types=filters.types,
            auth_modes=filters.auth_modes,
        )
        if filters.tags:
            servers = [s for s in servers if server_has_required_tags(s.tags, filters.tags)]
        total = len(servers)

        shuffle_servers(servers, seed)
        page_servers = paginate(servers, page, page_size)
        if not page_servers:
            return [], total

        server_ids = [server.id for server in page_servers]
        cover_hashes = sorted({s.cover_hash_id for s in page_servers if s.cover_hash_id})
        try:
            status_rows, permission_rows, cover_files = await join_all(
                self.store.fetch_status_rows(server_ids),
                self._fetch_permissions(user_id, server_ids),
                self.store.fetch_files(cover_hashes),
            )
        except Exception as exc:
            logger.error(
                "Server enrichment failed for servers %s (user %s): %s", server_ids, user_id, exc
            )
            raise InternalError(f"Enrichment failed for servers {server_ids}: {exc}") from exc

        statuses = build_status_map(status_rows)
        permissions = build_permission_map(permission_rows)
        covers = build_file_map(cover_files)
        records = [
            to_server_detail(
                server,
                status=statuses.get(server.id),
                permission=permissions.get(server.id),
                cover_url=self._cover_url(server, covers),
            )
            for server in page_servers
        ]
        return records, total

    async def _fetch_permissions(self, user_id: Optional[int], server_ids: List[int]) -> List[UserServer]:
        if user_id is None:
            return []
        return await self.store.fetch_permissions(user_id, server_ids)

    async def _fetch_role(self, user_id: Optional[int], server_id: int) -> Optional[str]:
        if user_id is None:
            return None
        return await self.store.fetch_role(user_id, server_id)

    async def _fetch_cover(self, cover_hash: Optional[str]) -> List[File]:
        if not cover_hash:
            return []
        return await self.store.fetch_files([cover_hash])

    def _cover_url(self, server: Server, covers: Dict[str, str]) -> Optional[str]:
        if not server.cover_hash_id:
            return None
        file_path = covers.get(server.cover_hash_id)
        return self.image_url(file_path) if file_path else None

    async def get_server_detail(
        self,
        server_id: int,
        user_id: Optional[int] = None,
        require_login: bool = False,
    ) -> ServerDetail:
        role: Optional[str] = None
        if require_login:
            if user_id is None:
                raise AuthenticationError("Login required")
            role = await self.store.fetch_role(user_id, server_id)
            if role is None:
                raise AuthenticationError("No permission to access this server")

        server = await self.store.get_server(server_id)
        if server is None:
            raise NotFoundError("Server not found", server_id=server_id)

        role_lookup = _resolved(role) if require_login else self._fetch_role(user_id, server_id)
        try:
            status_row, role, cover_files = await join_all(
                self.store.fetch_latest_status(server.id),
                role_lookup,
                self._fetch_cover(server.cover_hash_id),
            )
        except Exception as exc:
            logger.error(
                "Server enrichment failed for server %s (user %s): %s", server_id, user_id, exc
            )
            raise InternalError(f"Enrichment failed for server {server_id}: {exc}") from exc

        status = ServerStatus.from_payload(status_row.stat_data) if status_row else None
        return to_server_detail(
            server,
            status=status,
            permission=role,
            cover_url=self._cover_url(server, build_file_map(cover_files)),
        )

    async def require_manager(self, server_id: int, user_id: int) -> str:
        role = await self.store.fetch_role(user_id, server_id)
        if role not in MANAGER_ROLES:
            raise AuthorizationError("No permission to manage this server", server_id=server_id)
        return role

    async def _require_server(self, server_id: int) -> Server:
        server = await self.store.get_server(server_id)
        if server is None:
            raise NotFoundError("Server not found", server_id=server_id)
        return server

    async def update_server(
        self,
        server_id: int,
        fields: Dict[str, Any],
        user_id: int,
        cover: Optional[bytes] = None,
    ) -> ServerDetail:
        await self._require_server(server_id)
        await self.require_manager(server_id, user_id)

        if all(not str(fields.get(key) or "").strip() for key in ("name", "ip", "desc")):
            raise ValidationError("Server name, address and description must not all be empty")
        try:
            data = UpdateServerRequest(**fields)
        except PydanticValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise ValidationError(f"Invalid parameters: {problems}") from exc

        values = {
            "name": data.name,
            "ip": data.ip,
            "desc": data.desc,
            "tags": json.dumps(data.tags, ensure_ascii=False),
            "version": data.version,
            "link": data.link,
        }
        if cover:
            cover_file = await self.uploads.upload_image(cover, "cover")
            values["cover_hash_id"] = cover_file.hash_value

        await self.store.update_server(server_id, values)
        logger.info("Server %s updated by user %s", server_id, user_id)
        return await self.get_server_detail(server_id, user_id, require_login=True)

    async def get_server_managers(self, server_id: int) -> ServerManagersResponse:
        await self._require_server(server_id)
        managers = await self.store.fetch_managers(server_id)
        avatar_hashes = sorted({user.avatar_hash_id for _, user in managers if user.avatar_hash_id})
        avatars = build_file_map(await self.store.fetch_files(avatar_hashes))

        owners: List[ManagerInfo] = []
        admins: List[ManagerInfo] = []
        for role, user in managers:
            avatar_path = avatars.get(user.avatar_hash_id) if user.avatar_hash_id else None
            info = ManagerInfo(
                id=user.id,
                display_name=user.display_name or user.username,
                is_active=bool(user.is_active),
                avatar_url=self.image_url(avatar_path) if avatar_path else None,
            )
            (owners if role == "owner" else admins).append(info)
        return ServerManagersResponse(owners=owners, admins=admins)

    async def get_server_gallery(self, server_id: int) -> ServerGallery:
        server = await self._require_server(server_id)
        if server.gallery_id is None:
            return ServerGallery(id=server.id, name=server.name, gallery_images=[])

        images = await self.store.fetch_gallery_images(server.gallery_id)
        files = build_file_map(
            await self.store.fetch_files({image.image_hash_id for image in images})
        )
        gallery_images = []
        for image in images:
            file_path = files.get(image.image_hash_id)
            if file_path is None:
                logger.warning(
                    "Gallery image %s of server %s references missing file %s",
                    image.id,
                    server_id,
                    image.image_hash_id,
                )
                continue
            gallery_images.append(
                GalleryImageOut(
                    id=image.id,
                    title=image.title,
                    description=image.description,
                    image_url=self.image_url(file_path),
                )
            )
        return ServerGallery(id=server.id, name=server.name, gallery_images=gallery_images)

    async def add_gallery_image(
        self,
        server_id: int,
        title: str,
        description: str,
        content: bytes,
        user_id: int,
    ) -> GalleryImageOut:
        await self._require_server(server_id)
        await self.require_manager(server_id, user_id)
        if not title.strip():
            raise ValidationError("Image title must not be empty")

        file = await self.uploads.upload_image(content, "gallery")
        gallery_id = await self.store.ensure_gallery(server_id)
        image = await self.store.add_gallery_image(gallery_id, title, description, file.hash_value)
        logger.info("Image %s added to gallery of server %s", image.id, server_id)
        return GalleryImageOut(
            id=image.id,
            title=image.title,
            description=image.description,
            image_url=self.image_url(file.file_path),
        )

    async def delete_gallery_image(self, server_id: int, image_id: int, user_id: int) -> None:
        server = await self._require_server(server_id)
        await self.require_manager(server_id, user_id)

        image = await self.store.get_gallery_image(image_id)
        if image is None:
            raise NotFoundError("Gallery image not found", image_id=image_id)
        if server.gallery_id is None or image.gallery_id != server.gallery_id:
            raise AuthorizationError(
                "Image does not belong to this server", server_id=server_id, image_id=image_id
            )

        await self.store.delete_gallery_image(image_id)
        if await self.store.count_file_references(image.image_hash_id) > 0:
            return
        file = await self.store.get_file(image.image_hash_id)
        if file is None:
            return
        try:
            await self.uploads.delete(file)
        except ApiError as exc:
            # Row stays so the object can be found again for cleanup.
            logger.warning("Failed to delete stored image %s: %s", file.hash_value, exc)
            return
        await self.store.delete_file(file.hash_value)

    async def total_players(self) -> int:
        statuses = build_status_map(await self.store.fetch_status_rows())
        return sum(status.players.get("online", 0) for status in statuses.values())
