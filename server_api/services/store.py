import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import DatabaseError
from ..db import SessionLocal
from ..models import (
    MANAGER_ROLES,
    File,
    Gallery,
    GalleryImage,
    Server,
    ServerStats,
    User,
    UserServer,
)

logger = logging.getLogger(__name__)


class ServerStore:
    """Record store for servers and everything hanging off them.

    Every public method is a coroutine that runs its query on a worker
    thread with a session of its own, so several lookups can be awaited
    concurrently without sharing a connection.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._call, fn, *args)

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        db = self.session_factory()
        try:
            return fn(db, *args)
        except SQLAlchemyError as exc:
            db.rollback()
            raise DatabaseError(
                f"{fn.__name__} failed: {exc}",
                operation=fn.__name__.lstrip("_"),
            ) from exc
        finally:
            db.close()

    # servers

    async def fetch_servers(
        self,
        is_member: bool = True,
        types: Optional[Sequence[str]] = None,
        auth_modes: Optional[Sequence[str]] = None,
    ) -> List[Server]:
        return await self._run(self._fetch_servers, is_member, types, auth_modes)

    @staticmethod
    def _fetch_servers(db: Session, is_member, types, auth_modes) -> List[Server]:
        query = db.query(Server)
        if is_member:
            query = query.filter(Server.is_member.is_(True))
        if types:
            query = query.filter(Server.type.in_(list(types)))
        if auth_modes:
            query = query.filter(Server.auth_mode.in_(list(auth_modes)))
        return query.order_by(Server.id.asc()).all()

    async def fetch_all_servers(self) -> List[Server]:
        return await self._run(self._fetch_all_servers)

    @staticmethod
    def _fetch_all_servers(db: Session) -> List[Server]:
        return db.query(Server).order_by(Server.id.asc()).all()

    async def get_server(self, server_id: int) -> Optional[Server]:
        return await self._run(self._get_server, server_id)

    @staticmethod
    def _get_server(db: Session, server_id: int) -> Optional[Server]:
        return db.query(Server).filter(Server.id == server_id).first()

    async def update_server(self, server_id: int, values: dict) -> Optional[Server]:
        return await self._run(self._update_server, server_id, values)

    @staticmethod
    def _update_server(db: Session, server_id: int, values: dict) -> Optional[Server]:
        server = db.query(Server).filter(Server.id == server_id).first()
        if server is None:
            return None
        for key, value in values.items():
            setattr(server, key, value)
        db.commit()
        db.refresh(server)
        return server

    # status snapshots

    async def fetch_status_rows(self, server_ids: Optional[Iterable[int]] = None) -> List[ServerStats]:
        """Snapshots newest first; all servers when ``server_ids`` is None."""
        ids = None if server_ids is None else list(server_ids)
        return await self._run(self._fetch_status_rows, ids)

    @staticmethod
    def _fetch_status_rows(db: Session, server_ids: Optional[List[int]]) -> List[ServerStats]:
        query = db.query(ServerStats)
        if server_ids is not None:
            if not server_ids:
                return []
            query = query.filter(ServerStats.server_id.in_(server_ids))
        return query.order_by(ServerStats.timestamp.desc(), ServerStats.id.desc()).all()

    async def fetch_latest_status(self, server_id: int) -> Optional[ServerStats]:
        return await self._run(self._fetch_latest_status, server_id)

    @staticmethod
    def _fetch_latest_status(db: Session, server_id: int) -> Optional[ServerStats]:
        return (
            db.query(ServerStats)
            .filter(ServerStats.server_id == server_id)
            .order_by(ServerStats.timestamp.desc(), ServerStats.id.desc())
            .first()
        )

    # permissions

    async def fetch_permissions(self, user_id: int, server_ids: Iterable[int]) -> List[UserServer]:
        return await self._run(self._fetch_permissions, user_id, list(server_ids))

    @staticmethod
    def _fetch_permissions(db: Session, user_id: int, server_ids: List[int]) -> List[UserServer]:
        if not server_ids:
            return []
        return (
            db.query(UserServer)
            .filter(UserServer.user_id == user_id, UserServer.server_id.in_(server_ids))
            .all()
        )

    async def fetch_role(self, user_id: int, server_id: int) -> Optional[str]:
        return await self._run(self._fetch_role, user_id, server_id)

    @staticmethod
    def _fetch_role(db: Session, user_id: int, server_id: int) -> Optional[str]:
        row = (
            db.query(UserServer.role)
            .filter(UserServer.user_id == user_id, UserServer.server_id == server_id)
            .first()
        )
        return row[0] if row else None

    async def fetch_managers(self, server_id: int) -> List[Tuple[str, User]]:
        return await self._run(self._fetch_managers, server_id)

    @staticmethod
    def _fetch_managers(db: Session, server_id: int) -> List[Tuple[str, User]]:
        rows = (
            db.query(UserServer.role, User)
            .join(User, User.id == UserServer.user_id)
            .filter(UserServer.server_id == server_id, UserServer.role.in_(MANAGER_ROLES))
            .order_by(User.id.asc())
            .all()
        )
        return [(role, user) for role, user in rows]

    # files

    async def fetch_files(self, hashes: Iterable[str]) -> List[File]:
        return await self._run(self._fetch_files, list(hashes))

    @staticmethod
    def _fetch_files(db: Session, hashes: List[str]) -> List[File]:
        if not hashes:
            return []
        return db.query(File).filter(File.hash_value.in_(hashes)).all()

    async def get_file(self, hash_value: str) -> Optional[File]:
        return await self._run(self._get_file, hash_value)

    @staticmethod
    def _get_file(db: Session, hash_value: str) -> Optional[File]:
        return db.query(File).filter(File.hash_value == hash_value).first()

    async def insert_file(self, hash_value: str, file_path: str) -> Tuple[File, bool]:
        """Insert a file row; returns ``(row, created)``.

        A concurrent insert of the same hash is not an error: the row that
        won is returned with ``created`` False.
        """
        return await self._run(self._insert_file, hash_value, file_path)

    @staticmethod
    def _insert_file(db: Session, hash_value: str, file_path: str) -> Tuple[File, bool]:
        row = File(hash_value=hash_value, file_path=file_path)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.query(File).filter(File.hash_value == hash_value).first()
            if existing is None:
                raise
            return existing, False
        return row, True

    async def delete_file(self, hash_value: str) -> None:
        await self._run(self._delete_file, hash_value)

    @staticmethod
    def _delete_file(db: Session, hash_value: str) -> None:
        db.query(File).filter(File.hash_value == hash_value).delete(synchronize_session=False)
        db.commit()

    async def count_file_references(self, hash_value: str) -> int:
        return await self._run(self._count_file_references, hash_value)

    @staticmethod
    def _count_file_references(db: Session, hash_value: str) -> int:
        images = (
            db.query(func.count(GalleryImage.id))
            .filter(GalleryImage.image_hash_id == hash_value)
            .scalar()
        )
        covers = db.query(func.count(Server.id)).filter(Server.cover_hash_id == hash_value).scalar()
        avatars = db.query(func.count(User.id)).filter(User.avatar_hash_id == hash_value).scalar()
        return int(images or 0) + int(covers or 0) + int(avatars or 0)

    # gallery

    async def ensure_gallery(self, server_id: int) -> int:
        return await self._run(self._ensure_gallery, server_id)

    @staticmethod
    def _ensure_gallery(db: Session, server_id: int) -> int:
        server = db.query(Server).filter(Server.id == server_id).with_for_update().first()
        if server is None:
            raise DatabaseError(f"server {server_id} vanished while creating gallery")
        if server.gallery_id is not None:
            return server.gallery_id
        gallery = Gallery()
        db.add(gallery)
        db.flush()
        server.gallery_id = gallery.id
        db.commit()
        logger.info("Created gallery %s for server %s", gallery.id, server_id)
        return gallery.id

    async def fetch_gallery_images(self, gallery_id: int) -> List[GalleryImage]:
        return await self._run(self._fetch_gallery_images, gallery_id)

    @staticmethod
    def _fetch_gallery_images(db: Session, gallery_id: int) -> List[GalleryImage]:
        return (
            db.query(GalleryImage)
            .filter(GalleryImage.gallery_id == gallery_id)
            .order_by(GalleryImage.id.asc())
            .all()
        )

    async def add_gallery_image(
        self, gallery_id: int, title: str, description: str, image_hash: str
    ) -> GalleryImage:
        return await self._run(self._add_gallery_image, gallery_id, title, description, image_hash)

    @staticmethod
    def _add_gallery_image(
        db: Session, gallery_id: int, title: str, description: str, image_hash: str
    ) -> GalleryImage:
        image = GalleryImage(
            gallery_id=gallery_id,
            title=title,
            description=description,
            image_hash_id=image_hash,
        )
        db.add(image)
        db.commit()
        db.refresh(image)
        return image

    async def get_gallery_image(self, image_id: int) -> Optional[GalleryImage]:
        return await self._run(self._get_gallery_image, image_id)

    @staticmethod
    def _get_gallery_image(db: Session, image_id: int) -> Optional[GalleryImage]:
        return db.query(GalleryImage).filter(GalleryImage.id == image_id).first()

    async def delete_gallery_image(self, image_id: int) -> None:
        await self._run(self._delete_gallery_image, image_id)

    @staticmethod
    def _delete_gallery_image(db: Session, image_id: int) -> None:
        db.query(GalleryImage).filter(GalleryImage.id == image_id).delete(synchronize_session=False)
        db.commit()

    # users

    async def find_user(self, username_or_email: str) -> Optional[User]:
        return await self._run(self._find_user, username_or_email)

    @staticmethod
    def _find_user(db: Session, username_or_email: str) -> Optional[User]:
        if "@" in username_or_email:
            return db.query(User).filter(User.email == username_or_email).first()
        return db.query(User).filter(User.username == username_or_email).first()

    async def email_exists(self, email: str) -> bool:
        return await self._run(self._email_exists, email)

    @staticmethod
    def _email_exists(db: Session, email: str) -> bool:
        return db.query(User.id).filter(User.email == email).first() is not None

    async def record_login(self, user_id: int, ip: Optional[str]) -> None:
        await self._run(self._record_login, user_id, ip)

    @staticmethod
    def _record_login(db: Session, user_id: int, ip: Optional[str]) -> None:
        db.query(User).filter(User.id == user_id).update(
            {User.last_login: datetime.utcnow(), User.last_login_ip: ip},
            synchronize_session=False,
        )
        db.commit()
