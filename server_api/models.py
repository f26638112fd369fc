from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base

SERVER_TYPES = ("JAVA", "BEDROCK")
AUTH_MODES = ("OFFICIAL", "OFFLINE", "YGGDRASIL")
MANAGER_ROLES = ("owner", "admin")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(120), nullable=False, default="")
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), default="user")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)
    last_login_ip = Column(String(64), nullable=True)
    avatar_hash_id = Column(String(64), ForeignKey("files.hash_value"), nullable=True)


class File(Base):
    __tablename__ = "files"

    hash_value = Column(String(64), primary_key=True)
    file_path = Column(String(1024), nullable=False)


class Gallery(Base):
    __tablename__ = "gallery"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class GalleryImage(Base):
    __tablename__ = "gallery_image"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gallery_id = Column(Integer, ForeignKey("gallery.id"), index=True, nullable=False)
    title = Column(String(100), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    image_hash_id = Column(String(64), ForeignKey("files.hash_value"), nullable=False)


class Server(Base):
    __tablename__ = "server"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    type = Column(String(50), index=True, nullable=False, default="JAVA")
    version = Column(String(50), nullable=False, default="")
    desc = Column(Text, nullable=False, default="")
    link = Column(String(500), nullable=False, default="")
    ip = Column(String(255), nullable=False, default="")
    is_member = Column(Boolean, index=True, nullable=False, default=False)
    is_hide = Column(Boolean, nullable=False, default=False)
    auth_mode = Column(String(50), index=True, nullable=False, default="OFFICIAL")
    # Serialized JSON array; filtered in-process, see services.servers.
    tags = Column(Text, nullable=False, default="[]")
    cover_hash_id = Column(String(64), ForeignKey("files.hash_value"), nullable=True)
    gallery_id = Column(Integer, ForeignKey("gallery.id"), nullable=True)


class ServerStats(Base):
    __tablename__ = "server_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("server.id"), index=True, nullable=False)
    timestamp = Column(DateTime, index=True, default=datetime.utcnow, nullable=False)
    stat_data = Column(JSON, nullable=True)


class UserServer(Base):
    __tablename__ = "user_server"
    __table_args__ = (UniqueConstraint("user_id", "server_id", name="uq_user_server"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    server_id = Column(Integer, ForeignKey("server.id"), index=True, nullable=False)
    role = Column(String(20), nullable=False)
