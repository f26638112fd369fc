import ipaddress
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, EmailStr, Field, field_validator


class ServerType(str, Enum):
    JAVA = "JAVA"
    BEDROCK = "BEDROCK"

    @classmethod
    def parse(cls, value: Any) -> "ServerType":
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.JAVA


class AuthMode(str, Enum):
    OFFICIAL = "OFFICIAL"
    OFFLINE = "OFFLINE"
    YGGDRASIL = "YGGDRASIL"

    @classmethod
    def parse(cls, value: Any) -> "AuthMode":
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return cls.OFFICIAL


class Motd(BaseModel):
    plain: str = ""
    html: str = ""
    minecraft: str = ""
    ansi: str = ""


def _as_str(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


class ServerStatus(BaseModel):
    """Latest ping result for a server.

    Defaults: ``players`` -> ``{}`` (non-integer counts become 0),
    ``delay`` -> 0.0, ``version`` -> "Unknown", ``motd`` -> all four
    renderings empty, ``icon`` -> None.
    """

    players: Dict[str, int] = Field(default_factory=dict)
    delay: float = 0.0
    version: str = "Unknown"
    motd: Motd = Field(default_factory=Motd)
    icon: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["ServerStatus"]:
        if not isinstance(payload, dict):
            return None
        players_raw = payload.get("players")
        players = (
            {str(key): _as_count(value) for key, value in players_raw.items()}
            if isinstance(players_raw, dict)
            else {}
        )
        delay_raw = payload.get("delay")
        delay = (
            float(delay_raw)
            if isinstance(delay_raw, (int, float)) and not isinstance(delay_raw, bool)
            else 0.0
        )
        motd_raw = payload.get("motd")
        motd = Motd()
        if isinstance(motd_raw, dict):
            motd = Motd(
                plain=_as_str(motd_raw.get("plain"), ""),
                html=_as_str(motd_raw.get("html"), ""),
                minecraft=_as_str(motd_raw.get("minecraft"), ""),
                ansi=_as_str(motd_raw.get("ansi"), ""),
            )
        icon = payload.get("icon")
        return cls(
            players=players,
            delay=delay,
            version=_as_str(payload.get("version"), "Unknown"),
            motd=motd,
            icon=icon if isinstance(icon, str) else None,
        )


class ServerFilters(BaseModel):
    is_member: bool = True
    types: Optional[List[str]] = None
    auth_modes: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class ServerDetail(BaseModel):
    id: int
    name: str
    ip: Optional[str] = None
    type: ServerType
    version: str
    desc: str
    link: str
    is_member: bool
    auth_mode: AuthMode
    tags: Optional[List[str]] = None
    is_hide: bool
    status: Optional[ServerStatus] = None
    permission: str = "guest"
    cover_url: Optional[str] = None


class ServerListResponse(BaseModel):
    data: List[ServerDetail]
    total: int
    total_pages: int


class UpdateServerRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    ip: str
    desc: str = Field(min_length=100)
    tags: List[str] = Field(default_factory=list, max_length=7)
    version: str = Field(min_length=1, max_length=20)
    link: str

    @field_validator("ip")
    @classmethod
    def valid_ip(cls, value: str) -> str:
        host = value.strip()
        if host.startswith("[") and "]" in host:
            host, _, port = host[1:].partition("]")
            port = port.lstrip(":")
        elif host.count(":") == 1:
            host, port = host.split(":", 1)
        else:
            port = ""
        try:
            ipaddress.ip_address(host)
        except ValueError as exc:
            raise ValueError("invalid IP address") from exc
        if port and (not port.isdigit() or not 0 < int(port) < 65536):
            raise ValueError("invalid port")
        return value.strip()

    @field_validator("link")
    @classmethod
    def valid_link(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("invalid link")
        return value.strip()


class ManagerInfo(BaseModel):
    id: int
    display_name: str
    is_active: bool
    avatar_url: Optional[str] = None


class ServerManagersResponse(BaseModel):
    owners: List[ManagerInfo]
    admins: List[ManagerInfo]


class GalleryImageOut(BaseModel):
    id: int
    title: str
    description: str
    image_url: str


class ServerGallery(BaseModel):
    id: int
    name: str
    gallery_images: List[GalleryImageOut]


class ServerTotalPlayers(BaseModel):
    total_players: int


class SuccessResponse(BaseModel):
    message: str


class AuthToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserLoginData(BaseModel):
    username_or_email: str
    password: str


class EmailCodeRequest(BaseModel):
    email: EmailStr


class RevocationStatusRequest(BaseModel):
    tokens: List[str] = Field(default_factory=list, max_length=500)


class RevocationStatusResponse(BaseModel):
    revoked: List[bool]


def _quote_filter_value(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class SearchFilters(BaseModel):
    server_type: Optional[List[ServerType]] = None
    tags: Optional[List[str]] = None
    auth_mode: Optional[List[AuthMode]] = None
    is_member: Optional[bool] = None
    is_hide: Optional[bool] = None
    version: Optional[List[str]] = None

    def to_filter_string(self) -> str:
        filters: list[str] = []

        def any_of(field: str, values: Optional[list]) -> None:
            if values:
                clauses = [
                    f"{field} = {_quote_filter_value(getattr(value, 'value', value))}"
                    for value in values
                ]
                filters.append(f"({' OR '.join(clauses)})")

        any_of("type", self.server_type)
        any_of("tags", self.tags)
        any_of("auth_mode", self.auth_mode)
        if self.is_member is not None:
            filters.append(f"is_member = {str(self.is_member).lower()}")
        if self.is_hide is not None:
            filters.append(f"is_hide = {str(self.is_hide).lower()}")
        any_of("version", self.version)
        return " AND ".join(filters)


class SearchParams(BaseModel):
    query: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)
    server_type: Optional[ServerType] = None
    tags: Optional[str] = None
    auth_mode: Optional[AuthMode] = None
    is_member: Optional[bool] = None
    sort: Optional[str] = None

    def parse_filters(self) -> SearchFilters:
        filters = SearchFilters()
        if self.server_type is not None:
            filters.server_type = [self.server_type]
        if self.tags:
            tags = [tag.strip() for tag in self.tags.split(",") if tag.strip()]
            if tags:
                filters.tags = tags
        if self.auth_mode is not None:
            filters.auth_mode = [self.auth_mode]
        if self.is_member is not None:
            filters.is_member = self.is_member
        return filters


class ServerSearchHit(BaseModel):
    id: int
    name: str
    ip: Optional[str] = None
    type: ServerType
    version: str = ""
    desc: str = ""
    link: str = ""
    is_member: bool = False
    auth_mode: AuthMode
    is_hide: bool = False
    tags: Optional[List[str]] = None


class SearchResponse(BaseModel):
    hits: List[ServerSearchHit]
    total: int
    limit: int
    offset: int
    processing_time_ms: int
