from __future__ import annotations

from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Request fields stay optional so the service layer can answer with its own
# 400 messages ("Email and password are required", "Bad request", ...).
MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024
MAX_TOKEN_LENGTH = 256
MAX_CATALOG_ITEMS = 1000


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_Request):
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    display_name: Optional[str] = Field(
        default=None,
        max_length=120,
        validation_alias=AliasChoices("displayName", "display_name"),
    )


class LoginRequest(_Request):
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class EmailRequest(_Request):
    """Body of /forgot and /resend-verification."""

    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)


class ResetPasswordRequest(_Request):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    user_id: Optional[str] = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("u", "userId", "user_id"),
    )
    password: Optional[str] = Field(
        default=None,
        max_length=MAX_PASSWORD_LENGTH,
        validation_alias=AliasChoices("password", "newPassword", "new_password"),
    )


class PublicUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    email: str
    display_name: Optional[str] = Field(default=None, alias="displayName")


class RegisterResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    ok: bool = True
    user_id: str = Field(alias="userId")
    email: str


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    access_token: str = Field(alias="accessToken")
    user: PublicUser


class OkResponse(BaseModel):
    ok: bool = True


class ListsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    watched: List[int] = Field(default_factory=list)
    to_watch: List[int] = Field(default_factory=list, alias="to-watch")


class MergeListsRequest(_Request):
    watched: Any = None
    to_watch: Any = Field(
        default=None,
        validation_alias=AliasChoices("to-watch", "toWatchIds", "toWatch", "to_watch"),
    )


class MergeListsResponse(ListsResponse):
    ok: bool = True


class ListUpdateRequest(_Request):
    action: Optional[str] = None
    id: Any = None


class ReactionsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    liked_tmdb_ids: List[int] = Field(default_factory=list, alias="likedTmdbIds")
    disliked_tmdb_ids: List[int] = Field(default_factory=list, alias="dislikedTmdbIds")


class ReactionRequest(_Request):
    tmdb_id: Any = Field(default=None, validation_alias=AliasChoices("tmdbId", "tmdb_id"))
    reaction: Optional[str] = None


class CatalogItemPayload(_Request):
    id: int = Field(..., ge=0)
    title: str = Field(default="", max_length=500)
    genres: List[str] = Field(default_factory=list, max_length=50)
    keywords: List[str] = Field(default_factory=list, max_length=200)
    popularity: float = 0.0
    rating: float = Field(
        default=0.0, validation_alias=AliasChoices("rating", "voteAverage", "vote_average")
    )

    @field_validator("genres", "keywords", mode="before")
    @classmethod
    def _names_only(cls, value: Any) -> Any:
        # TMDB style [{"id": 18, "name": "Drama"}] entries collapse to their name
        if isinstance(value, list):
            return [
                str(entry.get("name", "")) if isinstance(entry, dict) else str(entry)
                for entry in value
            ]
        return value


class FeedRequest(_Request):
    catalog: List[CatalogItemPayload] = Field(default_factory=list, max_length=MAX_CATALOG_ITEMS)
    limit: Any = None


class FeedItem(BaseModel):
    id: int
    title: str
    genres: List[str]
    popularity: float
    rating: float
    score: float


class FeedResponse(BaseModel):
    items: List[FeedItem]
