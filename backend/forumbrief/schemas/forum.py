from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UNKNOWN_USERNAME = "Unknown User"


class ForumUser(BaseModel):
    id: Optional[str] = None
    username: str = UNKNOWN_USERNAME

    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")


class Thread(BaseModel):
    """Snapshot of a forum thread as returned by the forum API."""

    id: str
    title: str
    body: str = ""
    created_at: datetime
    updated_at: datetime
    author: ForumUser = Field(
        default_factory=ForumUser,
        validation_alias=AliasChoices("user", "author"),
    )

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
        frozen=True,
    )


class Post(BaseModel):
    """A reply within a thread."""

    id: str
    body: str = ""
    thread_id: str
    author_id: str = Field(validation_alias=AliasChoices("userId", "authorId", "author_id"))
    created_at: datetime
    author: Optional[ForumUser] = Field(
        default=None,
        validation_alias=AliasChoices("user", "author"),
    )

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
        frozen=True,
    )

    @property
    def username(self) -> str:
        if self.author and self.author.username:
            return self.author.username
        return UNKNOWN_USERNAME
