# bulbul/schemas.py
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value


NonBlank = Annotated[str, AfterValidator(_require_text)]
REQUIRED_FIELDS = ("title", "content", "author", "published")


class PostCreate(CamelModel):
    title: NonBlank
    content: NonBlank
    author: NonBlank
    category: Optional[str] = None
    published: bool = True


class PostUpdate(CamelModel):
    """Partial update; only fields the caller actually sent are applied."""

    title: Optional[NonBlank] = None
    content: Optional[NonBlank] = None
    author: Optional[NonBlank] = None
    category: Optional[str] = None
    published: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def _no_null_for_required(cls, data):
        if isinstance(data, dict):
            for key, value in data.items():
                if value is None and key in REQUIRED_FIELDS:
                    raise ValueError(f"{key} must not be null")
        return data


class Post(CamelModel):
    id: str
    title: str
    content: str
    author: str
    category: Optional[str] = None
    image_url: Optional[str] = None
    image_file_name: Optional[str] = None
    views: int = Field(default=0, ge=0)
    likes: int = Field(default=0, ge=0)
    published: bool = True
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _image_reference_pair(self):
        if (self.image_url is None) != (self.image_file_name is None):
            raise ValueError("imageUrl and imageFileName must be set together")
        return self

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Stats(CamelModel):
    total_posts: int = 0
    total_views: int = 0
    total_likes: int = 0


class Message(BaseModel):
    message: str


@dataclass
class ImageUpload:
    data: bytes
    filename: str
    content_type: Optional[str] = None
