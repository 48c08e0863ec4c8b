from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookswap.models.book import BookCondition


class BookBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    author: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    condition: BookCondition
    genres: list[str] = Field(default_factory=list, max_length=10)
    isbn: str | None = Field(default=None, max_length=17)
    published_year: int | None = Field(default=None, ge=0, le=3000)
    image_url: str | None = Field(default=None, max_length=500)

    @field_validator("title", "author")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Must not be blank")
        return v

    @field_validator("genres")
    @classmethod
    def normalize_genres(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for genre in (g.strip() for g in v):
            if genre and genre not in seen:
                seen.append(genre)
        return seen


class BookCreate(BookBase):
    pass


class BookUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    author: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    condition: BookCondition | None = None
    genres: list[str] | None = Field(default=None, max_length=10)
    isbn: str | None = Field(default=None, max_length=17)
    published_year: int | None = Field(default=None, ge=0, le=3000)
    image_url: str | None = Field(default=None, max_length=500)


class BookRead(BookBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    is_available: bool
    created_at: datetime
    updated_at: datetime


class BookSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    author: str
    condition: BookCondition
    image_url: str | None = None
