from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SaveStatusOut = Literal["newly_saved", "already_exists"]
JobStateOut = Literal["queued", "running", "retrying", "succeeded", "failed", "cancelled"]


class LinkOut(BaseModel):
    id: int
    url: str
    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    domain: str | None = None
    is_favorite: bool = False
    folder_id: int | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    metadata_fetched_at: datetime | None = None


class LinkCreate(BaseModel):
    url: str = Field(min_length=1)


class IngestRequest(BaseModel):
    text: str


class SaveResultOut(BaseModel):
    link_id: int
    url: str
    status: SaveStatusOut


class IngestResponse(BaseModel):
    link_ids: list[int] = Field(default_factory=list)
    results: list[SaveResultOut] = Field(default_factory=list)
    message: str


class LinkPatchRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    tags: list[str] | None = None


class FavoriteRequest(BaseModel):
    is_favorite: bool


class FolderOut(BaseModel):
    domain: str
    link_count: int


class EnrichmentJobOut(BaseModel):
    link_id: int
    reason: str
    requires_network: bool = True
    state: JobStateOut
    attempt: int = 0
    retry_delays: list[float] = Field(default_factory=list)
    last_error: str | None = None
    enqueued_at: datetime
    finished_at: datetime | None = None
