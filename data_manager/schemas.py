# data_manager/schemas.py
from typing import List, Optional, Any
from pydantic import BaseModel, ConfigDict


class EntryBody(BaseModel):
    """Body of POST /api/data and PUT /api/data/{id}."""
    model_config = ConfigDict(extra="ignore")

    # optional here so a missing name maps to the envelope's 400, not a 422
    name: Optional[str] = None
    value: Optional[str] = None
    # any JSON value; encoded to text before it reaches the store
    metadata: Optional[Any] = None


class Entry(BaseModel):
    id: str
    name: str
    value: Optional[str] = None
    metadata: Optional[str] = None
    created_at: str
    updated_at: str


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    hasMore: bool


class Stats(BaseModel):
    totalEntries: int


class Envelope(BaseModel):
    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[str] = None


class ListResponse(Envelope):
    data: List[Entry]
    pagination: Pagination


class SearchResponse(Envelope):
    data: List[Entry]
    count: int


class StatsResponse(Envelope):
    stats: Stats
