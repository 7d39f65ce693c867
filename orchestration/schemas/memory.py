from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, JsonValue

MemoryTier = Literal["short_term", "medium_term", "long_term"]
MemoryCategory = Literal["context", "pattern", "preference", "knowledge", "relationship"]


class MemoryMetadata(BaseModel):
    source: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    tags: List[str] = Field(default_factory=list)
    related_memory_ids: List[str] = Field(default_factory=list)


class StoreMemoryRequest(BaseModel):
    team_id: Optional[str] = None
    agent_id: Optional[str] = None
    memory_tier: MemoryTier
    category: MemoryCategory
    key: str = Field(min_length=1, max_length=255)
    value: JsonValue = None
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)
    importance: int = Field(default=50, ge=0, le=100)
    expires_at: Optional[datetime] = None


class StoreMemoryResponse(BaseModel):
    memory_id: str


class MemoryEntryResponse(BaseModel):
    id: str
    workspace_id: str
    team_id: Optional[str]
    agent_id: Optional[str]
    memory_tier: MemoryTier
    category: MemoryCategory
    key: str
    value: Any
    metadata: Dict[str, Any]
    importance: int
    expires_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class DeleteMemoryResponse(BaseModel):
    success: bool
