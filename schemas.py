"""
Database Schemas for the Interaction Ledger

Each Pydantic model below that carries a "Collection name" line represents a
document collection. NFT and NFTSnapshot are embedded shapes only.
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NFTMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    animation_url: Optional[str] = None


class NFT(BaseModel):
    """
    NFT record as supplied by the player. Not stored directly.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    contract: str = Field("", description="Contract address")
    token_id: str = Field("", alias="tokenId", description="Token id within the contract")
    name: Optional[str] = Field(None, description="Display name")
    description: Optional[str] = None
    image: Optional[str] = Field(None, description="Image URL")
    audio: Optional[str] = Field(None, description="Primary media URL")
    metadata: NFTMetadata = Field(default_factory=NFTMetadata)
    collection: Optional[str] = Field(None, description="Collection name")
    network: str = Field("ethereum", description="ethereum|base")
    media_key: Optional[str] = Field(None, alias="mediaKey", description="Precomputed MediaKey")


class NFTSnapshot(BaseModel):
    """Display fields copied at write time."""
    media_key: str
    contract: str = ""
    token_id: str = ""
    name: str = "Untitled"
    description: str = ""
    image: str = ""
    audio_url: str = ""
    animation_url: str = ""
    collection: str = "Unknown Collection"
    network: str = "ethereum"


class LikeRecord(BaseModel):
    """
    Per-user likes
    Collection name: "likes" (document id "{fid}:{media_key}")
    """
    fid: int = Field(..., gt=0, description="Farcaster id of the liker")
    media_key: str = Field(..., min_length=1)
    snapshot: NFTSnapshot
    timestamp: datetime = Field(default_factory=utcnow)


class GlobalLike(BaseModel):
    """
    Global like aggregates
    Collection name: "global_likes" (document id is the media key)
    """
    media_key: str
    like_count: int = Field(0, ge=0)
    snapshot: NFTSnapshot
    first_liked: Optional[datetime] = None
    last_liked: Optional[datetime] = None


class PlayEvent(BaseModel):
    """
    Counted plays, append-only
    Collection name: "play_events" (autogenerated document id)
    """
    fid: int = Field(..., gt=0)
    media_key: str
    snapshot: NFTSnapshot
    timestamp: datetime = Field(default_factory=utcnow)


class GlobalPlay(BaseModel):
    """
    Global play aggregates
    Collection name: "global_plays" (document id is the media key)
    """
    media_key: str
    play_count: int = Field(0, ge=0)
    snapshot: NFTSnapshot
    first_played: Optional[datetime] = None
    last_played: Optional[datetime] = None


class TopPlayedEntry(BaseModel):
    """
    Materialized top-N ranking
    Collection name: "top_played" (document id is the media key)
    """
    media_key: str
    rank: int = Field(..., ge=1)
    play_count: int = Field(0, ge=0)
    snapshot: NFTSnapshot
    updated_at: datetime = Field(default_factory=utcnow)


class UserProfile(BaseModel):
    """
    User profiles
    Collection name: "users" (document id is the fid)
    liked_nfts is the oldest like storage format and is only read by the migrator.
    """
    fid: int = Field(..., gt=0)
    last_active: Optional[datetime] = None
    has_play_history: bool = False
    liked_nfts: List[Dict[str, Any]] = Field(default_factory=list)


LIKES = "likes"
GLOBAL_LIKES = "global_likes"
PLAY_EVENTS = "play_events"
GLOBAL_PLAYS = "global_plays"
TOP_PLAYED = "top_played"
USERS = "users"
LEGACY_USER_LIKES = "user_likes"


def like_id(fid: int, media_key: str) -> str:
    return f"{fid}:{media_key}"


def to_document(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump()
