"""Request/response schemas for the minting API and ledger decisions."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MintRecordView(BaseModel):
    """Ledger record as returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    record_id: str
    content_hash: str
    author_address: str
    status: str
    title: str
    story_id: str | None = None
    tx_hash: str | None = None
    token_id: str | None = None
    minted_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0


class MintDecision(BaseModel):
    """Outcome of one `request_mint` call."""

    accepted: bool
    status: str
    message: str
    record: MintRecordView | None = None


class MintStatusView(BaseModel):
    """Read-only mint status for one (hash, author) key."""

    status: str
    message: str
    record: MintRecordView | None = None


class MintRequestBody(BaseModel):
    """Payload accepted by `POST /mints`."""

    model_config = ConfigDict(populate_by_name=True)

    story_hash: str = Field(alias="storyHash")
    title: str
    story_id: str | None = Field(default=None, alias="storyId")
    metadata_uri: str | None = Field(default=None, alias="metadataUri")


class MintCheckBody(BaseModel):
    """Payload accepted by `POST /mints/check`."""

    model_config = ConfigDict(populate_by_name=True)

    story_hash: str = Field(alias="storyHash")
    author_address: str | None = Field(default=None, alias="authorAddress")


class StoryHashBody(BaseModel):
    """Payload accepted by `POST /stories/hash`."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    author_address: str = Field(min_length=1, alias="authorAddress")


class MintIntentView(BaseModel):
    """Saga progress for one story."""

    model_config = ConfigDict(from_attributes=True)

    intent_id: str
    story_id: str
    status: str
    tx_hash: str | None = None
    token_id: str | None = None
    block_number: int | None = None
