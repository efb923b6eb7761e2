"""Write-back path from the mint saga to the story entity."""

from sqlalchemy import update

from storymint.common.logging import logger
from storymint.services.minting.models import Story


def update_story_record(
    db,
    story_id: str,
    status: str,
    nft_token_id: str | None = None,
    nft_tx_hash: str | None = None,
) -> bool:
    """Set story status (and NFT fields on success). Returns False if absent."""

    values: dict = {"status": status}
    if nft_token_id is not None:
        values["nft_token_id"] = nft_token_id
    if nft_tx_hash is not None:
        values["nft_tx_hash"] = nft_tx_hash
    result = db.execute(update(Story).where(Story.story_id == story_id).values(**values))
    if result.rowcount != 1:
        logger.warning("story_update_skipped story_id=%s status=%s reason=not_found", story_id, status)
        return False
    return True
