"""
MediaKey derivation.

A MediaKey identifies content, not a mint: two NFTs pointing at the same media
URLs share one key no matter which contract or token they come from.
"""

from typing import Optional
from urllib.parse import urlsplit

from ledger_errors import InvalidIdentity
from schemas import NFT, NFTSnapshot

KEY_DELIMITER = "|"


def normalize_url(url: Optional[str]) -> str:
    """Reduce a media URL to the part that identifies the content."""
    url = (url or "").strip()
    if not url:
        return ""
    if url.startswith("ipfs://"):
        return "ipfs-" + url[len("ipfs://"):]
    if url.startswith("ar://"):
        return "arweave-" + url[len("ar://"):]
    if url.startswith(("http://", "https://")):
        try:
            parts = urlsplit(url)
        except ValueError:
            return url
        return f"{parts.hostname or ''}{parts.path or '/'}"
    return url


def content_urls(nft: NFT) -> set:
    primary = nft.audio
    image = nft.image or nft.metadata.image
    animation = nft.metadata.animation_url
    return {u for u in (normalize_url(primary), normalize_url(image), normalize_url(animation)) if u}


def derive_media_key(nft: NFT) -> str:
    """Return the MediaKey for ``nft`` or "" when it has no usable URL."""
    if nft.media_key:
        return nft.media_key
    urls = content_urls(nft)
    if not urls:
        return ""
    return KEY_DELIMITER.join(sorted(urls))


def require_media_key(nft: NFT) -> str:
    media_key = derive_media_key(nft)
    if not media_key:
        raise InvalidIdentity(f"no content URL on NFT {nft.contract}-{nft.token_id}")
    return media_key


def snapshot_from_nft(nft: NFT, media_key: str) -> NFTSnapshot:
    return NFTSnapshot(
        media_key=media_key,
        contract=nft.contract,
        token_id=nft.token_id,
        name=nft.name or nft.metadata.name or "Untitled",
        description=nft.description or nft.metadata.description or "",
        image=nft.image or nft.metadata.image or "",
        audio_url=nft.audio or nft.metadata.animation_url or "",
        animation_url=nft.metadata.animation_url or "",
        collection=nft.collection or "Unknown Collection",
        network=nft.network or "ethereum",
    )
