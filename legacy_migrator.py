"""
Migration of old like storage formats into the canonical likes collection.

Three shapes have existed for a user's likes:

* V1Embedded   - NFT dicts in the ``liked_nfts`` array of the user profile
* V2FlatGlobal - documents in ``user_likes`` with id ``{fid}-{contract}-{tokenId}``
* Canonical    - documents in ``likes`` keyed by fid and MediaKey

Each shape has one pure conversion function. cleanup_likes() runs them over a
user's legacy data and commits the result in a single batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from database import DeleteOp, SetOp, Store
from ledger_errors import PartialMigrationFailure
from media_key import derive_media_key, snapshot_from_nft
from schemas import LEGACY_USER_LIKES, LIKES, NFT, USERS, LikeRecord, like_id, to_document, utcnow
from validation import require_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class V1Embedded:
    fid: int
    index: int
    raw: Any


@dataclass(frozen=True)
class V2FlatGlobal:
    fid: int
    doc_id: str
    raw: Dict[str, Any]


@dataclass(frozen=True)
class Canonical:
    record: LikeRecord


LegacySchema = Union[V1Embedded, V2FlatGlobal, Canonical]


@dataclass
class MigrationReport:
    fid: int
    migrated: int = 0
    unkeyed: int = 0
    failed: int = 0
    media_keys: List[str] = field(default_factory=list)

    @property
    def writes(self) -> bool:
        return self.migrated > 0


def _parse_nft(source: str, record_id: str, data: Any) -> NFT:
    if not isinstance(data, dict):
        raise PartialMigrationFailure(source, record_id, f"expected an object, got {type(data).__name__}")
    if not data.get("contract") or not data.get("tokenId"):
        raise PartialMigrationFailure(source, record_id, "missing contract or tokenId")
    try:
        return NFT.model_validate(data)
    except ValidationError as exc:
        raise PartialMigrationFailure(source, record_id, str(exc)) from exc


def convert_v1(entry: V1Embedded) -> Optional[LikeRecord]:
    nft = _parse_nft("liked_nfts", str(entry.index), entry.raw)
    media_key = derive_media_key(nft)
    if not media_key:
        return None
    return LikeRecord(fid=entry.fid, media_key=media_key, snapshot=snapshot_from_nft(nft, media_key))


def convert_v2(entry: V2FlatGlobal) -> Optional[LikeRecord]:
    raw = entry.raw
    data = {
        "contract": raw.get("contract"),
        "tokenId": raw.get("tokenId"),
        "name": raw.get("name"),
        "description": raw.get("description"),
        "image": raw.get("image"),
        "audio": raw.get("audioUrl"),
        "metadata": raw.get("metadata") or {},
        "collection": raw.get("collection"),
        "network": raw.get("network") or "ethereum",
        "mediaKey": raw.get("mediaKey"),
    }
    nft = _parse_nft(LEGACY_USER_LIKES, entry.doc_id, data)
    media_key = derive_media_key(nft)
    if not media_key:
        return None
    try:
        return LikeRecord(
            fid=entry.fid,
            media_key=media_key,
            snapshot=snapshot_from_nft(nft, media_key),
            timestamp=raw.get("timestamp") or utcnow(),
        )
    except ValidationError as exc:
        raise PartialMigrationFailure(LEGACY_USER_LIKES, entry.doc_id, str(exc)) from exc


def convert_canonical(entry: Canonical) -> Optional[LikeRecord]:
    return entry.record


def to_canonical(entry: LegacySchema) -> Optional[LikeRecord]:
    if isinstance(entry, V1Embedded):
        return convert_v1(entry)
    if isinstance(entry, V2FlatGlobal):
        return convert_v2(entry)
    if isinstance(entry, Canonical):
        return convert_canonical(entry)
    raise TypeError(f"unknown like schema {entry!r}")


class LegacyMigrator:
    def __init__(self, store: Store, repairer=None):
        self.store = store
        self.repairer = repairer

    def _convert(self, entry: LegacySchema, report: MigrationReport) -> Optional[LikeRecord]:
        try:
            record = to_canonical(entry)
        except PartialMigrationFailure as exc:
            report.failed += 1
            logger.warning("Skipping unparseable legacy like for user %s: %s", report.fid, exc)
            return None
        if record is None:
            report.unkeyed += 1
        return record

    def cleanup_likes(self, fid: int) -> MigrationReport:
        fid = require_user(fid)
        report = MigrationReport(fid=fid)
        ops = []
        seen = set()

        def adopt(record: LikeRecord):
            report.migrated += 1
            if record.media_key in seen:
                return
            seen.add(record.media_key)
            report.media_keys.append(record.media_key)
            doc_id = like_id(fid, record.media_key)
            if self.store.get(LIKES, doc_id) is None:
                ops.append(SetOp(LIKES, doc_id, to_document(record)))

        profile = self.store.get(USERS, str(fid)) or {}
        embedded = profile.get("liked_nfts") or []
        if not isinstance(embedded, list):
            logger.warning("liked_nfts for user %s is not a list, leaving it alone", fid)
            embedded = []
        kept = []
        for index, raw in enumerate(embedded):
            record = self._convert(V1Embedded(fid, index, raw), report)
            if record is None:
                kept.append(raw)
            else:
                adopt(record)
        if len(kept) != len(embedded):
            ops.append(SetOp(USERS, str(fid), {"liked_nfts": kept}, merge=True))

        for doc in self.store.query(LEGACY_USER_LIKES, id_prefix=f"{fid}-"):
            record = self._convert(V2FlatGlobal(fid, doc["_id"], doc), report)
            if record is not None:
                adopt(record)
                ops.append(DeleteOp(LEGACY_USER_LIKES, doc["_id"]))

        if not ops:
            logger.debug("No likes to migrate for user %s", fid)
            return report

        self.store.commit(ops)
        logger.info("Migrated %d legacy likes for user %s", report.migrated, fid)
        if self.repairer is not None:
            for media_key in report.media_keys:
                self.repairer.schedule(media_key)
        return report
