"""
MongoWorkStore — MongoDB adapter using pymongo's AsyncMongoClient.

Install: pip install pymongo

Document shape (collection "works")
-----------------------------------
{
  "_id":        ObjectId,
  "adminId":    ObjectId,      <-- owner reference
  "categoryId": ObjectId,
  "prompt":     str,
  "imageUrl":   str,
  "createdAt":  datetime,
  "updatedAt":  datetime
}

Ids that are not valid ObjectIds can never match a document, so they are
reported as "not found" without a round trip.
"""

from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo import errors as mongo_errors

from deferq.domain.errors import StoreUnavailableError
from deferq.domain.models import Work, WorkDraft

if TYPE_CHECKING:
    from pymongo import AsyncMongoClient
    from pymongo.asynchronous.collection import AsyncCollection

_FIELD_NAMES: dict[str, str] = {
    "prompt": "prompt",
    "image_url": "imageUrl",
    "category_id": "categoryId",
}

_TRANSIENT = (mongo_errors.ConnectionFailure, mongo_errors.ExecutionTimeout)


def _object_id(value: str) -> ObjectId | None:
    return ObjectId(value) if ObjectId.is_valid(value) else None


def _reference(value: str) -> ObjectId | str:
    """Reference fields hold ObjectIds; non-ObjectId ids are stored verbatim."""
    return _object_id(value) or value


def _to_work(doc: dict[str, Any]) -> Work:
    return Work(
        id=str(doc["_id"]),
        owner_id=str(doc["adminId"]),
        prompt=doc["prompt"],
        image_url=doc["imageUrl"],
        category_id=str(doc["categoryId"]),
        created_at=doc.get("createdAt") or datetime.now(UTC),
        updated_at=doc.get("updatedAt") or datetime.now(UTC),
    )


@asynccontextmanager
async def _translate(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except _TRANSIENT as exc:
        raise StoreUnavailableError(f"MongoDB {operation} failed", exc) from exc


@dataclasses.dataclass
class MongoWorkStore:
    """
    MongoDB work store.

    Parameters
    ----------
    collection : AsyncCollection holding work documents
    client     : owning client, closed by close() when given
    """

    collection: AsyncCollection
    client: AsyncMongoClient | None = None

    @classmethod
    def from_url(
        cls, url: str, database: str, collection: str = "works"
    ) -> "MongoWorkStore":
        from pymongo import AsyncMongoClient

        client: AsyncMongoClient = AsyncMongoClient(
            url, serverSelectionTimeoutMS=10000, tz_aware=True
        )
        return cls(collection=client[database][collection], client=client)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    def _filter(self, entity_id: str, owner_id: str | None) -> dict[str, Any] | None:
        oid = _object_id(entity_id)
        if oid is None:
            return None
        query: dict[str, Any] = {"_id": oid}
        if owner_id is not None:
            query["adminId"] = _reference(owner_id)
        return query

    async def get(self, entity_id: str) -> Work | None:
        query = self._filter(entity_id, None)
        if query is None:
            return None
        async with _translate("find_one"):
            doc = await self.collection.find_one(query)
        return _to_work(doc) if doc is not None else None

    async def delete(self, entity_id: str, owner_id: str | None = None) -> bool:
        query = self._filter(entity_id, owner_id)
        if query is None:
            return False
        async with _translate("delete_one"):
            result = await self.collection.delete_one(query)
        return result.deleted_count == 1

    async def update(
        self,
        entity_id: str,
        fields: dict[str, Any],
        owner_id: str | None = None,
    ) -> Work | None:
        query = self._filter(entity_id, owner_id)
        if query is None:
            return None
        changes: dict[str, Any] = {
            _FIELD_NAMES[name]: _reference(value) if name == "category_id" else value
            for name, value in fields.items()
            if name in _FIELD_NAMES
        }
        changes["updatedAt"] = datetime.now(UTC)
        async with _translate("find_one_and_update"):
            doc = await self.collection.find_one_and_update(
                query, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        return _to_work(doc) if doc is not None else None

    async def insert(self, draft: WorkDraft, owner_id: str) -> Work:
        now = datetime.now(UTC)
        doc: dict[str, Any] = {
            "adminId": _reference(owner_id),
            "categoryId": _reference(draft.category_id),
            "prompt": draft.prompt,
            "imageUrl": draft.image_url,
            "createdAt": now,
            "updatedAt": now,
        }
        async with _translate("insert_one"):
            result = await self.collection.insert_one(doc)
        return _to_work({**doc, "_id": result.inserted_id})

    async def list_by_owner(
        self, owner_id: str, skip: int = 0, limit: int = 100
    ) -> list[Work]:
        async with _translate("find"):
            cursor = (
                self.collection.find({"adminId": _reference(owner_id)})
                .sort("createdAt", -1)
                .skip(skip)
                .limit(limit)
            )
            docs = await cursor.to_list()
        return [_to_work(doc) for doc in docs]
