"""MongoDB-backed conversation store.

Collection: one document per session, ``_id`` = session id.
The collection is created on first use with a ``$jsonSchema`` validator and
polled until it is listed by the server.
"""

from __future__ import annotations

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import CollectionInvalid

from llm_session_gateway.models import ROLES, ConversationRecord
from llm_session_gateway.storage.base import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PROVISION_TIMEOUT_SECONDS,
    ProvisionedStore,
)


class MongoStore(ProvisionedStore):
    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        collection: str = "chat",
        *,
        client: AsyncIOMotorClient | None = None,
        provision_timeout: float = DEFAULT_PROVISION_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self._db = database
        self._collection_name = collection
        self._client = client
        super().__init__(
            f"mongodb collection {collection}",
            provision_timeout=provision_timeout,
            poll_interval=poll_interval,
        )

    @classmethod
    def from_url(cls, url: str, database: str, collection: str = "chat", **kwargs) -> MongoStore:
        client = AsyncIOMotorClient(url)
        return cls(client[database], collection, client=client, **kwargs)

    def build_collection_schema(self) -> dict:
        message = {
            "bsonType": "object",
            "required": ["role", "content"],
            "properties": {
                "role": {"enum": list(ROLES)},
                "content": {"bsonType": "string"},
                "token": {"bsonType": ["int", "long", "null"]},
                "created": {"bsonType": ["string", "null"]},
            },
        }
        return {
            "bsonType": "object",
            "required": ["_id", "created", "total_tokens", "messages"],
            "properties": {
                "_id": {"bsonType": "string"},
                "created": {"bsonType": "string"},
                "last_update": {"bsonType": ["string", "null"]},
                "total_tokens": {"bsonType": ["int", "long"], "minimum": 0},
                "messages": {"bsonType": "array", "items": message},
            },
        }

    async def resource_exists(self) -> bool:
        names = await self._db.list_collection_names()
        return self._collection_name in names

    async def create_resource(self) -> None:
        try:
            await self._db.create_collection(
                self._collection_name,
                validator={"$jsonSchema": self.build_collection_schema()},
            )
        except CollectionInvalid:
            # Created concurrently by another process.
            logger.debug(f"Collection {self._collection_name} already exists")

    async def resource_ready(self) -> bool:
        return await self.resource_exists()

    async def put(self, session_id: str, record: ConversationRecord) -> None:
        await self.ready()
        document = {"_id": session_id, **record.to_item()}
        await self._db[self._collection_name].replace_one({"_id": session_id}, document, upsert=True)
        logger.debug(f"Stored session {session_id} ({len(record.messages)} messages)")

    async def get(self, session_id: str) -> ConversationRecord | None:
        await self.ready()
        document = await self._db[self._collection_name].find_one({"_id": session_id})
        if document is None:
            return None
        document.pop("_id", None)
        return ConversationRecord.from_item(session_id, document)

    async def delete(self, session_id: str) -> None:
        await self.ready()
        await self._db[self._collection_name].delete_one({"_id": session_id})

    async def close(self) -> None:
        await super().close()
        if self._client is not None:
            self._client.close()
            self._client = None
