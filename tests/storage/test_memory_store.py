import asyncio
import unittest

from llm_session_gateway.models import ChatMessage
from llm_session_gateway.storage import InMemoryStore
from tests.storage.base import sample_record


class InMemoryStoreTests(unittest.TestCase):
    def test_round_trip_and_delete(self) -> None:
        store = InMemoryStore()

        async def scenario():
            await store.put("s1", sample_record())
            loaded = await store.get("s1")
            await store.delete("s1")
            return loaded, await store.get("s1")

        loaded, after_delete = asyncio.run(scenario())
        self.assertEqual(sample_record().to_dict(), loaded.to_dict())
        self.assertIsNone(after_delete)
        self.assertEqual(0, len(store))

    def test_records_are_copied_in_and_out(self) -> None:
        store = InMemoryStore()
        record = sample_record()

        async def scenario():
            await store.put("s1", record)
            record.messages.append(ChatMessage("user", "mutated after put"))
            loaded = await store.get("s1")
            loaded.messages.clear()
            return await store.get("s1")

        self.assertEqual(2, len(asyncio.run(scenario()).messages))

    def test_delete_missing_is_a_no_op(self) -> None:
        asyncio.run(InMemoryStore().delete("never-there"))


if __name__ == "__main__":
    unittest.main()
