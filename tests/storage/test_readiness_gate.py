import asyncio
import unittest

from llm_session_gateway.errors import ProvisioningFailed, ProvisioningTimeout
from llm_session_gateway.models import ConversationRecord
from llm_session_gateway.storage import GateState, ProvisionedStore, ReadinessGate
from tests.storage.base import sample_record


class _FakeTableStore(ProvisionedStore):
    """Table-backed store whose create/poll behaviour is scripted."""

    def __init__(
        self,
        *,
        exists: bool = False,
        ready_after: int = 1,
        poll_errors: list[Exception] | None = None,
        create_error: Exception | None = None,
        terminal: bool = False,
        provision_timeout: float = 1.0,
    ):
        self.exists_calls = 0
        self.create_calls = 0
        self.polls = 0
        self._exists = exists
        self._ready_after = ready_after
        self._poll_errors = list(poll_errors or [])
        self._create_error = create_error
        self._terminal = terminal
        self._items: dict[str, ConversationRecord] = {}
        super().__init__("fake table", provision_timeout=provision_timeout, poll_interval=0.01)

    async def resource_exists(self) -> bool:
        self.exists_calls += 1
        return self._exists

    async def create_resource(self) -> None:
        self.create_calls += 1
        if self._create_error is not None:
            raise self._create_error

    async def resource_ready(self) -> bool:
        self.polls += 1
        if self._poll_errors:
            raise self._poll_errors.pop(0)
        if self._terminal:
            raise ProvisioningFailed("fake table", "status DELETING")
        return self.polls >= self._ready_after

    async def put(self, session_id: str, record: ConversationRecord) -> None:
        await self.ready()
        self._items[session_id] = record.copy()

    async def get(self, session_id: str) -> ConversationRecord | None:
        await self.ready()
        record = self._items.get(session_id)
        return record.copy() if record else None

    async def delete(self, session_id: str) -> None:
        await self.ready()
        self._items.pop(session_id, None)


class ProvisionedStoreTests(unittest.TestCase):
    def test_concurrent_callers_share_one_provisioning_run(self) -> None:
        async def scenario():
            store = _FakeTableStore(ready_after=3)
            results = await asyncio.gather(*(store.get(f"k{i}") for i in range(10)))
            return store, results

        store, results = asyncio.run(scenario())

        self.assertEqual([None] * 10, results)
        self.assertEqual(1, store.exists_calls)
        self.assertEqual(1, store.create_calls)
        self.assertEqual(3, store.polls)
        self.assertEqual(GateState.INITIALIZED, store.gate.state)

    def test_existing_resource_is_not_created(self) -> None:
        async def scenario():
            store = _FakeTableStore(exists=True)
            await store.put("s1", sample_record())
            return store, await store.get("s1")

        store, loaded = asyncio.run(scenario())
        self.assertEqual(0, store.create_calls)
        self.assertEqual(0, store.polls)
        self.assertEqual("s1", loaded.session_id)

    def test_provisioning_starts_eagerly_inside_a_loop(self) -> None:
        async def scenario():
            store = _FakeTableStore(exists=True)
            for _ in range(3):
                await asyncio.sleep(0)
            return store

        store = asyncio.run(scenario())
        self.assertEqual(1, store.exists_calls)
        self.assertEqual(GateState.INITIALIZED, store.gate.state)

    def test_provisioning_is_deferred_when_built_outside_a_loop(self) -> None:
        store = _FakeTableStore(exists=True)
        self.assertEqual(GateState.INITIALIZING, store.gate.state)
        self.assertEqual(0, store.exists_calls)

        asyncio.run(store.put("s1", sample_record()))
        self.assertEqual(1, store.exists_calls)
        self.assertEqual(GateState.INITIALIZED, store.gate.state)

    def test_transient_poll_errors_are_retried(self) -> None:
        async def scenario():
            store = _FakeTableStore(poll_errors=[ConnectionError("blip"), TimeoutError("slow")], ready_after=3)
            await store.get("s1")
            return store

        store = asyncio.run(scenario())
        self.assertEqual(3, store.polls)
        self.assertEqual(GateState.INITIALIZED, store.gate.state)

    def test_never_ready_times_out_and_stays_failed(self) -> None:
        async def scenario():
            store = _FakeTableStore(ready_after=10**6, provision_timeout=0.05)
            with self.assertRaises(ProvisioningTimeout) as first:
                await store.get("s1")
            with self.assertRaises(ProvisioningTimeout) as second:
                await store.put("s1", sample_record())
            return store, first.exception, second.exception

        store, first, second = asyncio.run(scenario())
        self.assertIs(first, second)
        self.assertEqual(1, store.create_calls)
        self.assertEqual(GateState.FAILED, store.gate.state)
        self.assertEqual(0.05, first.timeout_seconds)

    def test_terminal_status_fails_without_retrying(self) -> None:
        async def scenario():
            store = _FakeTableStore(terminal=True)
            with self.assertRaises(ProvisioningFailed):
                await store.get("s1")
            return store

        store = asyncio.run(scenario())
        self.assertEqual(1, store.polls)
        self.assertEqual(GateState.FAILED, store.gate.state)

    def test_create_error_is_reported_as_provisioning_failure(self) -> None:
        async def scenario():
            store = _FakeTableStore(create_error=PermissionError("not allowed"))
            with self.assertRaises(ProvisioningFailed) as ctx:
                await store.delete("s1")
            return ctx.exception

        error = asyncio.run(scenario())
        self.assertIsInstance(error.__cause__, PermissionError)
        self.assertIn("not allowed", str(error))


class ReadinessGateTests(unittest.TestCase):
    def test_failure_is_broadcast_to_every_waiter(self) -> None:
        runs = []

        async def provision() -> None:
            runs.append(1)
            await asyncio.sleep(0.01)
            raise RuntimeError("table status FAILED")

        async def scenario():
            gate = ReadinessGate(provision, name="sessions")
            results = await asyncio.gather(*(gate.await_ready() for _ in range(5)), return_exceptions=True)
            return gate, results

        gate, results = asyncio.run(scenario())
        self.assertEqual(1, len(runs))
        self.assertEqual(5, len(results))
        self.assertTrue(all(isinstance(r, RuntimeError) for r in results))
        self.assertEqual(GateState.FAILED, gate.state)

    def test_repeated_failures_keep_the_same_traceback_depth(self) -> None:
        async def provision() -> None:
            raise RuntimeError("table status FAILED")

        def depth(tb) -> int:
            count = 0
            while tb is not None:
                count += 1
                tb = tb.tb_next
            return count

        async def scenario():
            gate = ReadinessGate(provision, name="sessions")
            depths = []
            for _ in range(5):
                try:
                    await gate.await_ready()
                except RuntimeError as ex:
                    depths.append(depth(ex.__traceback__))
            return depths

        depths = asyncio.run(scenario())
        self.assertEqual(5, len(depths))
        # The first caller waits on the broadcast; the rest hit the failed state.
        self.assertEqual(1, len(set(depths[1:])))

    def test_late_waiter_after_success_returns_immediately(self) -> None:
        runs = []

        async def provision() -> None:
            runs.append(1)

        async def scenario():
            gate = ReadinessGate(provision)
            await gate.await_ready()
            await gate.await_ready()
            return gate

        gate = asyncio.run(scenario())
        self.assertEqual(1, len(runs))
        self.assertEqual(GateState.INITIALIZED, gate.state)

    def test_close_cancels_pending_provisioning(self) -> None:
        async def provision() -> None:
            await asyncio.Event().wait()

        async def scenario():
            gate = ReadinessGate(provision, name="sessions")
            await asyncio.sleep(0)
            await gate.close()
            with self.assertRaises(ProvisioningFailed):
                await gate.await_ready()
            return gate

        self.assertEqual(GateState.FAILED, asyncio.run(scenario()).state)


if __name__ == "__main__":
    unittest.main()
