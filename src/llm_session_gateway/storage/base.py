from __future__ import annotations

import abc
import asyncio
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from llm_session_gateway.errors import ProvisioningFailed, ProvisioningTimeout
from llm_session_gateway.models import ConversationRecord

DEFAULT_PROVISION_TIMEOUT_SECONDS = 6.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class KeyedStore(abc.ABC):
    """Conversation records keyed by session id."""

    @abc.abstractmethod
    async def put(self, session_id: str, record: ConversationRecord) -> None: ...

    @abc.abstractmethod
    async def get(self, session_id: str) -> ConversationRecord | None: ...

    @abc.abstractmethod
    async def delete(self, session_id: str) -> None: ...

    async def close(self) -> None:
        return None


class GateState(Enum):
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    FAILED = "failed"


class ReadinessGate:
    """One-shot barrier in front of a resource that is provisioned lazily.

    Provisioning starts as soon as the gate is constructed inside a running
    event loop, or on the first ``await_ready()`` otherwise. It runs exactly
    once; its outcome is broadcast to every current and future waiter through
    a single future.
    """

    def __init__(self, provision: Callable[[], Awaitable[None]], *, name: str = "resource"):
        self._provision = provision
        self._name = name
        self._state = GateState.INITIALIZING
        self._error: BaseException | None = None
        self._error_tb = None
        self._outcome: asyncio.Future[None] | None = None
        self._task: asyncio.Task | None = None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._start()

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def name(self) -> str:
        return self._name

    async def await_ready(self) -> None:
        if self._state is GateState.INITIALIZED:
            return
        if self._state is GateState.FAILED:
            assert self._error is not None
            # Re-raise from the provisioning traceback so repeated calls do not grow it.
            raise self._error.with_traceback(self._error_tb)
        await asyncio.shield(self._start())

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def _start(self) -> asyncio.Future[None]:
        if self._outcome is None:
            loop = asyncio.get_running_loop()
            self._outcome = loop.create_future()
            self._task = loop.create_task(self._run(), name=f"provision:{self._name}")
        return self._outcome

    async def _run(self) -> None:
        assert self._outcome is not None
        try:
            await self._provision()
        except asyncio.CancelledError:
            self._fail(ProvisioningFailed(self._name, "provisioning was cancelled"))
            raise
        except Exception as ex:
            logger.error(f"Provisioning of {self._name} failed: {ex}")
            self._fail(ex)
        else:
            self._state = GateState.INITIALIZED
            self._outcome.set_result(None)
            logger.info(f"{self._name} is ready")

    def _fail(self, error: BaseException) -> None:
        assert self._outcome is not None
        self._state = GateState.FAILED
        self._error = error
        self._error_tb = error.__traceback__
        if not self._outcome.done():
            self._outcome.set_exception(error)
            # Mark retrieved so a gate nobody waited on does not warn at shutdown.
            self._outcome.exception()


def _is_transient(ex: BaseException) -> bool:
    return not isinstance(ex, ProvisioningFailed)


class ProvisionedStore(KeyedStore):
    """Store whose backing table must exist before any data operation.

    Subclasses describe the resource through the three hooks below and call
    ``await self.ready()`` at the start of every data operation.
    """

    def __init__(
        self,
        resource: str,
        *,
        provision_timeout: float = DEFAULT_PROVISION_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self._resource = resource
        self._provision_timeout = provision_timeout
        self._poll_interval = poll_interval
        self._gate = ReadinessGate(self.provision, name=resource)

    @property
    def gate(self) -> ReadinessGate:
        return self._gate

    async def ready(self) -> None:
        await self._gate.await_ready()

    async def close(self) -> None:
        await self._gate.close()

    @abc.abstractmethod
    async def resource_exists(self) -> bool: ...

    @abc.abstractmethod
    async def create_resource(self) -> None:
        """Issue the create request with the backend's schema description."""

    @abc.abstractmethod
    async def resource_ready(self) -> bool:
        """Report whether the resource is active.

        Raise ProvisioningFailed for a terminal status that will never become
        ready; any other exception is treated as transient.
        """

    async def provision(self) -> None:
        try:
            exists = await self.resource_exists()
        except Exception as ex:
            raise ProvisioningFailed(self._resource, f"existence check failed: {ex}") from ex
        if exists:
            logger.debug(f"{self._resource} already exists")
            return

        logger.info(f"Creating {self._resource}")
        try:
            await self.create_resource()
        except Exception as ex:
            raise ProvisioningFailed(self._resource, f"create failed: {ex}") from ex

        await self._wait_until_ready()

    async def _wait_until_ready(self) -> None:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient) | retry_if_result(lambda ready: not ready),
            wait=wait_fixed(self._poll_interval),
            stop=stop_after_delay(self._provision_timeout),
            before_sleep=self._on_poll,
        )
        try:
            await retrying(self.resource_ready)
        except RetryError as ex:
            raise ProvisioningTimeout(self._resource, self._provision_timeout) from ex

    def _on_poll(self, retry_state) -> None:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            reason = type(outcome.exception()).__name__
        else:
            reason = "not ready"
        logger.debug(f"{self._resource}: {reason}, polling again (attempt {retry_state.attempt_number})")
