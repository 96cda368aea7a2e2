"""
Single-assignment values that resolve while a topology converges.

A ``Deferred`` is written exactly once, either with a value or with a poison
marker naming the node that failed to produce it. Readers ``await get()`` and
yield to the event loop until one of the two happens.
"""

import asyncio
from typing import Any, Generic, Optional, TypeVar

from topology.errors import Poisoned

T = TypeVar("T")


class Deferred(Generic[T]):
    def __init__(self, name: str):
        self.name = name
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._poisoned_by: Optional[str] = None

    def resolve(self, value: T) -> None:
        if self._future.done():
            raise RuntimeError(f"Deferred value {self.name} is already written")
        self._future.set_result(value)

    def poison(self, origin: str) -> None:
        if self._future.done():
            raise RuntimeError(f"Deferred value {self.name} is already written")
        self._poisoned_by = origin
        self._future.set_exception(Poisoned(origin))
        # mark retrieved: a poisoned value may have no readers
        self._future.exception()

    def done(self) -> bool:
        return self._future.done()

    @property
    def poisoned(self) -> bool:
        return self._poisoned_by is not None

    def value(self) -> Optional[T]:
        """
        Resolved value, or None while pending or when poisoned.
        """
        if not self._future.done() or self.poisoned:
            return None
        return self._future.result()

    async def get(self) -> T:
        # shield: a cancelled reader must not cancel the shared future
        return await asyncio.shield(self._future)

    def __repr__(self) -> str:
        if self.poisoned:
            state = f"poisoned by {self._poisoned_by}"
        elif self._future.done():
            state = repr(self._future.result())
        else:
            state = "pending"
        return f"Deferred({self.name}: {state})"


async def gather_values(deferreds: dict[Any, "Deferred[Any]"]) -> dict[Any, Any]:
    """
    Await all deferred values. Raises ``Poisoned`` for the first poisoned one,
    after every value has settled.
    """
    keys = list(deferreds)
    results = await asyncio.gather(*(deferreds[k].get() for k in keys), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return dict(zip(keys, results))
