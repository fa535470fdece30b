import asyncio
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# Ensure repository root is on sys.path for test imports.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from storyloom.backends import GenerationResult  # noqa: E402
from storyloom.config import EngineConfig, RetryPolicy, SessionLimits  # noqa: E402
from storyloom.models import Envelope  # noqa: E402


class FakeBackend:
    """Scripted generation backend.

    Each call pops the next script entry: an exception is raised, a string is
    returned as the media reference. An empty script yields ``media://<n>``.
    Setting ``hold`` parks every call until the event is set.
    """

    def __init__(self, script: list[Exception | str] | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[tuple[str, str | None]] = []
        self.hold: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def generate(self, prompt: str, credential: str | None) -> GenerationResult:
        self.calls.append((prompt, credential))
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            return GenerationResult(media_ref=step)
        return GenerationResult(media_ref=f"media://{len(self.calls)}", metadata={"seed": len(self.calls)})


def fast_config(**overrides) -> EngineConfig:
    limits = overrides.pop("limits", SessionLimits(disconnect_grace_s=None))
    retry = overrides.pop("retry", RetryPolicy(backoff_base_s=0.0))
    return EngineConfig(retry=retry, limits=limits, **overrides)


def drain(subscription) -> list[Envelope]:
    """Pop every queued envelope without waiting."""
    items: list[Envelope] = []
    queue = subscription.queue
    while not queue.empty():
        item = queue.get_nowait()
        if item is not None:
            items.append(item)
    return items


def invocation_events(envelopes: list[Envelope], invocation_id: str) -> list:
    return [
        item.payload
        for item in envelopes
        if item.kind == "invocation_event" and item.payload.invocation_id == invocation_id
    ]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def config() -> EngineConfig:
    return fast_config()
