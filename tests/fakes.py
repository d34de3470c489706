"""In-memory doubles shared by the supervisor and manager tests."""

import asyncio


class FakeMachine:
    """Machine double: shutdown finishes after a delay or fails; stop_vmm exits at once."""

    def __init__(
        self,
        *,
        shutdown_delay: float = 0.0,
        shutdown_error: Exception | None = None,
        teardown_error: Exception | None = None,
    ) -> None:
        self.pid = 4242
        self.ip = "192.168.1.2"
        self.shutdown_delay = shutdown_delay
        self.shutdown_error = shutdown_error
        self.teardown_error = teardown_error
        self.exited = asyncio.Event()
        self.shutdown_calls = 0
        self.stop_vmm_calls = 0
        self.teardown_calls = 0
        self.close_calls = 0

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        if self.shutdown_error is not None:
            raise self.shutdown_error
        await asyncio.sleep(self.shutdown_delay)
        self.exited.set()

    async def stop_vmm(self) -> None:
        self.stop_vmm_calls += 1
        self.exited.set()

    async def wait(self) -> int | None:
        await self.exited.wait()
        return 0

    async def teardown_network(self) -> None:
        self.teardown_calls += 1
        if self.teardown_error is not None:
            raise self.teardown_error

    async def close(self) -> None:
        self.close_calls += 1
