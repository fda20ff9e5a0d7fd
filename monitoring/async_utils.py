import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional


async def run_until_stopped(
    stop_event: asyncio.Event,
    background: Iterable[asyncio.Task] = (),
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Block until ``stop_event`` is set or a background task dies, then clean up."""
    task_list: List[asyncio.Task] = list(background)
    waiter = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait([waiter, *task_list], return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        pass
    finally:
        for t in [waiter, *task_list]:
            if not t.done():
                t.cancel()
        await asyncio.gather(waiter, *task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
