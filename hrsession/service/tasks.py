from __future__ import annotations

import asyncio
from typing import Iterable


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    """Cancel and await background tasks, skipping the task doing the cancelling.

    A watcher that triggers a logout ends up stopping itself from inside its
    own loop; that task is left to finish on its own.
    """
    current = asyncio.current_task()
    pending = [t for t in tasks if t is not current and not t.done()]
    for task in pending:
        task.cancel()
    for task in pending:
        try:
            await task
        except asyncio.CancelledError:
            pass
