import asyncio
import contextlib
import logging
import os
import sys
from typing import Any, List, Optional

import aiofiles
from aiocsv import AsyncWriter

ORDER_AUDIT_HEADER = ["timestamp", "action", "order_id", "symbol", "side", "type",
                      "price", "quantity", "success", "detail"]


class AsyncAuditLogger:
    """
    Append-only CSV trail of order actions.
    Rows go through an asyncio Queue so disk I/O never stalls the event loop.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """Creates the file (with a header row when new) and starts the writer task."""
        directory = os.path.dirname(self.filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        if is_new:
            async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                await AsyncWriter(f, dialect='unix').writerow(ORDER_AUDIT_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_order(self, row: List[Any]):
        await self._queue.put(row)

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # A broken audit file must not take the session down
                print(f"AUDIT LOG FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()

    async def stop(self):
        """Flushes queued rows, then stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker_task
        self._worker_task = None


def setup_console_logger(name: str, level: str):
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
