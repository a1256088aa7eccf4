import logging
from typing import Callable, List, Sequence

from logtriage.errors import PersistenceError
from logtriage.schemas import EventRecord

logger = logging.getLogger(__name__)

EventSink = Callable[[Sequence[EventRecord]], None]

class EventBatcher:
    """
    Accumulates normalized events and hands them to the sink in fixed-size
    batches. A sink failure surfaces as PersistenceError and the pending batch
    is dropped; callers abort the parse rather than retrying the batch.
    """

    def __init__(self, sink: EventSink, batch_size: int = 500):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.sink = sink
        self.batch_size = batch_size
        self.pending: List[EventRecord] = []
        self.flushed = 0

    def add(self, record: EventRecord):
        self.pending.append(record)
        if len(self.pending) >= self.batch_size:
            self.flush()

    def flush(self):
        if not self.pending:
            return
        batch, self.pending = self.pending, []
        try:
            self.sink(batch)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"failed to persist batch of {len(batch)} events: {e}") from e
        self.flushed += len(batch)
        logger.debug("Flushed %d events (%d total)", len(batch), self.flushed)
