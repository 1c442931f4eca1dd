# ballotbox/voting/vote_feed.py

import logging
import threading
from queue import Queue, Empty, Full

logger = logging.getLogger(__name__)

# Fan-out of recomputed tallies to live result viewers.
# One producer (vote commits), many consumers; publishing never blocks.


class Subscription:
    def __init__(self, max_pending=1):
        self.pending: Queue = Queue(maxsize=max_pending)
        self.dropped = 0

    def offer(self, tally):
        """Queue `tally`, replacing the oldest pending one if the consumer is behind."""
        while True:
            try:
                self.pending.put_nowait(tally)
                return
            except Full:
                try:
                    self.pending.get_nowait()
                    self.dropped += 1
                except Empty:
                    pass

    def next_tally(self, timeout=None):
        """Next pushed tally, or None when nothing arrived within `timeout`."""
        try:
            return self.pending.get(timeout=timeout)
        except Empty:
            return None


class VoteFeed:
    def __init__(self, max_pending=1):
        self.max_pending = max_pending
        self._subscribers = set()
        self._retired_dropped = 0
        self._lock = threading.Lock()

    def subscribe(self):
        subscription = Subscription(self.max_pending)
        with self._lock:
            self._subscribers.add(subscription)
        logger.debug("Vote feed subscriber added (%d total)", len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.discard(subscription)
                self._retired_dropped += subscription.dropped

    def has_subscribers(self):
        with self._lock:
            return bool(self._subscribers)

    def publish(self, tally):
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.offer(tally)
        return len(subscribers)

    def stats(self):
        """Subscriber count and stale tallies skipped for slow viewers so far."""
        with self._lock:
            live = list(self._subscribers)
            retired = self._retired_dropped
        return {
            "subscribers": len(live),
            "dropped": retired + sum(s.dropped for s in live),
        }
