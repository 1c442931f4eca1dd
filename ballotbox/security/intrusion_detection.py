# ballotbox/security/intrusion_detection.py

import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone

# Brute-force throttling for the shared admin password, tracked per client.
# Progressive delay after each failure, short lockout once max_attempts is hit.


class IntrusionDetection:
    def __init__(self, max_attempts=5, window_minutes=15, lockout_minutes=5,
                 base_delay_seconds=1, max_delay_seconds=60):
        """
        max_attempts: attempts within `window_minutes` that trigger lockout
        window_minutes: sliding window to count attempts
        lockout_minutes: duration of short lockout when max_attempts reached
        base_delay_seconds: starting delay applied after first failed attempt
        max_delay_seconds: cap for exponential backoff delay
        """
        self.failed_logins = defaultdict(list)  # client -> list[datetime]
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

        self.locks = {}  # client -> locked_until
        self.next_allowed = {}  # client -> earliest next attempt
        self._lock = threading.Lock()

    def _now(self):
        # extracted for easier monkeypatching in tests
        return datetime.now(timezone.utc)

    def record_failed_attempt(self, client):
        """
        Record a failed attempt for `client`.

        Returns:
            delay_seconds (int): seconds the client should wait before the next attempt.
                If a lockout is in effect, the remaining lockout seconds.
        """
        with self._lock:
            now = self._now()

            locked_until = self.locks.get(client)
            if locked_until and now < locked_until:
                return int((locked_until - now).total_seconds())

            attempts = [t for t in self.failed_logins[client] if now - t <= self.window]
            attempts.append(now)
            self.failed_logins[client] = attempts

            if len(attempts) >= self.max_attempts:
                self.locks[client] = now + self.lockout_duration
                self.failed_logins[client] = []
                return int(self.lockout_duration.total_seconds())

            delay = min(self.base_delay_seconds * (2 ** (len(attempts) - 1)), self.max_delay_seconds)
            self.next_allowed[client] = now + timedelta(seconds=delay)
            return int(delay)

    def record_success(self, client):
        with self._lock:
            self.failed_logins.pop(client, None)
            self.next_allowed.pop(client, None)

    def retry_after(self, client):
        """Seconds until `client` may try again, 0 when it may try now."""
        now = self._now()
        waits = [until for until in (self.locks.get(client), self.next_allowed.get(client))
                 if until and now < until]
        if not waits:
            return 0
        return max(1, int((max(waits) - now).total_seconds()))

    def is_blocked(self, client):
        """True while `client` is in a lockout period (not for short throttle delays)."""
        locked_until = self.locks.get(client)
        return bool(locked_until and self._now() < locked_until)

    def clear_old_records(self):
        with self._lock:
            now = self._now()
            for client, attempts in list(self.failed_logins.items()):
                pruned = [t for t in attempts if now - t <= self.window]
                if pruned:
                    self.failed_logins[client] = pruned
                else:
                    del self.failed_logins[client]

            for client, locked_until in list(self.locks.items()):
                if now >= locked_until:
                    del self.locks[client]

            for client, when in list(self.next_allowed.items()):
                if now >= when:
                    del self.next_allowed[client]
