# -*- coding: utf-8 -*-

import time


class ErrorThrottle:
    """Keeps operator error DMs from flooding.

    One notification per ``{ExceptionType}:{context}`` bucket per
    ``THROTTLE_WINDOW`` seconds. Repeats inside the window are counted so the
    next notification can mention them.
    """

    THROTTLE_WINDOW = 900

    def __init__(self, window: float | None = None):
        self.window = self.THROTTLE_WINDOW if window is None else window
        self._last_notified: dict[str, float] = {}
        self._suppressed: dict[str, int] = {}
        self._muted_until: float | None = None

    @staticmethod
    def bucket(context: str, error: BaseException) -> str:
        return f"{type(error).__name__}:{context}"

    def should_notify(self, context: str, error: BaseException) -> bool:
        now = time.monotonic()
        if self._muted_until is not None and now < self._muted_until:
            return False

        key = self.bucket(context, error)
        last = self._last_notified.get(key)
        if last is not None and now - last < self.window:
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False

        self._last_notified[key] = now
        self._suppressed[key] = 0
        return True

    def suppressed_count(self, context: str, error: BaseException) -> int:
        return self._suppressed.get(self.bucket(context, error), 0)

    def mute(self, seconds: float) -> None:
        """Silence every bucket for ``seconds``, e.g. during a known outage."""
        self._muted_until = time.monotonic() + seconds

    def unmute(self) -> None:
        self._muted_until = None

    @property
    def is_muted(self) -> bool:
        return self._muted_until is not None and time.monotonic() < self._muted_until
