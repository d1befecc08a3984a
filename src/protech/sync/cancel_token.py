"""Cancellation token shared by a drain and its delivery workers."""

import threading


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
