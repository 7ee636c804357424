import logging
import os
import threading

log = logging.getLogger(__name__)


def remove(filepath):
    if os.path.exists(filepath):
        try:
            os.remove(filepath)
            log.info(f"Successfully removed socket {filepath}.")
        except OSError as e:
            log.warning(f"Failed to remove socket {filepath}: {e}")


def inode(filepath):
    """
    Return the inode of a path, or None if it does not exist.
    """
    try:
        return os.stat(filepath).st_ino
    except FileNotFoundError:
        return None


class Cancellation:
    """
    A one-shot cancellation token.

    Callbacks registered before cancel() run once when it fires,
    callbacks registered after run immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def wait(self, timeout=None) -> bool:
        """
        Block until cancelled or the timeout passes. True if cancelled.
        """
        return self._event.wait(timeout)

    def add_callback(self, callback):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def child(self):
        """
        A token that is cancelled together with this one, but can
        also be cancelled on its own.
        """
        token = Cancellation()
        self.add_callback(token.cancel)
        token.add_callback(lambda: self.remove_callback(token.cancel))
        return token
