import threading


class SharedStatus:
    """
    Liveness flag for the primary backend, shared by the health monitor
    (sole writer) and request handlers (readers).
    """

    def __init__(self, primary_online: bool = True):
        self._primary_online = primary_online
        self._lock = threading.Lock()

    def read(self) -> bool:
        """
        Return whether the primary backend is currently considered online.
        """
        with self._lock:
            return self._primary_online

    def write(self, online: bool) -> bool:
        """
        Set the primary liveness flag.

        Returns:
            bool: True if the stored value changed.
        """
        with self._lock:
            changed = self._primary_online != online
            self._primary_online = online
            return changed

    def __repr__(self):
        return f"SharedStatus(primary_online={self.read()})"
