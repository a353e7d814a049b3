"""Abstract base class for the shared key-value store.

The job store only needs a small subset of what a Redis-style server offers:
string keys with TTL, lists with atomic push/pop, sets, and a publish channel.
This module defines that subset so the job store stays independent of the
concrete backend (the local-first ``SQLiteStore`` ships with the package).
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

MessageCallback = Callable[[str, str], None]


class KeyValueStore(ABC):
    """Shared, externally synchronized key-value store.

    Implementations must provide:
    - Atomic ``rpop`` and ``claim`` (two concurrent callers never receive the
      same element)
    - TTL-based expiry; expired keys behave exactly like missing keys
    - Visibility across processes pointing at the same backend
    - ``StoreUnavailableError`` for every connectivity/locking failure
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the string stored at key, or None if missing/expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        """Store value at key, replacing any previous value and expiry.

        Args:
            key: Key name
            value: String value
            ttl: Seconds until the key expires (None = no expiry)
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key of any kind. Returns True if something was removed."""
        pass

    @abstractmethod
    def expire(self, key: str, ttl: float) -> None:
        """Set (or refresh) the expiry of an existing key of any kind."""
        pass

    @abstractmethod
    def lpush(self, key: str, value: str) -> int:
        """Push value onto the head of the list. Returns the new length."""
        pass

    @abstractmethod
    def rpop(self, key: str) -> Optional[str]:
        """Atomically pop from the tail of the list (oldest element).

        Implementation notes:
        - MUST be safe against concurrent callers in other threads and processes
        - lpush + rpop gives FIFO order
        """
        pass

    @abstractmethod
    def claim(
        self,
        list_key: str,
        marker_prefix: str,
        index_key: str,
        marker_value: str,
        marker_ttl: float,
    ) -> Optional[str]:
        """Pop the oldest element and record the claim on it, all or nothing.

        On success the popped value ``v`` is returned, ``marker_prefix + v``
        holds marker_value with marker_ttl, and ``v`` is a member of index_key.
        If any step fails, the element stays on the list.

        Returns:
            The popped value, or None if the list is empty
        """
        pass

    @abstractmethod
    def llen(self, key: str) -> int:
        """Length of the list (0 if missing)."""
        pass

    @abstractmethod
    def sadd(self, key: str, member: str) -> bool:
        """Add member to set. Returns True if it was not present."""
        pass

    @abstractmethod
    def srem(self, key: str, member: str) -> bool:
        """Remove member from set. Returns True if it was present."""
        pass

    @abstractmethod
    def smembers(self, key: str) -> List[str]:
        """Members of the set in insertion order."""
        pass

    @abstractmethod
    def publish(self, channel: str, message: str) -> int:
        """Publish message on channel.

        Returns:
            Number of in-process subscribers notified

        Implementation notes:
        - Delivery is best effort (at most once)
        """
        pass

    @abstractmethod
    def subscribe(self, channel: str, callback: MessageCallback) -> Callable[[], None]:
        """Register callback(channel, message) for channel.

        Returns:
            Function that removes the subscription
        """
        pass

    @abstractmethod
    def messages(self, channel: str, after_id: int = 0) -> List[Tuple[int, str]]:
        """Read published messages with id > after_id (cross-process consumers)."""
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        """Physically remove expired keys. Returns count removed."""
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass
