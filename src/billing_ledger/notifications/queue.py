from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class AsyncNotificationQueue(ABC):
    """
    Outbound channel for user-facing billing messages.
    Concrete implementations could use Redis, RabbitMQ, an email relay, etc.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(dict(payload))

    def for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("user_id") == user_id]
