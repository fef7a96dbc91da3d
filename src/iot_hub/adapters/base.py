# Abstract base class for broker adapters
# Each adapter implements the interface defined here

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict


class CommunicationAdapter(ABC):
    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def subscribe(self, topic: str, handler: Callable[[str, Any], Any]) -> None:
        pass

    @abstractmethod
    async def publish(self, message: Dict[str, Any], wait: bool = False) -> None:
        pass
