"""
Core interfaces for dependency injection
"""
from abc import ABC, abstractmethod
from typing import Any


class ConnectionFactory(ABC):
    """Outbound SSH connection factory interface"""

    @abstractmethod
    def create(self, config: Any) -> Any:
        """Dial, verify the peer and authenticate; return an active transport"""
        pass


class CommandRunner(ABC):
    """External command runner interface"""

    @abstractmethod
    def run(self, *args: str) -> None:
        """Run a command, raising on non-zero exit"""
        pass
