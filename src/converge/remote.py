"""
Remote API Contract - Abstract interface for provider collaborators.

A RemoteAPI translates CRUD calls for one resource type into calls against
the remote system. Implementations classify their own failures by raising
NotFoundError, RetryableError or FatalError; any other exception reaching the
engine is treated as fatal.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from converge.base import InstanceKey
from converge.errors import FatalError
from converge.values import Value

logger = logging.getLogger(__name__)


@dataclass
class CreateResult:
    """Outcome of a create call: the remote id and the attributes it reported."""

    id: str
    attributes: Dict[str, Value] = field(default_factory=dict)


class RemoteAPI(ABC):
    """
    Abstract base class for remote-API collaborators.

    One instance serves one resource type. Attribute mappings passed in and
    returned are always fully known Values.
    """

    @property
    @abstractmethod
    def type_name(self) -> str:
        """Resource type this collaborator manages."""
        pass

    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the collaborator with configuration.

        Args:
            config: Provider-specific configuration dictionary
        """
        return None

    @abstractmethod
    async def create(self, key: InstanceKey, attributes: Dict[str, Value]) -> CreateResult:
        """
        Create the remote object.

        Args:
            key: Instance being created
            attributes: Desired configurable attributes

        Returns:
            CreateResult with the new remote id and reported attributes
        """
        pass

    @abstractmethod
    async def read(self, id: str) -> Dict[str, Value]:
        """
        Read the remote object.

        Raises:
            NotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    async def update(self, id: str, changes: Dict[str, Value]) -> Dict[str, Value]:
        """
        Apply in-place changes.

        Args:
            id: Remote id
            changes: Only the attributes that change

        Returns:
            Attributes reported after the update
        """
        pass

    @abstractmethod
    async def delete(self, id: str) -> None:
        """
        Delete the remote object.

        Raises:
            NotFoundError: If the object is already gone
        """
        pass

    async def pre_delete(self, id: str, attributes: Dict[str, Value]) -> None:
        """
        Drain hook run before every delete (e.g. detaching dependents).

        The default does nothing.
        """
        return None

    async def close(self) -> None:
        """Release any resources held by the collaborator."""
        return None


class Provider:
    """A named group of RemoteAPI collaborators keyed by resource type."""

    def __init__(self, name: str, apis: Optional[List[RemoteAPI]] = None):
        self.name = name
        self._apis: Dict[str, RemoteAPI] = {}
        for api in apis or []:
            self.register(api)

    def register(self, api: RemoteAPI) -> None:
        if api.type_name in self._apis:
            raise ValueError(
                f"Provider {self.name} already has a remote API for {api.type_name}"
            )
        self._apis[api.type_name] = api
        logger.debug(f"Provider {self.name}: registered remote API for {api.type_name}")

    def api_for(self, type_name: str) -> RemoteAPI:
        """
        Get the collaborator for a resource type.

        Raises:
            FatalError: If the provider does not manage the type
        """
        try:
            return self._apis[type_name]
        except KeyError:
            available = ", ".join(sorted(self._apis)) or "none"
            raise FatalError(
                f"Provider {self.name} has no remote API for type {type_name}. "
                f"Available types: {available}"
            ) from None

    def list_types(self) -> List[str]:
        return sorted(self._apis)

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize every collaborator with the provider configuration."""
        for api in self._apis.values():
            await api.initialize(config)

    async def close(self) -> None:
        for api in self._apis.values():
            await api.close()
