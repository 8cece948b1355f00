"""
Core engine types.

This module contains identity and desired-state types shared across the
differ, planner, executor and drift reconciler.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from converge.values import Value, values_from_python

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class InstanceKey:
    """
    Identity of a resource instance: resource type plus local name.

    ``deposed`` is only set for an old remote object left behind by a
    create-before-destroy replacement; it holds that object's remote id.
    """

    type_name: str
    name: str
    deposed: str = ""

    @classmethod
    def parse(cls, text: str) -> "InstanceKey":
        """
        Parse ``type.name`` into an InstanceKey.

        Raises:
            ValueError: If the text is not of the form ``type.name``
        """
        parts = text.split(".")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid instance address '{text}': expected 'type.name'")
        return cls(type_name=parts[0], name=parts[1])

    @property
    def is_deposed(self) -> bool:
        return bool(self.deposed)

    def current(self) -> "InstanceKey":
        """The non-deposed key for the same instance."""
        return InstanceKey(self.type_name, self.name)

    def __str__(self) -> str:
        address = f"{self.type_name}.{self.name}"
        if self.deposed:
            return f"{address} (deposed {self.deposed})"
        return address


@dataclass
class DesiredInstance:
    """Desired configuration for one resource instance."""

    key: InstanceKey
    attributes: Dict[str, Value] = field(default_factory=dict)
    depends_on: List[InstanceKey] = field(default_factory=list)

    def references(self) -> Set[InstanceKey]:
        """Instances this configuration refers to, explicitly or via references."""
        keys = set(self.depends_on)
        for value in self.attributes.values():
            for ref in value.references():
                keys.add(InstanceKey(ref.type_name, ref.name))
        keys.discard(self.key)
        return keys

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DesiredInstance":
        """
        Build a DesiredInstance from a configuration document entry.

        Expected shape::

            {"type": "bucket", "name": "logs",
             "attributes": {"acl": "private", "kms_key": {"$ref": "key.main.arn"}},
             "depends_on": ["policy.main"]}
        """
        if "type" not in data or "name" not in data:
            raise ValueError("Resource entries must contain 'type' and 'name'")
        return cls(
            key=InstanceKey(str(data["type"]), str(data["name"])),
            attributes=values_from_python(data.get("attributes")),
            depends_on=[InstanceKey.parse(d) for d in data.get("depends_on", [])],
        )


def desired_from_document(document: Optional[Dict[str, Any]]) -> List[DesiredInstance]:
    """Parse the ``resources`` list of a configuration document."""
    if not document:
        return []
    resources = document.get("resources", [])
    if not isinstance(resources, list):
        raise ValueError("'resources' must be a list")
    desired = [DesiredInstance.from_dict(entry) for entry in resources]
    logger.debug(f"Loaded {len(desired)} desired instances")
    return desired
