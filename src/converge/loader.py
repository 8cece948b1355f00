"""
Document loading for schemas and desired configuration.

Both are plain YAML or JSON documents. A schema path may name a single file
(holding one schema document or a list of them) or a directory of such files.
"""

import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import yaml

from converge.base import DesiredInstance, desired_from_document
from converge.schema import SchemaRegistry

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = (".yaml", ".yml", ".json")


def load_document(path: str) -> Any:
    """Read a YAML or JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        if path.endswith(".json"):
            return json.load(f)
        return yaml.safe_load(f)


def load_configuration(path: str) -> List[DesiredInstance]:
    """
    Load desired configuration from a document with a ``resources`` list.

    Raises:
        ValueError: If the document is malformed
    """
    document = load_document(path)
    if document is not None and not isinstance(document, dict):
        raise ValueError(f"{path}: configuration must be a mapping with 'resources'")
    return desired_from_document(document)


def load_schemas(path: str, registry: Optional[SchemaRegistry] = None) -> SchemaRegistry:
    """
    Register every schema document found at ``path``.

    Raises:
        FileNotFoundError: If the path does not exist
        SchemaMismatch: If a document is not a valid schema
    """
    registry = registry or SchemaRegistry()
    root = Path(path)
    if root.is_dir():
        files = sorted(p for p in root.iterdir() if p.suffix in DOCUMENT_SUFFIXES)
    elif root.exists():
        files = [root]
    else:
        raise FileNotFoundError(f"Schema path not found: {path}")

    for file in files:
        document = load_document(str(file))
        documents = document if isinstance(document, list) else [document]
        registry.register_documents([d for d in documents if d])
        logger.debug(f"Loaded schemas from {file}")

    return registry
