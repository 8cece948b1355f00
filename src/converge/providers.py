"""
Provider discovery via entry points.

Provider packages expose a factory under the ``converge.providers`` entry
point group. The factory receives the provider's configuration and returns a
Provider grouping one RemoteAPI per resource type.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, Optional

from converge.remote import Provider

logger = logging.getLogger(__name__)

PROVIDER_ENTRY_POINT_GROUP = "converge.providers"

ProviderFactory = Callable[[Dict[str, Any]], Provider]


def discover_providers() -> Dict[str, ProviderFactory]:
    """Load every installed provider factory, keyed by entry point name."""
    factories: Dict[str, ProviderFactory] = {}
    for ep in entry_points(group=PROVIDER_ENTRY_POINT_GROUP):
        try:
            factories[ep.name] = ep.load()
        except Exception as e:
            logger.warning(f"Could not load provider {ep.name}: {e}")
    return factories


async def load_provider(
    name: Optional[str] = None, config: Optional[Dict[str, Any]] = None
) -> Provider:
    """
    Build and initialize a provider.

    Args:
        name: Entry point name; may be omitted when exactly one provider is installed
        config: Provider configuration passed to the factory and to initialize()

    Raises:
        ValueError: If the provider is unknown or the choice is ambiguous
    """
    factories = discover_providers()
    available = ", ".join(sorted(factories)) or "none"
    if not name:
        if len(factories) != 1:
            raise ValueError(
                f"Select a provider with CONVERGE_PROVIDER. Available providers: {available}"
            )
        name = next(iter(factories))
    if name not in factories:
        raise ValueError(f"Unknown provider: {name}. Available providers: {available}")

    config = config or {}
    provider = factories[name](config)
    await provider.initialize(config)
    logger.info(f"Loaded provider {name} (types: {', '.join(provider.list_types())})")
    return provider
