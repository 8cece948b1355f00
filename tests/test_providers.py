"""Unit tests for providers.py - Provider discovery."""

from unittest.mock import MagicMock, patch

import pytest

from converge.providers import PROVIDER_ENTRY_POINT_GROUP, discover_providers, load_provider
from converge.remote import Provider

from conftest import FakeRemoteAPI


def make_entry_point(name, factory=None, error=None):
    ep = MagicMock()
    ep.name = name
    if error is not None:
        ep.load.side_effect = error
    else:
        ep.load.return_value = factory
    return ep


def fake_factory(config):
    api = FakeRemoteAPI("bucket")
    api.initialized_with = None

    async def initialize(cfg):
        api.initialized_with = cfg

    api.initialize = initialize
    return Provider("fake", [api])


class TestDiscoverProviders:
    """Tests for discover_providers."""

    def test_loads_entry_points(self):
        with patch("converge.providers.entry_points") as mock_eps:
            mock_eps.return_value = [make_entry_point("fake", fake_factory)]
            factories = discover_providers()

        mock_eps.assert_called_once_with(group=PROVIDER_ENTRY_POINT_GROUP)
        assert factories == {"fake": fake_factory}

    def test_broken_entry_point_is_skipped(self, caplog):
        with patch("converge.providers.entry_points") as mock_eps:
            mock_eps.return_value = [
                make_entry_point("broken", error=ImportError("missing module")),
                make_entry_point("fake", fake_factory),
            ]
            factories = discover_providers()

        assert list(factories) == ["fake"]
        assert "Could not load provider broken" in caplog.text


@pytest.mark.asyncio
class TestLoadProvider:
    """Tests for load_provider."""

    async def test_named_provider_is_initialized(self):
        with patch("converge.providers.entry_points") as mock_eps:
            mock_eps.return_value = [make_entry_point("fake", fake_factory)]
            provider = await load_provider("fake", {"region": "eu"})

        assert provider.name == "fake"
        assert provider.api_for("bucket").initialized_with == {"region": "eu"}

    async def test_single_installed_provider_is_default(self):
        with patch("converge.providers.entry_points") as mock_eps:
            mock_eps.return_value = [make_entry_point("fake", fake_factory)]
            provider = await load_provider()

        assert provider.list_types() == ["bucket"]

    async def test_ambiguous_default(self):
        with patch("converge.providers.entry_points") as mock_eps:
            mock_eps.return_value = [
                make_entry_point("fake", fake_factory),
                make_entry_point("other", fake_factory),
            ]
            with pytest.raises(ValueError) as exc_info:
                await load_provider()

        assert "CONVERGE_PROVIDER" in str(exc_info.value)
        assert "fake, other" in str(exc_info.value)

    async def test_unknown_provider(self):
        with patch("converge.providers.entry_points") as mock_eps:
            mock_eps.return_value = []
            with pytest.raises(ValueError) as exc_info:
                await load_provider("aws")

        assert "Unknown provider: aws" in str(exc_info.value)
        assert "Available providers: none" in str(exc_info.value)
