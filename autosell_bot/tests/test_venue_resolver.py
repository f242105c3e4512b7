"""
Tests for venue resolution and migration events
"""

import asyncio
import json

import httpx
import pytest

from autosell_bot.config import Settings
from autosell_bot.core.models import Venue
from autosell_bot.core.venue_resolver import MigrationListener, VenueResolver
from autosell_bot.exceptions import ResolutionUnknown

MINT = "MintAAAApump"


def make_resolver(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return VenueResolver(Settings(), client=client), client


def resolve(handler, times=1):
    resolver, client = make_resolver(handler)

    async def run():
        try:
            return [await resolver.resolve(MINT) for _ in range(times)]
        finally:
            await client.aclose()

    return asyncio.run(run()), resolver


class TestVenueResolver:
    """Bonding curve until migration, aggregator after"""

    def test_bonding_curve_before_completion(self):
        venues, resolver = resolve(lambda r: httpx.Response(200, json={"complete": False}))
        assert venues == [Venue.BONDING_CURVE]
        assert not resolver.is_migrated(MINT)

    def test_migration_is_remembered(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"complete": True, "raydium_pool": "Pool1"})

        venues, resolver = resolve(handler, times=3)
        assert venues == [Venue.AGGREGATOR] * 3
        assert calls == [f"/coins/{MINT}"]
        assert resolver.is_migrated(MINT)

    def test_unknown_coin_routes_to_aggregator(self):
        venues, _ = resolve(lambda r: httpx.Response(404))
        assert venues == [Venue.AGGREGATOR]

    def test_server_error_is_unknown(self):
        with pytest.raises(ResolutionUnknown):
            resolve(lambda r: httpx.Response(502))

    def test_mark_migrated_reports_first_time_only(self):
        resolver = VenueResolver(Settings())
        assert resolver.mark_migrated(MINT) is True
        assert resolver.mark_migrated(MINT) is False


class TestMigrationListener:
    """PumpPortal message handling"""

    def test_migration_message_marks_mint_once(self):
        resolver = VenueResolver(Settings())
        seen = []

        async def on_migration(mint):
            seen.append(mint)

        listener = MigrationListener(Settings(), resolver, on_migration=on_migration)
        message = json.dumps({"txType": "migrate", "mint": MINT, "signature": "sig"})

        async def run():
            first = await listener.handle_message(message)
            await listener.handle_message(message)
            return first

        assert asyncio.run(run()) == MINT
        assert seen == [MINT]
        assert resolver.is_migrated(MINT)

    def test_other_messages_ignored(self):
        listener = MigrationListener(Settings(), VenueResolver(Settings()))

        async def run():
            return [
                await listener.handle_message("not json"),
                await listener.handle_message(json.dumps({"message": "Successfully subscribed"})),
                await listener.handle_message(json.dumps({"txType": "create", "mint": MINT})),
            ]

        assert asyncio.run(run()) == [None, None, None]
