import asyncio
import unittest
from unittest.mock import AsyncMock

import httpx
from pydantic import ValidationError

from dnsgeo.models import LocationResult
from dnsgeo.services.circuit_breaker import CircuitState
from dnsgeo.services.geo_service import GeoService
from dnsgeo.settings import GeoSettings
from tests.fakes import FakeClock, FakeGeoApi, success_body

MOUNTAIN_VIEW = LocationResult(lat=37.4, lng=-122.1, city="Mountain View", country="US")


class GeoServiceTestCase(unittest.IsolatedAsyncioTestCase):
    def make_service(self, api, **overrides) -> GeoService:
        self.clock = FakeClock()
        settings = GeoSettings(api_base_url="http://geo.test/json", **overrides)
        service = GeoService(
            settings,
            http_client=api.client(),
            clock=self.clock,
            sleep=self.clock.sleep,
        )
        self.addAsyncCleanup(service.close)
        return service


class TestLookup(GeoServiceTestCase):
    async def test_end_to_end_and_cache_hit(self):
        api = FakeGeoApi(success_body())
        geo = self.make_service(api)

        first = await geo.lookup("8.8.8.8")
        second = await geo.lookup("8.8.8.8")

        self.assertEqual(first, MOUNTAIN_VIEW)
        self.assertIs(second, first)
        self.assertEqual(api.calls, 1)

        stats = geo.get_stats()
        self.assertEqual(stats.total_lookups, 2)
        self.assertEqual(stats.cache_hits, 1)
        self.assertEqual(stats.cache_misses, 1)
        self.assertEqual(stats.upstream_calls, 1)

    async def test_private_addresses_never_reach_upstream(self):
        api = FakeGeoApi()
        geo = self.make_service(api)

        for ip in ("10.0.0.5", "192.168.1.1", "127.0.0.1", "fe80::1", "::1"):
            self.assertIsNone(await geo.lookup(ip))
            self.assertIsNone(await geo.lookup(ip))

        self.assertEqual(api.calls, 0)
        self.assertEqual(geo.get_stats().private_addresses, 5)
        self.assertEqual(geo.get_health_status()["rate_limiter"]["in_window"], 0)

        # Rate budget untouched: a public lookup is admitted straight away
        self.assertEqual(await geo.lookup("8.8.8.8"), MOUNTAIN_VIEW)

    async def test_invalid_input_returns_none(self):
        api = FakeGeoApi()
        geo = self.make_service(api)

        for value in (None, "", 123, "999.1.1.1", "a" * 60):
            self.assertIsNone(await geo.lookup(value))

        self.assertEqual(api.calls, 0)
        self.assertEqual(geo.get_stats().invalid_inputs, 5)
        self.assertEqual(geo.get_cache_stats()["size"], 0)

    async def test_ipv6_spellings_share_a_cache_entry(self):
        api = FakeGeoApi(success_body())
        geo = self.make_service(api)

        await geo.lookup("2001:4860:4860::8888")
        await geo.lookup("2001:4860:4860:0:0:0:0:8888")

        self.assertEqual(api.calls, 1)

    async def test_zone_index_is_not_sent_upstream(self):
        api = FakeGeoApi(success_body())
        geo = self.make_service(api)

        location = await geo.lookup("2001:4860:4860::8888%eth0")
        self.assertEqual(location, MOUNTAIN_VIEW)
        self.assertEqual(await geo.lookup("2001:4860:4860::8888"), MOUNTAIN_VIEW)

        self.assertEqual(api.calls, 1)
        self.assertEqual(api.requests[0].url.path, "/json/2001:4860:4860::8888")

    async def test_concurrent_lookups_are_coalesced(self):
        api = FakeGeoApi(success_body())
        geo = self.make_service(api)

        results = await asyncio.gather(*(geo.lookup("8.8.8.8") for _ in range(10)))

        self.assertEqual(api.calls, 1)
        self.assertEqual(results[0], MOUNTAIN_VIEW)
        for result in results:
            self.assertIs(result, results[0])

    async def test_failed_lookup_is_negatively_cached(self):
        api = FakeGeoApi(httpx.Response(500, text="down"))
        geo = self.make_service(api, max_retries=0)

        self.assertIsNone(await geo.lookup("8.8.8.8"))
        self.clock.advance(10)
        self.assertIsNone(await geo.lookup("8.8.8.8"))

        self.assertEqual(api.calls, 1)
        self.assertEqual(geo.get_stats().upstream_failures, 1)

    async def test_retries_happen_inside_one_lookup(self):
        api = FakeGeoApi(httpx.Response(503), httpx.Response(503), success_body())
        geo = self.make_service(api)

        self.assertEqual(await geo.lookup("8.8.8.8"), MOUNTAIN_VIEW)
        self.assertEqual(api.calls, 3)
        self.assertEqual(self.clock.sleeps, [1.0, 2.0])

    async def test_rate_limited_lookup_is_not_cached(self):
        api = FakeGeoApi(success_body())
        geo = self.make_service(api)

        await geo.lookup("8.8.8.8")
        self.assertIsNone(await geo.lookup("1.1.1.1"))
        self.assertEqual(geo.get_stats().rate_limit_rejections, 1)
        self.assertEqual(api.calls, 1)

        self.clock.advance(4)
        self.assertIsNotNone(await geo.lookup("1.1.1.1"))
        self.assertEqual(api.calls, 2)

    async def test_unexpected_error_returns_none(self):
        api = FakeGeoApi()
        geo = self.make_service(api)
        geo._api.call = AsyncMock(side_effect=RuntimeError("bug"))

        self.assertIsNone(await geo.lookup("8.8.8.8"))
        self.assertEqual(geo.circuit_state, CircuitState.CLOSED)


class TestBreakerIntegration(GeoServiceTestCase):
    def make_breaker_service(self, api) -> GeoService:
        return self.make_service(
            api,
            max_retries=0,
            max_requests_per_minute=100,
            min_request_delay_ms=1,
        )

    async def fail_five(self, geo):
        for i in range(5):
            self.assertIsNone(await geo.lookup(f"8.8.4.{i + 1}"))
            self.clock.advance(1)

    async def test_opens_after_five_failures_and_short_circuits(self):
        api = FakeGeoApi(httpx.Response(500))
        geo = self.make_breaker_service(api)

        await self.fail_five(geo)
        self.assertEqual(geo.circuit_state, CircuitState.OPEN)
        self.assertEqual(api.calls, 5)

        for i in range(3):
            self.assertIsNone(await geo.lookup(f"9.9.9.{i + 1}"))
        self.assertEqual(api.calls, 5)

        stats = geo.get_stats()
        self.assertEqual(stats.breaker_trips, 1)
        self.assertEqual(stats.breaker_short_circuits, 3)

    async def test_short_circuited_lookup_is_not_cached(self):
        api = FakeGeoApi(*([httpx.Response(500)] * 5), success_body())
        geo = self.make_breaker_service(api)
        await self.fail_five(geo)

        self.assertIsNone(await geo.lookup("9.9.9.9"))
        self.clock.advance(30)
        self.assertEqual(await geo.lookup("9.9.9.9"), MOUNTAIN_VIEW)

    async def test_half_open_success_closes(self):
        api = FakeGeoApi(*([httpx.Response(500)] * 5), success_body())
        geo = self.make_breaker_service(api)
        await self.fail_five(geo)

        self.clock.advance(30)
        self.assertEqual(await geo.lookup("9.9.9.9"), MOUNTAIN_VIEW)

        self.assertEqual(geo.circuit_state, CircuitState.CLOSED)
        self.assertEqual(
            geo.get_health_status()["circuit_breaker"]["failure_count"], 0
        )

    async def test_half_open_failure_reopens(self):
        api = FakeGeoApi(httpx.Response(500))
        geo = self.make_breaker_service(api)
        await self.fail_five(geo)

        self.clock.advance(30)
        self.assertIsNone(await geo.lookup("9.9.9.9"))

        self.assertEqual(geo.circuit_state, CircuitState.OPEN)
        self.assertEqual(api.calls, 6)
        self.assertEqual(geo.get_stats().breaker_trips, 2)

    async def test_api_rejections_do_not_trip_breaker(self):
        api = FakeGeoApi({"status": "fail", "message": "invalid query"})
        geo = self.make_breaker_service(api)

        for i in range(10):
            self.assertIsNone(await geo.lookup(f"8.8.4.{i + 1}"))
            self.clock.advance(1)

        self.assertEqual(geo.circuit_state, CircuitState.CLOSED)
        self.assertEqual(geo.get_stats().upstream_rejections, 10)

        # Cached as negative
        self.assertIsNone(await geo.lookup("8.8.4.1"))
        self.assertEqual(api.calls, 10)

    async def test_reset_circuit(self):
        api = FakeGeoApi(*([httpx.Response(500)] * 5), success_body())
        geo = self.make_breaker_service(api)
        await self.fail_five(geo)

        geo.reset_circuit()
        self.assertEqual(geo.circuit_state, CircuitState.CLOSED)
        self.assertEqual(await geo.lookup("9.9.9.9"), MOUNTAIN_VIEW)


class TestServiceHousekeeping(GeoServiceTestCase):
    async def test_source_is_a_copy(self):
        geo = self.make_service(FakeGeoApi())

        source = geo.get_source()
        self.assertEqual((source.lat, source.lng), (3.139, 101.6869))
        self.assertEqual(source.city, "Kuala Lumpur")
        self.assertIsNot(source, geo.get_source())

    async def test_invalid_source_raises_at_construction(self):
        settings = GeoSettings.model_construct(source_lat=123.0)
        with self.assertRaises(ValidationError):
            GeoService(settings)

    async def test_cache_bound_and_clear(self):
        api = FakeGeoApi(success_body())
        geo = self.make_service(api, max_cache_size=3)

        for i in range(6):
            await geo.lookup(f"10.0.0.{i + 1}")
        self.assertEqual(geo.get_cache_stats()["size"], 3)
        self.assertEqual(geo.get_cache_stats()["evictions"], 3)

        await geo.clear_cache()
        self.assertEqual(geo.get_cache_stats()["size"], 0)

    async def test_health_status_shape(self):
        geo = self.make_service(FakeGeoApi())
        await geo.lookup("8.8.8.8")

        health = geo.get_health_status()
        self.assertEqual(
            set(health),
            {"stats", "cache", "circuit_breaker", "rate_limiter", "coalescer"},
        )
        self.assertEqual(health["circuit_breaker"]["state"], "CLOSED")
        self.assertEqual(health["coalescer"]["in_flight"], 0)


if __name__ == "__main__":
    unittest.main()
