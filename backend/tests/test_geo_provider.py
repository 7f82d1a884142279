import httpx

from marketplace.services.geo_service import Coordinates, OpenRouteServiceClient


def _client(handler):
    return OpenRouteServiceClient(
        api_key="test-key",
        base_url="https://geo.test",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


def test_geocode_returns_first_feature(app):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "features": [
                {"geometry": {"coordinates": [36.82, -1.29]}},
                {"geometry": {"coordinates": [0, 0]}},
            ]
        })

    coords = _client(handler).geocode("Westlands, Nairobi, Kenya")

    assert coords == Coordinates(latitude=-1.29, longitude=36.82)
    assert seen[0].url.path == "/geocode/search"
    assert seen[0].url.params["text"] == "Westlands, Nairobi, Kenya"
    assert seen[0].url.params["api_key"] == "test-key"


def test_geocode_results_are_cached_per_client(app):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"features": [{"geometry": {"coordinates": [1.0, 2.0]}}]})

    client = _client(handler)
    client.geocode("Karen")
    client.geocode("Karen")

    assert len(calls) == 1


def test_geocode_degrades_to_none(app):
    assert _client(lambda r: httpx.Response(200, json={"features": []})).geocode("Nowhere") is None
    assert _client(lambda r: httpx.Response(503)).geocode("Nowhere") is None
    assert _client(lambda r: httpx.Response(200, content=b"<html>")).geocode("Nowhere") is None


def test_geocode_timeout_degrades_to_none(app):
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    assert _client(handler).geocode("Slowtown") is None


def test_route_parses_first_segment(app):
    def handler(request):
        assert request.url.path == "/v2/directions/driving-car"
        assert request.url.params["start"] == "36.8,-1.2"
        assert request.url.params["end"] == "36.9,-1.3"
        return httpx.Response(200, json={
            "features": [{
                "geometry": {"coordinates": [[36.8, -1.2], [36.9, -1.3]]},
                "properties": {
                    "segments": [{"distance": 12345.6, "duration": 901.2}],
                    "summary": {"distance": 12345.6, "duration": 901.2},
                },
            }]
        })

    route = _client(handler).route(
        Coordinates(latitude=-1.2, longitude=36.8),
        Coordinates(latitude=-1.3, longitude=36.9),
    )

    assert route.distance_m == 12345.6
    assert route.duration_s == 901.2
    assert route.coordinates == [[36.8, -1.2], [36.9, -1.3]]


def test_route_failure_is_none(app):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    origin = Coordinates(latitude=0, longitude=0)
    assert _client(handler).route(origin, origin) is None
    assert _client(lambda r: httpx.Response(200, json={"features": []})).route(origin, origin) is None
