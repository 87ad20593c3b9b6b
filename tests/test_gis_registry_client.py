from __future__ import annotations

import httpx
import pytest

import app.services.gis_registry_client as client_module
from app.services.errors import RegistryUnavailableError
from app.services.gis_registry_client import GisRegistryClient, GisRegistryConfig


def _config(**overrides) -> GisRegistryConfig:
    values = {
        "endpoint_url": "https://registry.example.test/parcels",
        "service_key": "k",
        "max_retries": 2,
        "requests_per_sec": 1000.0,
    }
    values.update(overrides)
    return GisRegistryConfig(**values)


def _data_go_payload() -> dict:
    return {
        "response": {
            "header": {"resultCode": "00", "resultMsg": "NORMAL SERVICE."},
            "body": {
                "items": {
                    "item": [
                        {
                            "pnu": "1111010100101230004",
                            "address": "서울특별시 종로구 청운동 123-4",
                            "area": "812.5",
                            "officialPrice": "5,120,000",
                            "ownerCount": "2",
                            "units": [
                                {"id": "bu-1", "dong": "101동", "ho": "1001호", "buildingName": "청운아파트"},
                                {"dong": "101", "ho": "1002"},
                            ],
                        }
                    ]
                }
            },
        }
    }


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(client_module.time, "sleep", lambda _: None)


def test_lookup_parcel_parses_data_go_payload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_data_go_payload())

    client = GisRegistryClient(_config(), transport=httpx.MockTransport(handler))
    parcel = client.lookup_parcel(" 서울특별시 종로구  청운동 123-4 ")

    assert parcel is not None
    assert parcel.pnu == "1111010100101230004"
    assert parcel.area == 812.5
    assert parcel.official_price == 5120000.0
    assert parcel.owner_count == 2
    assert [(u.id, u.dong, u.ho) for u in parcel.units] == [("bu-1", "101", "1001")]
    assert seen[0].url.params["address"] == "서울특별시 종로구 청운동 123-4"
    assert seen[0].url.params["serviceKey"] == "k"


def test_lookup_parcel_accepts_proxy_payload_and_caches():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(
            200,
            json={"success": True, "data": {"pnu": "1111010100100770000", "address": "서울특별시 종로구 청운동 77"}},
        )

    client = GisRegistryClient(_config(), transport=httpx.MockTransport(handler))
    first = client.lookup_parcel("청운동 77")
    second = client.lookup_parcel("청운동  77")

    assert first == second
    assert first.units == ()
    assert calls["n"] == 1


def test_lookup_parcel_not_found_returns_none():
    client = GisRegistryClient(
        _config(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"success": False, "message": "no result"})),
    )
    assert client.lookup_parcel("청운동 999") is None


def test_lookup_parcel_rejects_malformed_pnu():
    client = GisRegistryClient(
        _config(),
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"success": True, "data": {"pnu": "123", "address": "x"}})
        ),
    )
    assert client.lookup_parcel("청운동 1") is None


def test_lookup_parcel_retries_server_errors_then_succeeds():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=_data_go_payload())

    client = GisRegistryClient(_config(max_retries=2), transport=httpx.MockTransport(handler))
    assert client.lookup_parcel("청운동 123-4").pnu == "1111010100101230004"
    assert calls["n"] == 3


def test_lookup_parcel_raises_when_registry_stays_down():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = GisRegistryClient(_config(max_retries=1), transport=httpx.MockTransport(handler))
    with pytest.raises(RegistryUnavailableError):
        client.lookup_parcel("청운동 123-4")


def test_lookup_parcel_does_not_retry_client_errors():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400)

    client = GisRegistryClient(_config(max_retries=3), transport=httpx.MockTransport(handler))
    with pytest.raises(RegistryUnavailableError):
        client.lookup_parcel("청운동 123-4")
    assert calls["n"] == 1


def test_unconfigured_client_is_unavailable():
    client = GisRegistryClient(_config(endpoint_url=""))
    assert not client.is_configured()
    with pytest.raises(RegistryUnavailableError):
        client.lookup_parcel("청운동 123-4")
