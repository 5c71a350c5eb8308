"""
Tests for camera discovery: filtering, duplicate handling and error mapping.
"""

from types import SimpleNamespace

import pytest

from nest_clip_sync.auth import HOMEGRAPH_SCOPE
from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.devices import DeviceDirectory
from nest_clip_sync.devices import device_from_record
from nest_clip_sync.devices import is_syncable
from nest_clip_sync.devices import records_from_homegraph
from nest_clip_sync.models import AuthError
from nest_clip_sync.models import DiscoveryError
from tests.conftest import make_record
from tests.fake_client import FakeDiscoveryService
from tests.fake_client import FakeTokenExchange


def _directory(clock, service, fail=False):
    store = CredentialStore(FakeTokenExchange(clock, fail=fail), HOMEGRAPH_SCOPE, clock=clock)
    return DeviceDirectory(service, store)


class TestFiltering:
    @pytest.mark.asyncio
    async def test_keeps_nest_cameras_only(self, clock):
        service = FakeDiscoveryService(
            [
                make_record("cam-1", "Front Door", model="Nest Doorbell (battery)"),
                make_record("cam-2", "Driveway", model="Acme Cam 3000"),
                make_record("hub-1", "Kitchen Display", model="Nest Hub", traits=[]),
                make_record("cam-3", "Backyard", model="Nest Cam (outdoor)"),
            ]
        )
        devices = await _directory(clock, service).list_devices()
        assert [d.id for d in devices] == ["cam-1", "cam-3"]
        assert devices[0].display_name == "Front Door"

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_reported_once(self, clock):
        service = FakeDiscoveryService(
            [
                make_record("cam-1", "Front Door"),
                make_record("cam-1", "Front Door (again)"),
            ]
        )
        devices = await _directory(clock, service).list_devices()
        assert len(devices) == 1
        assert devices[0].display_name == "Front Door"

    @pytest.mark.asyncio
    async def test_empty_id_is_ignored(self, clock):
        service = FakeDiscoveryService([make_record("", "Ghost")])
        assert await _directory(clock, service).list_devices() == []

    @pytest.mark.asyncio
    async def test_no_cameras_is_not_an_error(self, clock):
        assert await _directory(clock, FakeDiscoveryService([])).list_devices() == []

    @pytest.mark.asyncio
    async def test_every_call_asks_discovery_again(self, clock):
        service = FakeDiscoveryService([make_record("cam-1", "Front Door")])
        directory = _directory(clock, service)
        await directory.list_devices()
        service.records.append(make_record("cam-2", "Garage"))
        devices = await directory.list_devices()
        assert [d.id for d in devices] == ["cam-1", "cam-2"]
        assert service.tokens == ["token-1", "token-1"]

    def test_is_syncable_needs_both_trait_and_family(self):
        streaming = device_from_record(make_record("x", "X", model="Nest Cam"))
        not_nest = device_from_record(make_record("y", "Y", model="Other"))
        no_stream = device_from_record(make_record("z", "Z", model="Nest Cam", traits=[]))
        assert is_syncable(streaming)
        assert not is_syncable(not_nest)
        assert not is_syncable(no_stream)


class TestErrors:
    @pytest.mark.asyncio
    async def test_malformed_record_raises(self, clock):
        service = FakeDiscoveryService([{"name": "no id"}])
        with pytest.raises(DiscoveryError):
            await _directory(clock, service).list_devices()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record",
        [
            {"id": 42, "name": "Front", "model": "Nest"},
            {"id": "cam-1", "name": "Front", "model": "Nest", "traits": 5},
            {"id": "cam-1", "name": "Front", "model": "Nest", "traits": "CameraStream"},
            {"id": "cam-1", "name": "Front", "model": "Nest", "traits": {"a": 1}},
        ],
    )
    async def test_wrong_field_types_raise(self, clock, record):
        service = FakeDiscoveryService([record])
        with pytest.raises(DiscoveryError):
            await _directory(clock, service).list_devices()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("records", [5, None, "cam-1", {"devices": []}])
    async def test_non_list_response_raises(self, clock, records):
        service = FakeDiscoveryService()
        service.records = records
        with pytest.raises(DiscoveryError):
            await _directory(clock, service).list_devices()

    @pytest.mark.asyncio
    async def test_service_failure_is_wrapped(self, clock):
        service = FakeDiscoveryService(error=ConnectionError("unreachable"))
        with pytest.raises(DiscoveryError, match="unreachable"):
            await _directory(clock, service).list_devices()

    @pytest.mark.asyncio
    async def test_auth_failure_propagates(self, clock):
        service = FakeDiscoveryService([make_record("cam-1", "Front Door")])
        with pytest.raises(AuthError):
            await _directory(clock, service, fail=True).list_devices()
        assert service.tokens == []


class TestHomeGraphRecords:
    def _device(self, unique_id, name, model, traits):
        return SimpleNamespace(
            device_info=SimpleNamespace(agent_info=SimpleNamespace(unique_id=unique_id)),
            device_name=name,
            traits=traits,
            hardware=SimpleNamespace(model=model),
        )

    def test_flattens_devices(self):
        homegraph = SimpleNamespace(
            home=SimpleNamespace(
                devices=[
                    self._device("cam-1", "Front Door", "Nest Doorbell", ["a.CameraStream"]),
                    self._device("spk-1", "Kitchen", "Nest Mini", []),
                ]
            )
        )
        records = records_from_homegraph(homegraph)
        assert records == [
            {
                "id": "cam-1",
                "name": "Front Door",
                "traits": ["a.CameraStream"],
                "model": "Nest Doorbell",
            },
            {"id": "spk-1", "name": "Kitchen", "traits": [], "model": "Nest Mini"},
        ]

    def test_missing_home_yields_nothing(self):
        assert records_from_homegraph(SimpleNamespace(home=None)) == []
