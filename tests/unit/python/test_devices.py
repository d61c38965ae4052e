"""Tests for resolve_device() and device decoding — pure functions, no I/O."""

import pytest

from lib.devices import Device, NoDeviceAvailable, parse_devices, resolve_device

KITCHEN = Device(id="A", name="Kitchen", is_active=False)
PHONE = Device(id="B", name="Phone", is_active=True)
DEVICES = [KITCHEN, PHONE]


class TestResolveDevice:
    def test_exact_id_wins(self):
        assert resolve_device(DEVICES, requested_id="B") == PHONE

    def test_id_beats_name(self):
        assert resolve_device(DEVICES, requested_id="B", requested_name="Kitchen") == PHONE

    def test_name_is_case_insensitive(self):
        assert resolve_device(DEVICES, requested_name="kitchen") == KITCHEN
        assert resolve_device(DEVICES, requested_name="KITCHEN") == KITCHEN

    def test_unknown_id_falls_back_to_name(self):
        assert resolve_device(DEVICES, requested_id="Z", requested_name="kitchen") == KITCHEN

    def test_falls_back_to_active(self):
        assert resolve_device(DEVICES) == PHONE
        assert resolve_device(DEVICES, requested_name="Garage") == PHONE

    def test_empty_name_is_ignored(self):
        unnamed = Device(id="C", name="", is_active=False)
        assert resolve_device([unnamed, PHONE], requested_name="") == PHONE

    def test_name_must_match_exactly(self):
        assert resolve_device(DEVICES, requested_name="Kitch") == PHONE

    def test_numeric_request_compared_as_text(self):
        seven = Device(id="7", name="42", is_active=False)
        assert resolve_device([seven, PHONE], requested_id=7) == seven
        assert resolve_device([seven, PHONE], requested_name=42) == seven

    def test_first_active_when_several(self):
        other = Device(id="C", name="Speaker", is_active=True)
        assert resolve_device([KITCHEN, other, PHONE]) == other

    def test_empty_list_raises(self):
        with pytest.raises(NoDeviceAvailable):
            resolve_device([])

    def test_nothing_active_nothing_matching_raises(self):
        with pytest.raises(NoDeviceAvailable):
            resolve_device([KITCHEN], requested_id="Z", requested_name="Garage")


class TestParseDevices:
    def test_decodes_devices(self):
        payload = {"devices": [
            {"id": "A", "name": "Kitchen", "is_active": False, "volume_percent": 40},
            {"id": "B", "name": "Phone", "is_active": True},
        ]}
        devices = parse_devices(payload)
        assert devices == [KITCHEN, PHONE]
        assert devices[0].to_dict()["volume_percent"] == 40

    def test_skips_entries_without_id(self):
        payload = {"devices": [{"id": None, "name": "Restricted"}, {"id": "B", "name": "Phone"}]}
        assert [d.id for d in parse_devices(payload)] == ["B"]

    def test_tolerates_unexpected_shapes(self):
        assert parse_devices(None) == []
        assert parse_devices({"raw": "oops"}) == []
        assert parse_devices({"devices": "nope"}) == []
        assert parse_devices({"devices": ["x", 3]}) == []

    def test_missing_name_reads_as_empty(self):
        (device,) = parse_devices({"devices": [{"id": "A"}]})
        assert device.name == ""
        assert device.is_active is False
