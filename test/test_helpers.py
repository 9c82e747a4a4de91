"""Tests for the mapping table, selection, tabulation and driver resolution"""

from datetime import datetime

import pytest

import scope_desk
from scope_desk import (
    ALL_CHANNELS,
    ALL_MEASUREMENTS,
    DEFAULT_CHANNELS,
    DEFAULT_MEASUREMENTS,
    MEASUREMENT_MAP,
    AddressScheme,
    ChannelOption,
    MeasurementResult,
    ScopeConfigurationError,
    SimulatedDriver,
    build_mapping,
    expand_selection,
    format_address,
    resolve_driver,
    to_matrix,
)


class TestMapping:
    def test_eight_unique_slots(self):
        assert len(MEASUREMENT_MAP) == 8
        assert sorted(m.slot for m in MEASUREMENT_MAP.values()) == list(range(1, 9))

    def test_keys_are_normalized(self):
        assert MEASUREMENT_MAP["peak-to-peak"].param_engine == "PeakToPeak"
        assert MEASUREMENT_MAP["rise time"].slot == 3
        assert "Rise Time" not in MEASUREMENT_MAP

    def test_default_measurements_are_all_mapped(self):
        assert {m.id.lower() for m in DEFAULT_MEASUREMENTS} == set(MEASUREMENT_MAP)

    def test_duplicate_slot_rejected(self):
        with pytest.raises(ScopeConfigurationError):
            build_mapping({"Mean": ("Mean", 1), "Amplitude": ("Amplitude", 1)})

    def test_slot_out_of_range_rejected(self):
        with pytest.raises(ScopeConfigurationError):
            build_mapping({"Mean": ("Mean", 9)})

    def test_duplicate_name_rejected(self):
        with pytest.raises(ScopeConfigurationError):
            build_mapping({"Mean": ("Mean", 1), "MEAN ": ("Mean", 2)})


class TestSelection:
    def test_sentinel_expands_to_all(self):
        options = (ALL_CHANNELS,) + DEFAULT_CHANNELS
        assert expand_selection(options, [ALL_CHANNELS]) == list(DEFAULT_CHANNELS)

    def test_empty_selection_means_all(self):
        assert expand_selection(DEFAULT_MEASUREMENTS, []) == list(DEFAULT_MEASUREMENTS)

    def test_explicit_selection_kept_in_order(self):
        c3, c1 = DEFAULT_CHANNELS[2], DEFAULT_CHANNELS[0]
        assert expand_selection(DEFAULT_CHANNELS, [c3, c1]) == [c3, c1]

    def test_sentinel_never_in_output(self):
        options = (ALL_MEASUREMENTS,) + DEFAULT_MEASUREMENTS
        result = expand_selection(options, [ALL_MEASUREMENTS, DEFAULT_MEASUREMENTS[0]])
        assert ALL_MEASUREMENTS not in result


def test_to_matrix():
    t = datetime(2024, 1, 1)
    results = [
        MeasurementResult(t, "Channel 1", "Mean", "1.000 V"),
        MeasurementResult(t, "Channel 1", "Frequency", "10.00 Hz"),
        MeasurementResult(t, "Channel 2", "Mean", "2.000 V"),
    ]
    channels, rows = to_matrix(results)
    assert channels == ["Channel 1", "Channel 2"]
    assert [r.measurement for r in rows] == ["Mean", "Frequency"]
    assert rows[0].cells == ("1.000 V", "2.000 V")
    assert rows[1].cells == ("10.00 Hz", "")


def test_to_matrix_empty():
    assert to_matrix([]) == ([], [])


def test_format_address():
    assert format_address("192.168.0.100") == "IP:192.168.0.100"
    assert format_address("192.168.0.100", AddressScheme.TCPIP) == "TCPIP:192.168.0.100"


def test_channel_option_defaults():
    assert not ChannelOption("C1", "Channel 1").is_all
    assert ALL_CHANNELS.is_all


class TestResolveDriver:
    def test_simulated(self):
        assert isinstance(resolve_driver("simulated"), SimulatedDriver)

    def test_unknown_identifier(self):
        assert resolve_driver("Tektronix.TekVISA") is None

    def test_activedso_without_pywin32(self, monkeypatch):
        monkeypatch.setattr(scope_desk, "win32com", None)
        assert resolve_driver("LeCroy.ActiveDSO") is None

    def test_visa_without_library(self, monkeypatch):
        def no_library(backend=""):
            raise ValueError("Could not locate a VISA implementation")

        monkeypatch.setattr(scope_desk.pyvisa, "ResourceManager", no_library)
        assert resolve_driver("visa") is None
        assert resolve_driver("visa@py") is None

    def test_visa_backend_is_passed(self, monkeypatch):
        backends = []

        class FakeManager:
            def __init__(self, backend=""):
                backends.append(backend)

        monkeypatch.setattr(scope_desk.pyvisa, "ResourceManager", FakeManager)
        assert isinstance(resolve_driver("visa@py"), scope_desk.VisaDriver)
        assert backends == ["@py"]
