"""Tests for state normalization, the status model and remaining-time estimates."""
import pytest

from klipper_overlay import (
    NormalizedStatus,
    STATE_DISCONNECTED,
    STATE_ERROR,
    STATE_IDLE,
    STATE_PAUSED,
    STATE_PRINTING,
    estimate_time_remaining,
    normalize_state,
    status_message,
)


class TestNormalizeState:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("printing", STATE_PRINTING),
            ("Printing", STATE_PRINTING),
            ("PAUSED", STATE_PAUSED),
            ("complete", STATE_IDLE),
            ("Standby", STATE_IDLE),
            ("ready", STATE_IDLE),
            ("cancelled", STATE_IDLE),
            ("error", STATE_ERROR),
            ("Shutdown", STATE_ERROR),
            ("  printing  ", STATE_PRINTING),
        ],
    )
    def test_vocabulary(self, raw, expected):
        assert normalize_state(raw) == expected

    def test_substring_fallback(self):
        assert normalize_state("printing_resumed") == STATE_PRINTING
        assert normalize_state("klippy_shutdown") == STATE_ERROR

    @pytest.mark.parametrize("raw", ["rebooting", "startup", "???", "unknown"])
    def test_unrecognized_fails_open_to_idle(self, raw):
        assert normalize_state(raw) == STATE_IDLE

    def test_unrecognized_logged_once(self, caplog):
        normalize_state("warming_up_flux_capacitor")
        normalize_state("warming_up_flux_capacitor")
        warnings = [r for r in caplog.records if "flux_capacitor" in r.getMessage()]
        assert len(warnings) == 1

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing_state_is_idle(self, raw):
        assert normalize_state(raw) == STATE_IDLE


class TestNormalizedStatus:
    def test_disconnected_sentinel_is_zeroed(self):
        status = NormalizedStatus.disconnected(timestamp=123)
        assert status.state == STATE_DISCONNECTED
        assert status.progress == 0
        assert status.extruder_temp == 0
        assert status.extruder_target == 0
        assert status.bed_temp == 0
        assert status.bed_target == 0
        assert status.filename is None
        assert status.thumbnail is None
        assert status.time_remaining is None
        assert status.timestamp == 123
        assert status.is_connected is False

    def test_to_dict_uses_wire_names(self):
        status = NormalizedStatus(
            state=STATE_PRINTING,
            progress=42,
            filename="benchy.gcode",
            extruder_temp=210.0,
            extruder_target=215.0,
            bed_temp=60.0,
            bed_target=60.0,
            print_duration=300.0,
            time_remaining=414,
            thumbnail="/thumbnail/.thumbs/benchy.png",
            timestamp=5,
        )
        assert status.to_dict() == {
            "state": "printing",
            "progress": 42,
            "filename": "benchy.gcode",
            "extruderTemp": 210.0,
            "extruderTarget": 215.0,
            "bedTemp": 60.0,
            "bedTarget": 60.0,
            "timeRemaining": 414,
            "printDuration": 300.0,
            "thumbnail": "/thumbnail/.thumbs/benchy.png",
            "timestamp": 5,
        }

    def test_snapshot_is_immutable(self):
        status = NormalizedStatus.disconnected(timestamp=1)
        with pytest.raises(AttributeError):
            status.progress = 50

    def test_status_message_envelope(self):
        import json

        message = json.loads(status_message(NormalizedStatus.disconnected(timestamp=9)))
        assert message["type"] == "status"
        assert message["data"]["state"] == "disconnected"


class TestEstimateTimeRemaining:
    def test_linear_extrapolation(self):
        assert estimate_time_remaining(600, 0.5, None) == 600

    def test_zero_progress_is_inestimable(self):
        assert estimate_time_remaining(600, 0, None) is None

    def test_complete_progress_is_inestimable(self):
        assert estimate_time_remaining(600, 1.0, None) is None

    def test_unknown_elapsed_is_inestimable(self):
        assert estimate_time_remaining(None, 0.5, None) is None

    def test_unknown_progress_is_inestimable(self):
        assert estimate_time_remaining(600, None, None) is None

    def test_metadata_estimate_clamped_at_zero(self):
        assert estimate_time_remaining(1200, 0.6, 1000) == 0

    def test_metadata_estimate_wins_over_extrapolation(self):
        assert estimate_time_remaining(600, 0.5, 1500) == 900

    def test_metadata_estimate_without_elapsed(self):
        assert estimate_time_remaining(None, None, 1500) == 1500

    def test_non_positive_metadata_estimate_ignored(self):
        assert estimate_time_remaining(600, 0.5, 0) == 600

    def test_rounds_to_whole_seconds(self):
        assert estimate_time_remaining(300, 0.42, None) == 414
