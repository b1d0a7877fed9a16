import re

import pytest

from hytalepanel.backend.handlers.install_state_handler import InstallStatusTracker
from hytalepanel.shared.install_models import (
    ALLOWED_TRANSITIONS,
    IllegalTransitionError,
    InstallState,
    InstallStatus,
    is_transition_allowed,
)


@pytest.fixture
def tracker():
    return InstallStatusTracker()


def walk_to(tracker, *states):
    for state in states:
        tracker.transition(state)


class TestTransitions:
    """Transition table enforcement and side effects"""

    def test_initial_state(self, tracker):
        snapshot = tracker.snapshot()

        assert snapshot["state"] == "idle"
        assert snapshot["progress"] == 0
        assert snapshot["logs"] == []

    @pytest.mark.parametrize(
        "current,target",
        [
            (InstallState.IDLE, InstallState.FINISHED),
            (InstallState.IDLE, InstallState.EXTRACTING),
            (InstallState.EXTRACTING, InstallState.IDLE),
            (InstallState.DOWNLOADING_TOOL, InstallState.AUTHENTICATING),
            (InstallState.FINISHED, InstallState.DOWNLOADING_GAME),
        ],
    )
    def test_illegal_pairs(self, current, target):
        assert not is_transition_allowed(current, target)

    def test_every_state_may_stay_put(self):
        for state in InstallState:
            assert is_transition_allowed(state, state)

    def test_every_state_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(InstallState)

    def test_illegal_transition_raises_and_keeps_state(self, tracker):
        with pytest.raises(IllegalTransitionError) as excinfo:
            tracker.transition(InstallState.FINISHED)

        assert excinfo.value.current == InstallState.IDLE
        assert excinfo.value.target == InstallState.FINISHED
        assert tracker.state == InstallState.IDLE

    def test_leaving_authenticating_clears_auth_fields(self, tracker):
        tracker.transition(InstallState.AUTHENTICATING)
        tracker.set_device_auth("https://oauth.accounts.hytale.com/oauth2/device/verify", "ABC123")

        tracker.transition(InstallState.DOWNLOADING_GAME)

        snapshot = tracker.snapshot()
        assert snapshot["deviceCode"] is None
        assert snapshot["verificationUrl"] is None

    def test_entering_active_state_clears_error(self, tracker):
        tracker.fail("boom")
        assert tracker.snapshot()["error"] == "boom"

        tracker.transition(InstallState.AUTHENTICATING)

        assert tracker.snapshot()["error"] is None

    def test_download_phase_resets_progress(self, tracker):
        walk_to(tracker, InstallState.AUTHENTICATING)
        tracker.set_progress(40)

        tracker.transition(InstallState.DOWNLOADING_GAME)

        assert tracker.progress == 0

    def test_fail_records_error_and_log(self, tracker):
        tracker.fail("Downloader exited with code 2. Check logs for details.")

        snapshot = tracker.snapshot()
        assert snapshot["state"] == "error"
        assert snapshot["error"] == "Downloader exited with code 2. Check logs for details."
        assert snapshot["logs"][-1] == "Error: Downloader exited with code 2. Check logs for details."

    def test_state_change_is_debug_logged(self, tracker):
        tracker.transition(InstallState.AUTHENTICATING)

        entry = tracker.snapshot()["debugLogs"][-1]
        assert re.match(r"^\[\d{2}:\d{2}:\d{2}\] State idle -> authenticating$", entry)


class TestProgressRatchet:
    def test_lower_value_leaves_progress_unchanged(self, tracker):
        tracker.ratchet_progress(60)

        changed = tracker.ratchet_progress(30)

        assert changed is False
        assert tracker.progress == 60

    def test_higher_value_advances(self, tracker):
        assert tracker.ratchet_progress(10) is True
        assert tracker.ratchet_progress(55) is True
        assert tracker.progress == 55

    def test_over_100_is_ignored(self, tracker):
        tracker.ratchet_progress(90)
        tracker.ratchet_progress(250)

        assert tracker.progress == 90

    def test_set_progress_is_clamped(self, tracker):
        tracker.set_progress(130)
        assert tracker.progress == 100
        tracker.set_progress(-4)
        assert tracker.progress == 0


class TestDeviceAuth:
    def test_only_recorded_while_authenticating(self, tracker):
        assert tracker.set_device_auth("https://x", "CODE") is False
        assert tracker.get_device_auth() == {"verificationUrl": None, "deviceCode": None}

    def test_first_value_wins(self, tracker):
        tracker.transition(InstallState.AUTHENTICATING)

        assert tracker.set_device_auth(None, "FIRST") is True
        assert tracker.set_device_auth("https://verify", "SECOND") is True
        assert tracker.set_device_auth("https://other", "THIRD") is False

        assert tracker.get_device_auth() == {"verificationUrl": "https://verify", "deviceCode": "FIRST"}


class TestRunFields:
    def test_archive_name_first_match_only(self, tracker):
        assert tracker.set_archive_name("a.zip") is True
        assert tracker.set_archive_name("b.zip") is False
        assert tracker.detected_archive_name == "a.zip"

    def test_reset_run_clears_per_run_fields(self, tracker):
        tracker.transition(InstallState.AUTHENTICATING)
        tracker.set_device_auth("https://verify", "CODE")
        tracker.set_archive_name("a.zip")
        tracker.ratchet_progress(40)
        tracker.add_log("old line")
        tracker.fail("old error")

        tracker.reset_run()

        snapshot = tracker.snapshot()
        assert snapshot["progress"] == 0
        assert snapshot["detectedArchiveName"] is None
        assert snapshot["error"] is None
        assert snapshot["logs"] == []
        assert snapshot["debugLogs"]


class TestBoundedLogs:
    def test_logs_keep_most_recent(self):
        tracker = InstallStatusTracker(max_log_entries=3, max_debug_log_entries=2)

        for i in range(10):
            tracker.add_log(f"line {i}")
            tracker.add_debug_log(f"debug {i}")

        snapshot = tracker.snapshot()
        assert snapshot["logs"] == ["line 7", "line 8", "line 9"]
        assert len(snapshot["debugLogs"]) == 2
        assert snapshot["debugLogs"][-1].endswith("debug 9")

    def test_snapshot_is_a_copy(self, tracker):
        tracker.add_log("first")
        snapshot = tracker.snapshot()

        tracker.add_log("second")

        assert snapshot["logs"] == ["first"]


class TestInstallStatus:
    def test_to_dict_keys(self):
        status = InstallStatus(progress=150)

        assert status.progress == 100
        assert set(status.to_dict()) == {
            "state", "deviceCode", "verificationUrl", "detectedArchiveName",
            "progress", "error", "logs", "debugLogs",
        }

    def test_auth_pending(self):
        status = InstallStatus(state=InstallState.AUTHENTICATING, device_code="ABC")

        assert status.auth_pending
        assert status.is_active
