"""Unit tests for engine/snapshot.py."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from repo_atomic.engine.snapshot import DEFAULT_ENVIRONMENT_ALLOWLIST, SnapshotCapturer


class TestSnapshotCapturer:
    """Tests for SnapshotCapturer.capture()."""

    def test_without_source(self, tmp_path: Path):
        """Test a capturer without a source leaves probe fields empty."""
        snap = SnapshotCapturer(tmp_path, environ={}).capture()

        assert snap.working_directory == str(tmp_path.resolve())
        assert snap.current_reference is None
        assert snap.pending_changes is None
        assert snap.is_complete

    def test_with_source(self, tmp_path: Path):
        """Test reference and pending changes come from the source."""
        source = MagicMock()
        source.current_reference.return_value = "main"
        source.status_summary.return_value = [" M README.md"]

        snap = SnapshotCapturer(tmp_path, source=source, environ={}).capture()

        assert snap.current_reference == "main"
        assert snap.pending_changes == (" M README.md",)

    def test_only_allowlisted_environment(self, tmp_path: Path):
        """Test only allow-listed variables are recorded."""
        environ = {"CI": "true", "GITHUB_TOKEN": "secret", "HOME": "/root"}
        snap = SnapshotCapturer(tmp_path, environ=environ).capture()

        assert dict(snap.relevant_environment) == {"CI": "true"}
        assert "GITHUB_TOKEN" not in DEFAULT_ENVIRONMENT_ALLOWLIST

    def test_environment_is_read_only(self, tmp_path: Path):
        """Test the recorded environment cannot be mutated."""
        snap = SnapshotCapturer(tmp_path, environ={"CI": "1"}).capture()
        with pytest.raises(TypeError):
            snap.relevant_environment["CI"] = "0"

    def test_probe_failure_never_raises(self, tmp_path: Path):
        """Test probe failures are recorded, not raised."""
        source = MagicMock()
        source.current_reference.side_effect = RuntimeError("not a repo")
        source.status_summary.side_effect = RuntimeError("not a repo")

        snap = SnapshotCapturer(tmp_path, source=source, environ={}).capture()

        assert not snap.is_complete
        assert len(snap.capture_errors) == 2
        assert snap.current_reference is None


class TestSystemSnapshot:
    """Tests for SystemSnapshot helpers."""

    def test_diff(self, tmp_path: Path):
        """Test diff reports changed fields only."""
        source = MagicMock()
        source.status_summary.return_value = []
        source.current_reference.side_effect = ["main", "fix/42"]
        capturer = SnapshotCapturer(tmp_path, source=source, environ={})

        before = capturer.capture()
        after = capturer.capture()

        assert before.diff(after) == {"current_reference": ("main", "fix/42")}

    def test_to_dict(self, tmp_path: Path):
        """Test serialization is JSON-friendly."""
        data = SnapshotCapturer(tmp_path, environ={"CI": "1"}).capture().to_dict()
        assert data["relevant_environment"] == {"CI": "1"}
        assert data["pending_changes"] is None
        assert isinstance(data["timestamp"], str)
