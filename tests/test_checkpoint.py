"""Tests for epicflow.runner.checkpoint."""

import os
import time
from datetime import timedelta

import pytest

from epicflow.lib.validate import ValidationError
from epicflow.runner.checkpoint import Checkpoint, CheckpointManager


class TestCheckpoint:
    def test_next_index(self):
        assert Checkpoint("2", last_index=-1).next_index == 0
        assert Checkpoint("2", last_index=3).next_index == 4

    def test_env_roundtrip_keeps_exit_code(self):
        cp = Checkpoint("2", last_index=1, last_story_id="2-2-x", completed=2, exit_code=130)
        values = cp.to_env()
        assert values["NEXT_STORY_INDEX"] == "2"
        restored = Checkpoint.from_env("2", values)
        assert restored.exit_code == 130
        assert restored.last_story_id == "2-2-x"


class TestCheckpointManager:
    """Tests for checkpoint persistence."""

    def test_save_and_load(self, tmp_path):
        manager = CheckpointManager(tmp_path)
        path = manager.save(Checkpoint("3", last_index=2, last_story_id="3-3-api", completed=2, failed=1))

        assert path.name == ".epic-3-checkpoint"
        text = path.read_text()
        assert "LAST_STORY_INDEX=2" in text
        assert "NEXT_STORY_INDEX=3" in text

        loaded = manager.load("3")
        assert loaded.next_index == 3
        assert loaded.completed == 2
        assert loaded.failed == 1
        assert loaded.timestamp

    def test_missing(self, tmp_path):
        assert CheckpointManager(tmp_path).load("3") is None

    def test_stale_checkpoint_discarded(self, tmp_path):
        manager = CheckpointManager(tmp_path, max_age=timedelta(days=7))
        path = manager.save(Checkpoint("3", last_index=0))
        old = time.time() - 8 * 86400
        os.utime(path, (old, old))

        assert manager.load("3") is None
        assert not path.exists()

    def test_malformed_checkpoint_ignored(self, tmp_path):
        manager = CheckpointManager(tmp_path)
        manager.path_for("3").write_text("LAST_STORY_INDEX=$(rm -rf /)\n")
        assert manager.load("3") is None

    def test_missing_index_ignored(self, tmp_path):
        manager = CheckpointManager(tmp_path)
        manager.path_for("3").write_text("COMPLETED=1\n")
        assert manager.load("3") is None

    def test_invalid_record_refused(self, tmp_path):
        manager = CheckpointManager(tmp_path)
        with pytest.raises(ValidationError):
            manager.save(Checkpoint("3", last_index=0, completed=-1))

    def test_clear(self, tmp_path):
        manager = CheckpointManager(tmp_path)
        manager.save(Checkpoint("3", last_index=0))
        manager.clear("3")
        assert manager.load("3") is None
        manager.clear("3")
