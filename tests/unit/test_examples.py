"""Tests for the bundled example target."""

from historian.examples import snap_tags
from historian.lib.history import verify_history
from historian.lib.storage import MemoryStore


class TestSnapTagsExample:
    """The MovieLens tags example runs end to end."""

    def test_two_snapshots(self, tmp_path, monkeypatch):
        monkeypatch.setattr(snap_tags, "SAMPLE_DIR", tmp_path / "sample_data")
        snap_tags.create_sample_data()
        store = MemoryStore()

        first, second = snap_tags.run(store)

        assert first["inserted"] == 3
        assert (second["inserted"], second["updated"], second["closed"]) == (1, 1, 1)
        assert second["unchanged"] == 1

        history = store.read_history("snap_tags_history")
        assert len(history) == 5
        assert verify_history(history) == []
        assert len(store.read_current_state("snap_tags")) == 3
