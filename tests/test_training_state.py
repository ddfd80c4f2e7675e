"""Tests for the training state record, replay markers and caches."""

import json

import pytest

from src.errors import BootstrapRevisionMismatch, StateCorruption
from src.training.state import (
    CURRENT_BOOTSTRAP_REVISION,
    HYBRID_KEY,
    MODEL_KEY,
    TrainingStateStore,
    assert_revision_current,
    empty_state,
    load_training_state,
    mark_bootstrap_completed,
    read_training_state,
    record_bootstrap_chunk,
    record_latest_run,
    refresh_training_state_from_artifacts,
    save_training_state,
    should_run_historical_bootstrap,
)
from src.training.status import StatusMarkers

FULL_SEASON = list(range(1, 18))


def _chunk_state():
    return {
        "schema_version": 1,
        "bootstraps": {
            MODEL_KEY: {
                "revision": CURRENT_BOOTSTRAP_REVISION,
                "chunks": [{
                    "start_season": 1999,
                    "end_season": 2001,
                    "seasons": [{"season": s, "weeks": FULL_SEASON} for s in (1999, 2000, 2001)],
                }],
            },
        },
        "latest_runs": {
            MODEL_KEY: {"season": 2001, "week": 17, "revision": CURRENT_BOOTSTRAP_REVISION},
        },
    }


# ---------------------------------------------------------------------------
# should_run_historical_bootstrap
# ---------------------------------------------------------------------------


class TestShouldRun:
    def test_chunk_coverage_satisfies_requirement(self):
        state = _chunk_state()
        assert should_run_historical_bootstrap(
            state, MODEL_KEY, required_through_season=2001, force=False
        ) is False

    def test_gap_after_covered_chunk(self):
        state = _chunk_state()
        assert should_run_historical_bootstrap(
            state, MODEL_KEY, required_through_season=2002, force=False
        ) is True

    def test_missing_record_and_force(self):
        assert should_run_historical_bootstrap(empty_state(), MODEL_KEY, force=False) is True
        assert should_run_historical_bootstrap(
            _chunk_state(), MODEL_KEY, required_through_season=2001, force=True
        ) is True

    def test_revision_mismatch(self):
        state = _chunk_state()
        state["bootstraps"][MODEL_KEY]["revision"] = "old-revision"
        assert should_run_historical_bootstrap(
            state, MODEL_KEY, required_through_season=2001, force=False
        ) is True
        with pytest.raises(BootstrapRevisionMismatch):
            assert_revision_current(state, MODEL_KEY)

    def test_missing_latest_run_requires_bootstrap(self):
        state = _chunk_state()
        state["latest_runs"] = {}
        assert should_run_historical_bootstrap(
            state, MODEL_KEY, required_through_season=2001, force=False
        ) is True

    def test_force_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("REBUILD_HISTORICAL", "yes")
        assert should_run_historical_bootstrap(_chunk_state(), MODEL_KEY, required_through_season=2001)
        monkeypatch.delenv("REBUILD_HISTORICAL")
        assert not should_run_historical_bootstrap(_chunk_state(), MODEL_KEY, required_through_season=2001)


# ---------------------------------------------------------------------------
# Mutators
# ---------------------------------------------------------------------------


class TestMutators:
    def test_mark_completed_unions_weeks(self):
        state = empty_state()
        mark_bootstrap_completed(state, MODEL_KEY, seasons=[{"season": 2020, "weeks": [1, 2]}])
        mark_bootstrap_completed(state, MODEL_KEY, seasons=[{"season": 2020, "weeks": [2, 3]}, 2021])

        record = state["bootstraps"][MODEL_KEY]
        assert record["revision"] == CURRENT_BOOTSTRAP_REVISION
        assert record["seasons"] == [
            {"season": 2020, "weeks": [1, 2, 3]},
            {"season": 2021, "weeks": []},
        ]

    def test_stale_revision_coverage_is_dropped(self):
        state = empty_state()
        state["bootstraps"][MODEL_KEY] = {
            "revision": "old-revision",
            "seasons": [{"season": 1999, "weeks": [1]}],
        }
        mark_bootstrap_completed(state, MODEL_KEY, seasons=[{"season": 2020, "weeks": [1]}])
        assert [s["season"] for s in state["bootstraps"][MODEL_KEY]["seasons"]] == [2020]

    def test_chunks_are_deduplicated_by_span(self):
        state = empty_state()
        record_bootstrap_chunk(state, MODEL_KEY, 2020, 2021, [{"season": 2020, "weeks": [1]}])
        record_bootstrap_chunk(state, MODEL_KEY, 2020, 2021, [{"season": 2021, "weeks": [4]}])

        chunks = state["bootstraps"][MODEL_KEY]["chunks"]
        assert len(chunks) == 1
        assert chunks[0]["seasons"] == [
            {"season": 2020, "weeks": [1]},
            {"season": 2021, "weeks": [4]},
        ]

    def test_latest_run_never_moves_backwards(self):
        state = empty_state()
        record_latest_run(state, MODEL_KEY, 2021, 5)
        record_latest_run(state, MODEL_KEY, 2020, 9)

        latest = state["latest_runs"][MODEL_KEY]
        assert (latest["season"], latest["week"]) == (2021, 5)
        assert latest["by_season"] == {"2020": 9, "2021": 5}

        record_latest_run(state, MODEL_KEY, 2021, 3)
        assert state["latest_runs"][MODEL_KEY]["by_season"]["2021"] == 5

    def test_keys_are_independent(self):
        state = empty_state()
        record_latest_run(state, HYBRID_KEY, 2021, 2)
        assert MODEL_KEY not in state["latest_runs"]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "training_state.json"
        save_training_state(_chunk_state(), path)
        assert load_training_state(path) == _chunk_state()
        assert not list(tmp_path.glob(".training_state.*"))

    def test_corrupt_file_resets_to_empty(self, tmp_path):
        path = tmp_path / "training_state.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(StateCorruption):
            read_training_state(path)
        assert load_training_state(path) == empty_state()

    def test_wrong_section_type_is_corruption(self, tmp_path):
        path = tmp_path / "training_state.json"
        path.write_text(json.dumps({"bootstraps": []}), encoding="utf-8")
        with pytest.raises(StateCorruption):
            read_training_state(path)

    def test_refresh_from_prediction_artifacts(self, tmp_path):
        for season, week in ((2020, 1), (2020, 2), (2021, 1)):
            (tmp_path / f"predictions_{season}_W{week:02d}.json").write_text("{}", encoding="utf-8")
        (tmp_path / "model_2021_W03.json").write_text("{}", encoding="utf-8")

        state = refresh_training_state_from_artifacts(tmp_path, empty_state())

        record = state["bootstraps"][MODEL_KEY]
        assert record["seasons"] == [
            {"season": 2020, "weeks": [1, 2]},
            {"season": 2021, "weeks": [1]},
        ]
        latest = state["latest_runs"][MODEL_KEY]
        assert (latest["season"], latest["week"]) == (2021, 1)
        assert latest["by_season"] == {"2020": 2, "2021": 1}

    def test_store_wraps_state(self, tmp_path):
        store = TrainingStateStore(tmp_path)
        store.record_chunk(MODEL_KEY, 2020, 2020, [{"season": 2020, "weeks": [1, 2]}])
        store.record_latest_run(MODEL_KEY, 2020, 2)
        store.save()

        reloaded = TrainingStateStore(tmp_path)
        assert reloaded.recorded_chunks() == {(2020, 2020)}
        assert reloaded.covered_seasons() == {2020}
        assert not reloaded.should_run(min_season=2020, required_through_season=2020, force=False)


# ---------------------------------------------------------------------------
# Status markers
# ---------------------------------------------------------------------------


class TestStatusMarkers:
    def test_week_markers(self, tmp_path):
        markers = StatusMarkers(tmp_path)
        assert not markers.has_week(2020, 3)
        markers.mark_week(2020, 3)
        markers.mark_week(2020, 1)
        assert markers.has_week(2020, 3)
        assert markers.marked_weeks(2020) == [1, 3]
        assert markers.marked_weeks(2021) == []

    def test_season_cache_requires_current_revision(self, tmp_path):
        markers = StatusMarkers(tmp_path)
        markers.write_season_cache(2020, [2, 1])
        assert markers.load_season_cache(2020)["weeks"] == [1, 2]
        assert markers.load_season_cache(2020, revision="other-revision") is None

    def test_chunk_cache_needs_done_file(self, tmp_path):
        markers = StatusMarkers(tmp_path)
        markers.write_chunk_cache(2020, 2021, [{"season": 2020, "weeks": [1]}])
        assert markers.load_chunk_cache(2020, 2021)["label"] == "2020-2021"
        (tmp_path / "chunks" / "model_2020-2021.done").unlink()
        assert markers.load_chunk_cache(2020, 2021) is None

    def test_ann_checkpoint(self, tmp_path):
        markers = StatusMarkers(tmp_path)
        assert markers.load_ann_checkpoint() is None
        markers.save_ann_checkpoint({"features": ["a"], "committees": [[]]}, 2020, 4)
        artifact, saved_at = markers.load_ann_checkpoint()
        assert artifact == {"features": ["a"], "committees": [[]]}
        assert saved_at == (2020, 4)

    def test_ann_checkpoint_without_stamp_is_ignored(self, tmp_path):
        markers = StatusMarkers(tmp_path)
        markers.ann_checkpoint_path.parent.mkdir(parents=True)
        markers.ann_checkpoint_path.write_text('{"model": {"features": ["a"]}}', encoding="utf-8")
        assert markers.load_ann_checkpoint() is None
