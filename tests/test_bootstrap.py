"""Tests for chunk selection and the historical bootstrap scheduler."""

import json

import pytest

from src.errors import ExplicitWindowInvalid
from src.pipeline.artifacts import ArtifactStore
from src.pipeline.bootstrap import (
    HistoricalBootstrapScheduler,
    chunk_season_list,
    resolve_historical_chunk_selection,
)
from src.training.state import CURRENT_BOOTSTRAP_REVISION, MODEL_KEY, TrainingStateStore
from src.training.status import StatusMarkers


# ---------------------------------------------------------------------------
# Chunk selection
# ---------------------------------------------------------------------------


class TestChunkSelection:
    def test_chunk_season_list(self):
        assert chunk_season_list([2003, 2001, 2002, 2004, 2001], 3) == [[2001, 2002, 2003], [2004]]
        assert chunk_season_list(range(2000, 2004), 10) == [[2000, 2001, 2002], [2003]]
        assert chunk_season_list(range(2000, 2002), 0) == [[2000], [2001]]

    def test_first_unrecorded_chunk(self):
        selection = resolve_historical_chunk_selection(
            range(1999, 2006), recorded_chunks={(1999, 2001)}
        )
        assert (selection.start_season, selection.end_season) == (2002, 2004)
        assert selection.seasons == [2002, 2003, 2004]
        assert not selection.explicit

    def test_all_recorded_refreshes_last(self):
        selection = resolve_historical_chunk_selection(
            range(1999, 2003), recorded_chunks={(1999, 2001), (2002, 2002)}
        )
        assert selection.seasons == [2002]

    def test_nothing_available(self):
        assert resolve_historical_chunk_selection([1990, 1995]) is None

    def test_explicit_window(self):
        selection = resolve_historical_chunk_selection(
            range(1999, 2010), explicit_window=(2004, 2005), max_season=2009
        )
        assert selection.explicit
        assert selection.seasons == [2004, 2005]

    @pytest.mark.parametrize("window, message", [
        ((2005, 2004), "after end"),
        ((1990, 1991), "before the first season"),
        ((2009, 2011), "beyond the last season"),
        ((2001, 2004), "spans more than"),
    ])
    def test_explicit_window_rejected(self, window, message):
        with pytest.raises(ExplicitWindowInvalid, match=message):
            resolve_historical_chunk_selection(
                range(1999, 2011), explicit_window=window, max_season=2010
            )

    def test_explicit_window_missing_seasons(self):
        with pytest.raises(ExplicitWindowInvalid, match="missing seasons"):
            resolve_historical_chunk_selection([2001, 2003], explicit_window=(2001, 2003))
        with pytest.raises(ExplicitWindowInvalid, match="no seasons available"):
            resolve_historical_chunk_selection([2001], explicit_window=(2005, 2006))


# ---------------------------------------------------------------------------
# Scheduler decisions
# ---------------------------------------------------------------------------


def _covered_state(seasons, latest=None):
    state = {
        "schema_version": 1,
        "bootstraps": {
            MODEL_KEY: {
                "revision": CURRENT_BOOTSTRAP_REVISION,
                "seasons": [{"season": s, "weeks": [1, 2, 3, 4]} for s in seasons],
            }
        },
        "latest_runs": {},
    }
    if latest:
        state["latest_runs"][MODEL_KEY] = {"season": latest[0], "week": latest[1]}
    return state


class TestSchedulerDecisions:
    def test_max_season_sources(self, fast_config, make_hub):
        hub = make_hub({})
        assert HistoricalBootstrapScheduler(fast_config(season=2021), hub).max_season() == 2021
        assert HistoricalBootstrapScheduler(
            fast_config(batch_start=2020, batch_end=2020), hub
        ).max_season() == 2020

    def test_weekly_target_needs_previous_seasons_only(self, fast_config, make_hub):
        config = fast_config(season=2022, week=3)
        state_store = TrainingStateStore(config.artifacts_dir, _covered_state([2020, 2021], (2021, 4)))
        scheduler = HistoricalBootstrapScheduler(config, make_hub({}), state_store=state_store)
        assert not scheduler.needs_bootstrap()

        seasonal = HistoricalBootstrapScheduler(
            fast_config(season=2022), make_hub({}), state_store=state_store
        )
        assert seasonal.needs_bootstrap()

    def test_revision_mismatch_triggers_bootstrap(self, fast_config, make_hub):
        config = fast_config(season=2022, week=3)
        state = _covered_state([2020, 2021], (2021, 4))
        state["bootstraps"][MODEL_KEY]["revision"] = "older"
        scheduler = HistoricalBootstrapScheduler(
            config, make_hub({}), state_store=TrainingStateStore(config.artifacts_dir, state)
        )
        assert scheduler.needs_bootstrap()

    def test_training_seasons_window(self, fast_config, make_hub):
        scheduler = HistoricalBootstrapScheduler(fast_config(max_train_seasons=2), make_hub({}))
        assert scheduler.training_seasons(2023) == [2022, 2023]
        assert HistoricalBootstrapScheduler(fast_config(), make_hub({})).training_seasons(2021) == [2020, 2021]


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


def test_bootstrap_replays_every_week_once(fast_config, make_hub):
    config = fast_config(season=2021)
    hub = make_hub({2020: {}, 2021: {}})

    report = HistoricalBootstrapScheduler(config, hub).run()

    assert report.mode == "bootstrap"
    assert report.chunk == (2020, 2021)
    assert report.trained == [(s, w) for s in (2020, 2021) for w in (1, 2, 3, 4)]
    assert report.chunk_complete

    store = ArtifactStore(config.artifacts_dir)
    for season in (2020, 2021):
        for week in (1, 2, 3, 4):
            assert store.has_week(season, week)
        summary = json.loads(store.season_path("season_summary", season).read_text())
        assert summary["weeks_predicted"] == 4

    state = TrainingStateStore(config.artifacts_dir)
    assert state.recorded_chunks() == {(2020, 2021)}
    latest = state.latest_run()
    assert (latest["season"], latest["week"]) == (2021, 4)
    assert StatusMarkers(config.artifacts_dir).load_chunk_cache(2020, 2021) is not None

    # Second run: state is current and no week is requested.
    again = HistoricalBootstrapScheduler(config, hub).run()
    assert again.mode == "noop"
    assert again.trained == []


def test_bootstrap_resumes_from_markers_and_caches(fast_config, make_hub, tmp_path):
    config = fast_config(season=2021)
    hub = make_hub({2020: {}, 2021: {}})
    HistoricalBootstrapScheduler(config, hub).run()
    model_path = ArtifactStore(config.artifacts_dir).weekly_path("model", 2020, 2)
    before = model_path.read_text()

    # Losing the state file does not retrain anything.
    TrainingStateStore(config.artifacts_dir).path.unlink()
    report = HistoricalBootstrapScheduler(config, hub).run()
    assert report.mode == "bootstrap"
    assert report.cached_seasons == [2020, 2021]
    assert report.trained == []
    assert report.chunk_complete
    assert model_path.read_text() == before

    # Without markers or caches, existing artifacts are adopted rather than retrained.
    for folder in (".status", "chunks"):
        for entry in (tmp_path / "artifacts" / folder).iterdir():
            entry.unlink()
    TrainingStateStore(config.artifacts_dir).path.unlink()
    report = HistoricalBootstrapScheduler(config, hub).run()
    assert report.trained == []
    assert len(report.skipped) == 8
    assert StatusMarkers(config.artifacts_dir).marked_weeks(2021) == [1, 2, 3, 4]
    assert model_path.read_text() == before


def test_weekly_mode_trains_only_the_target(fast_config, make_hub):
    hub = make_hub({2020: {}, 2021: {}, 2022: {"unplayed_from": 3}})
    HistoricalBootstrapScheduler(fast_config(season=2021), hub).run()

    config = fast_config(season=2022, week=3)
    report = HistoricalBootstrapScheduler(config, hub).run()

    assert report.mode == "weekly"
    assert report.trained == [(2022, 3)]
    store = ArtifactStore(config.artifacts_dir)
    predictions = store.load("predictions", 2022, 3)
    assert len(predictions["games"]) == 2
    assert all(g["actual"]["home_win"] is None for g in predictions["games"])
    assert store.load("outcomes", 2022, 3)["status"] == "pending"
    assert not store.has_week(2022, 2)

    latest = TrainingStateStore(config.artifacts_dir).latest_run()
    assert (latest["season"], latest["week"]) == (2022, 3)


def test_explicit_window_without_data_is_rejected(fast_config, make_hub):
    config = fast_config(batch_start=2020, batch_end=2021)
    scheduler = HistoricalBootstrapScheduler(config, make_hub({2020: {}}))
    with pytest.raises(ExplicitWindowInvalid, match="missing seasons"):
        scheduler.run()


@pytest.mark.parametrize("window", [(2020, 2023), (2018, 2019)])
def test_explicit_window_rejected_before_loading(fast_config, make_hub, monkeypatch, window):
    hub = make_hub({2020: {}, 2021: {}})
    loaded = []
    original = hub.load_season

    def recording_load(season):
        loaded.append(season)
        return original(season)

    monkeypatch.setattr(hub, "load_season", recording_load)
    config = fast_config(batch_start=window[0], batch_end=window[1])

    with pytest.raises(ExplicitWindowInvalid):
        HistoricalBootstrapScheduler(config, hub).run()
    assert loaded == []
    assert StatusMarkers(config.artifacts_dir).marked_weeks(2020) == []


def test_bootstrap_resumes_mid_chunk(fast_config, make_hub, tmp_path):
    config = fast_config(season=2021)
    hub = make_hub({2020: {}, 2021: {}})
    HistoricalBootstrapScheduler(config, hub).run()
    root = tmp_path / "artifacts"
    store = ArtifactStore(config.artifacts_dir)
    kept = store.weekly_path("model", 2021, 1).read_text()

    # Simulate a run stopped after 2021 W2: later weeks have neither markers nor artifacts.
    for week in (3, 4):
        StatusMarkers(config.artifacts_dir).week_marker(2021, week).unlink()
        for path in root.glob(f"*_2021_W{week:02d}.json"):
            path.unlink()
    for name in ("season-2021.json", "season-2021.done", "model_2020-2021.json", "model_2020-2021.done"):
        (root / "chunks" / name).unlink()
    TrainingStateStore(config.artifacts_dir).path.unlink()

    report = HistoricalBootstrapScheduler(config, hub).run()

    assert report.cached_seasons == [2020]
    assert report.trained == [(2021, 3), (2021, 4)]
    assert report.skipped == [(2021, 1), (2021, 2)]
    assert report.chunk_complete
    assert store.weekly_path("model", 2021, 1).read_text() == kept
    assert store.has_week(2021, 3) and store.has_week(2021, 4)
    assert StatusMarkers(config.artifacts_dir).marked_weeks(2021) == [1, 2, 3, 4]
    assert TrainingStateStore(config.artifacts_dir).recorded_chunks() == {(2020, 2021)}


def test_in_progress_season_is_not_cached(fast_config, make_hub):
    config = fast_config(season=2020, week=2, batch_start=2020, batch_end=2020)
    report = HistoricalBootstrapScheduler(config, make_hub({2020: {"unplayed_from": 3}})).run()

    assert report.trained == [(2020, 1), (2020, 2)]
    assert StatusMarkers(config.artifacts_dir).load_season_cache(2020) is None
