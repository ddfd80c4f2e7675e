"""Unit tests for the four base learners."""

import numpy as np
import pytest

from src.data.features.differential import BT_FEATURES, build_differential_features
from src.predictors.ann import AnnCommittee, FeedForwardNetwork, tail_split, train_network
from src.predictors.bradley_terry import MAX_BOOTSTRAP, BradleyTerryLearner, build_team_history
from src.predictors.logistic import LogisticLearner
from src.predictors.tree import TreeLearner, choose_tree_params, laplace_alpha


@pytest.fixture
def separable():
    rng = np.random.RandomState(7)
    X = rng.normal(size=(80, 3))
    y = (X[:, 0] + 0.5 * X[:, 1] > 0).astype(float)
    return X, y


@pytest.fixture
def differential_rows(season_tables):
    schedules, weekly = season_tables(2020, weeks=4)
    return build_differential_features(schedules, weekly, 2020)


# ---------------------------------------------------------------------------
# Logistic
# ---------------------------------------------------------------------------


class TestLogisticLearner:
    def test_learns_signal(self, separable):
        X, y = separable
        model = LogisticLearner(["a", "b", "c"], steps=800, learning_rate=0.1).fit(X, y)
        probs = model.predict_proba(X)
        assert np.mean((probs >= 0.5) == y) > 0.85
        assert model.weights[0] > model.weights[2]

    def test_warm_start_with_zero_steps_keeps_init(self, separable):
        X, y = separable
        model = LogisticLearner(["a", "b", "c"], steps=0, init_weights=[1.0, -1.0, 0.5], init_bias=0.2)
        model.fit(X, y)
        assert np.allclose(model.weights, [1.0, -1.0, 0.5])
        assert model.bias == pytest.approx(0.2)

    def test_mismatched_init_is_ignored(self, separable):
        X, y = separable
        model = LogisticLearner(["a", "b", "c"], steps=0, init_weights=[1.0]).fit(X, y)
        assert np.allclose(model.weights, 0.0)

    def test_non_finite_init_is_reset(self, separable):
        X, y = separable
        model = LogisticLearner(
            ["a", "b", "c"], steps=0, init_weights=[np.nan, np.inf, 0.5], init_bias=float("nan"),
        ).fit(X, y)
        assert np.allclose(model.weights, [0.0, 0.0, 0.5])
        assert model.bias == 0.0

    def test_non_finite_inputs_leave_finite_weights(self, separable):
        X, y = separable
        X = X.copy()
        X[0, 1] = np.inf
        with np.errstate(all="ignore"):
            model = LogisticLearner(["a", "b", "c"], steps=50, learning_rate=0.1).fit(X, y)
        assert np.all(np.isfinite(model.weights))
        assert np.isfinite(model.bias)

    def test_empty_training_predicts_half(self):
        model = LogisticLearner(["a", "b"]).fit(np.zeros((0, 2)), np.zeros(0))
        assert np.allclose(model.predict_proba(np.ones((3, 2))), 0.5)

    def test_artifact_round_trip(self, separable):
        X, y = separable
        model = LogisticLearner(["a", "b", "c"], steps=200).fit(X, y)
        restored = LogisticLearner.from_artifact(model.to_artifact())
        assert restored.features == ["a", "b", "c"]
        assert np.allclose(restored.predict_proba(X), model.predict_proba(X))

    def test_contributions_named_by_feature(self, separable):
        X, y = separable
        model = LogisticLearner(["a", "b", "c"], steps=200).fit(X, y)
        contributions = model.contributions(X[0])
        assert list(contributions) == ["a", "b", "c"]


# ---------------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------------


class TestTreeLearner:
    def test_size_heuristics(self):
        assert choose_tree_params(0) == {"max_depth": 6, "min_samples": 8}
        assert choose_tree_params(1000) == {"max_depth": 6, "min_samples": 32}
        assert laplace_alpha(0) == 6
        assert laplace_alpha(96) == 4
        assert laplace_alpha(320) == 2

    def test_leaf_probabilities_are_smoothed(self):
        X = np.arange(40, dtype=float).reshape(-1, 1)
        y = (X[:, 0] >= 20).astype(float)
        tree = TreeLearner(["x"]).fit(X, y)
        probs = tree.predict_proba(np.array([[2.0], [35.0]]))
        assert probs[0] < 0.5 < probs[1]
        assert 0.0 < probs[0] and probs[1] < 1.0

    def test_unseen_leaf_is_half(self):
        tree = TreeLearner(["x"]).fit(np.zeros((0, 1)), np.zeros(0))
        assert tree.leaf_probability(999) == 0.5
        assert np.allclose(tree.predict_proba(np.ones((2, 1))), 0.5)

    def test_artifact_round_trip_and_path(self, separable):
        X, y = separable
        tree = TreeLearner(["a", "b", "c"]).fit(X, y)
        restored = TreeLearner.from_artifact(tree.to_artifact())
        assert np.allclose(restored.predict_proba(X), tree.predict_proba(X))
        assert set(restored.leaf_path(X[0])) <= {"L", "R"}


# ---------------------------------------------------------------------------
# Bradley-Terry
# ---------------------------------------------------------------------------


class TestBradleyTerry:
    def test_empty_history_gives_degenerate_interval(self, differential_rows):
        train = [r for r in differential_rows if r["week"] < 4]
        test = [r for r in differential_rows if r["week"] == 4]
        model = BradleyTerryLearner(steps=200).fit_rows(train)

        out = model.predict_with_bootstrap(test, history_rows=[], bootstrap=50)

        assert len(out) == len(test)
        for game in out:
            assert game["prob"] == pytest.approx(game["base_prob"])
            assert game["ci90"] == pytest.approx([game["base_prob"], game["base_prob"]])
            assert game["bootstrap_samples"] == 50
            assert list(game["features"]) == BT_FEATURES

    def test_team_without_history_falls_back(self, differential_rows):
        train = [r for r in differential_rows if r["week"] < 4]
        test = [r for r in differential_rows if r["week"] == 4]
        target = test[0]
        history = [
            r for r in train
            if target["home_team"] not in (r["home_team"], r["away_team"])
        ]
        model = BradleyTerryLearner(steps=200).fit_rows(train)
        game = model.predict_with_bootstrap([target], history, bootstrap=40)[0]
        assert game["ci90"][0] == game["ci90"][1] == pytest.approx(game["base_prob"])

    def test_bootstrap_is_seeded_and_capped(self, differential_rows):
        train = [r for r in differential_rows if r["week"] < 4]
        test = [r for r in differential_rows if r["week"] == 4]
        model = BradleyTerryLearner(steps=200).fit_rows(train)

        first = model.predict_with_bootstrap(test, train, bootstrap=5000, seed=11)
        second = model.predict_with_bootstrap(test, train, bootstrap=5000, seed=11)

        assert first == second
        for game in first:
            assert game["bootstrap_samples"] == MAX_BOOTSTRAP
            low, high = game["ci90"]
            assert 0.0 <= low <= high <= 1.0

    def test_history_only_uses_completed_games(self, season_tables):
        schedules, weekly = season_tables(2020, weeks=4, unplayed_from=3)
        rows = build_differential_features(schedules, weekly, 2020)
        history = build_team_history(rows)
        assert sum(len(v) for v in history.values()) == 2 * 2 * 2

    def test_artifact_round_trip(self, differential_rows):
        model = BradleyTerryLearner(steps=100).fit_rows(differential_rows)
        restored = BradleyTerryLearner.from_artifact(model.to_artifact())
        assert np.allclose(
            restored.predict_deterministic(differential_rows),
            model.predict_deterministic(differential_rows),
        )


# ---------------------------------------------------------------------------
# ANN
# ---------------------------------------------------------------------------


class TestFeedForwardNetwork:
    def test_backward_matches_finite_differences(self):
        rng = np.random.default_rng(0)
        net = FeedForwardNetwork.build(3, [5, 4], rng, dropout=0.0, l2=0.01)
        X = rng.normal(size=(6, 3))
        y = np.array([1, 0, 1, 1, 0, 0], dtype=float)

        _, caches = net.forward(X, training=True)
        grads = net.backward(caches, y)

        eps = 1e-6
        for layer_idx, name, index in ((0, "weights", (1, 2)), (0, "gamma", (3,)), (1, "beta", (0,)), (2, "weights", (2, 0))):
            param = getattr(net.layers[layer_idx], name)
            original = param[index]
            param[index] = original + eps
            plus = net.loss(X, y, training=True)
            param[index] = original - eps
            minus = net.loss(X, y, training=True)
            param[index] = original
            numeric = (plus - minus) / (2 * eps)
            assert grads[layer_idx][name][index] == pytest.approx(numeric, rel=1e-4, abs=1e-7)

    def test_backward_matches_finite_differences_under_dropout(self):
        rng = np.random.default_rng(0)
        net = FeedForwardNetwork.build(3, [5, 4], rng, dropout=0.4, l2=0.01)
        X = rng.normal(size=(6, 3))
        y = np.array([1, 0, 1, 1, 0, 0], dtype=float)

        # A freshly seeded generator replays the same dropout masks.
        def mask_rng():
            return np.random.default_rng(11)

        _, caches = net.forward(X, training=True, rng=mask_rng())
        assert any(np.any(cache.mask == 0) for cache in caches if cache.mask is not None)
        grads = net.backward(caches, y)

        eps = 1e-6
        for layer_idx, name, index in (
            (0, "weights", (0, 1)), (0, "weights", (2, 4)), (0, "gamma", (2,)),
            (1, "weights", (3, 1)), (1, "beta", (0,)), (2, "weights", (1, 0)), (2, "bias", (0,)),
        ):
            param = getattr(net.layers[layer_idx], name)
            original = param[index]
            param[index] = original + eps
            plus = net.loss(X, y, training=True, rng=mask_rng())
            param[index] = original - eps
            minus = net.loss(X, y, training=True, rng=mask_rng())
            param[index] = original
            numeric = (plus - minus) / (2 * eps)
            assert grads[layer_idx][name][index] == pytest.approx(numeric, rel=1e-4, abs=1e-7)

    def test_apply_gradients_resets_non_finite_values(self):
        net = FeedForwardNetwork.build(2, [3], np.random.default_rng(0))
        net.layers[0].weights[0, 0] = np.inf
        before = net.layers[0].weights.copy()
        grads = [{"weights": np.zeros_like(layer.weights), "bias": np.zeros_like(layer.bias)} for layer in net.layers]
        grads[0]["weights"][1, 2] = np.nan
        grads[1]["bias"][0] = np.inf

        net.apply_gradients(grads, learning_rate=0.1)

        weights = net.layers[0].weights
        assert weights[0, 0] == 0.0
        assert weights[1, 2] == 0.0
        assert weights[0, 1] == before[0, 1]
        assert net.layers[1].bias[0] == 0.0
        for layer in net.layers:
            assert np.all(np.isfinite(layer.weights))
            assert np.all(np.isfinite(layer.bias))

    def test_input_gradient_matches_finite_differences(self):
        rng = np.random.default_rng(1)
        net = FeedForwardNetwork.build(2, [4], rng)
        x = np.array([[0.3, -0.7]])
        analytic = net.input_gradient(x)[0]

        eps = 1e-6
        for j in range(2):
            step = np.zeros_like(x)
            step[0, j] = eps
            numeric = (net.predict(x + step)[0] - net.predict(x - step)[0]) / (2 * eps)
            assert analytic[j] == pytest.approx(numeric, rel=1e-4, abs=1e-8)

    def test_dropout_requires_rng(self):
        net = FeedForwardNetwork.build(2, [3], np.random.default_rng(0), dropout=0.5)
        with pytest.raises(ValueError):
            net.forward(np.zeros((2, 2)), training=True)

    def test_tail_split(self):
        assert tail_split(10) == 8
        assert tail_split(2) == 1
        assert tail_split(1) == 1

    def test_train_network_is_deterministic(self, separable):
        X, y = separable
        a = train_network(X, y, [8, 4], seed=3, max_epochs=5)
        b = train_network(X, y, [8, 4], seed=3, max_epochs=5)
        assert np.allclose(a.network.predict(X), b.network.predict(X))


class TestAnnCommittee:
    def test_committee_keeps_best_half(self, separable):
        X, y = separable
        model = AnnCommittee(["a", "b", "c"], seeds=3, max_epochs=5, hidden=[8, 4]).fit(X, y)
        assert len(model.trained) == 3
        assert [len(c) for c in model.committees] == [2]
        probs = model.predict_proba(X)
        assert probs.shape == (80,)
        assert np.all((probs >= 0) & (probs <= 1))
        assert model.prediction_variance(X) >= 0

    def test_too_few_rows_predicts_half(self):
        model = AnnCommittee(["a"], seeds=2).fit(np.ones((1, 1)), np.ones(1))
        assert model.committees == []
        assert np.allclose(model.predict_proba(np.zeros((3, 1))), 0.5)

    def test_artifact_round_trip_and_warm_start(self, separable):
        X, y = separable
        model = AnnCommittee(["a", "b", "c"], seeds=1, max_epochs=3, hidden=[6, 3]).fit(X, y)
        artifact = model.to_artifact()
        restored = AnnCommittee.from_artifact(artifact)
        assert np.allclose(restored.predict_proba(X), model.predict_proba(X))

        warm = AnnCommittee(["a", "b", "c"], seeds=1, max_epochs=2, hidden=[6, 3], warm_start=artifact).fit(X, y)
        assert warm.trained[0]["warm_started"] is True

        cold = AnnCommittee(["a", "b", "c"], seeds=1, max_epochs=2, hidden=[5, 3], warm_start=artifact).fit(X, y)
        assert cold.trained[0]["warm_started"] is False

    def test_input_gradient_shape(self, separable):
        X, y = separable
        model = AnnCommittee(["a", "b", "c"], seeds=1, max_epochs=3, hidden=[6, 3]).fit(X, y)
        assert model.input_gradient(X[0]).shape == (3,)
