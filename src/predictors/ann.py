"""
Feed-forward neural network committee written directly in numpy.

Each hidden layer is ``affine -> batch norm -> tanh -> dropout``; the output
layer is ``affine -> sigmoid`` trained with binary cross-entropy. Gradients
are computed by an explicit backward pass over the per-layer caches that the
forward pass returns, so every network's state lives in its own
:class:`FeedForwardNetwork` and nothing is shared between seeds.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .base import BaseLearner, Standardizer, finite_or_zero, safe_prob, sigmoid

logger = logging.getLogger(__name__)

ARCHITECTURES = {
    "wide": [128, 64, 32],
    "compact": [64, 32, 16],
}
BN_EPS = 1e-5
BN_MOMENTUM = 0.1
COMMITTEE_SIZE = 3


@dataclass
class DenseLayer:
    """Weights, bias, optional batch-norm parameters and dropout rate for one layer."""

    weights: np.ndarray
    bias: np.ndarray
    gamma: Optional[np.ndarray] = None
    beta: Optional[np.ndarray] = None
    running_mean: Optional[np.ndarray] = None
    running_var: Optional[np.ndarray] = None
    dropout: float = 0.0
    activation: str = "tanh"
    momentum: float = BN_MOMENTUM

    @property
    def batch_norm(self) -> bool:
        return self.gamma is not None

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.weights.shape)

    def copy(self) -> "DenseLayer":
        def _c(a):
            return None if a is None else a.copy()

        return DenseLayer(
            weights=self.weights.copy(),
            bias=self.bias.copy(),
            gamma=_c(self.gamma),
            beta=_c(self.beta),
            running_mean=_c(self.running_mean),
            running_var=_c(self.running_var),
            dropout=self.dropout,
            activation=self.activation,
            momentum=self.momentum,
        )

    def to_dict(self) -> Dict:
        def _l(a):
            return None if a is None else a.tolist()

        return {
            "weights": self.weights.tolist(),
            "bias": self.bias.tolist(),
            "gamma": _l(self.gamma),
            "beta": _l(self.beta),
            "running_mean": _l(self.running_mean),
            "running_var": _l(self.running_var),
            "dropout": self.dropout,
            "activation": self.activation,
            "momentum": self.momentum,
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "DenseLayer":
        def _a(key):
            value = payload.get(key)
            return None if value is None else np.asarray(value, dtype=float)

        return cls(
            weights=np.asarray(payload["weights"], dtype=float),
            bias=np.asarray(payload["bias"], dtype=float),
            gamma=_a("gamma"),
            beta=_a("beta"),
            running_mean=_a("running_mean"),
            running_var=_a("running_var"),
            dropout=float(payload.get("dropout", 0.0)),
            activation=payload.get("activation", "tanh"),
            momentum=float(payload.get("momentum", BN_MOMENTUM)),
        )


@dataclass
class LayerCache:
    inputs: np.ndarray
    pre_activation: Optional[np.ndarray] = None
    normalized: Optional[np.ndarray] = None
    batch_mean: Optional[np.ndarray] = None
    batch_var: Optional[np.ndarray] = None
    inv_std: Optional[np.ndarray] = None
    used_batch_stats: bool = False
    post_bn: Optional[np.ndarray] = None
    activation: Optional[np.ndarray] = None
    mask: Optional[np.ndarray] = None


class FeedForwardNetwork:
    """A stack of :class:`DenseLayer` objects with forward/backward passes."""

    def __init__(self, layers: List[DenseLayer], l2: float = 0.0):
        self.layers = layers
        self.l2 = float(l2)

    @classmethod
    def build(
        cls,
        input_dim: int,
        hidden: Sequence[int],
        rng: np.random.Generator,
        dropout: float = 0.0,
        l2: float = 0.0,
    ) -> "FeedForwardNetwork":
        layers = []
        fan_in = input_dim
        for width in hidden:
            scale = 1.0 / math.sqrt(max(1, fan_in))
            layers.append(DenseLayer(
                weights=rng.uniform(-scale, scale, size=(fan_in, width)),
                bias=np.zeros(width),
                gamma=np.ones(width),
                beta=np.zeros(width),
                running_mean=np.zeros(width),
                running_var=np.ones(width),
                dropout=dropout,
            ))
            fan_in = width
        scale = 1.0 / math.sqrt(max(1, fan_in))
        layers.append(DenseLayer(
            weights=rng.uniform(-scale, scale, size=(fan_in, 1)),
            bias=np.zeros(1),
            activation="sigmoid",
        ))
        return cls(layers, l2=l2)

    @property
    def shapes(self) -> List[Tuple[int, int]]:
        return [layer.shape for layer in self.layers]

    def copy(self) -> "FeedForwardNetwork":
        return FeedForwardNetwork([layer.copy() for layer in self.layers], l2=self.l2)

    def forward(
        self,
        x: np.ndarray,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> Tuple[np.ndarray, List[LayerCache]]:
        """
        Run the network.

        Args:
            x: ``(m, d)`` standardised inputs
            training: Use batch statistics and dropout
            rng: Generator for dropout masks (required when training with dropout)

        Returns:
            Tuple of (probabilities of shape ``(m,)``, per-layer caches)
        """
        a = np.asarray(x, dtype=float)
        caches: List[LayerCache] = []
        for layer in self.layers:
            cache = LayerCache(inputs=a)
            z = a @ layer.weights + layer.bias
            cache.pre_activation = z
            if layer.batch_norm:
                if training and z.shape[0] > 1:
                    mean, var = z.mean(axis=0), z.var(axis=0)
                    cache.used_batch_stats = True
                else:
                    mean, var = layer.running_mean, layer.running_var
                inv_std = 1.0 / np.sqrt(var + BN_EPS)
                normalized = (z - mean) * inv_std
                cache.batch_mean, cache.batch_var = mean, var
                cache.inv_std, cache.normalized = inv_std, normalized
                z = layer.gamma * normalized + layer.beta
            cache.post_bn = z
            a = np.tanh(z) if layer.activation == "tanh" else sigmoid(z)
            cache.activation = a
            if training and layer.dropout > 0:
                if rng is None:
                    raise ValueError("rng is required for dropout during training")
                keep = 1.0 - layer.dropout
                cache.mask = (rng.random(a.shape) < keep) / keep
                a = a * cache.mask
            caches.append(cache)
        return a[:, 0], caches

    def _backprop(self, caches: List[LayerCache], delta_out: np.ndarray, include_l2: bool):
        grads: List[Dict[str, np.ndarray]] = [dict() for _ in self.layers]
        upstream = None
        for i in reversed(range(len(self.layers))):
            layer, cache = self.layers[i], caches[i]
            if i == len(self.layers) - 1:
                d_post = delta_out.reshape(-1, 1)
            else:
                d_act = upstream if cache.mask is None else upstream * cache.mask
                d_post = d_act * (1.0 - cache.activation ** 2)

            if layer.batch_norm:
                grads[i]["gamma"] = (d_post * cache.normalized).sum(axis=0)
                grads[i]["beta"] = d_post.sum(axis=0)
                d_norm = d_post * layer.gamma
                if cache.used_batch_stats:
                    m = d_norm.shape[0]
                    d_z = (cache.inv_std / m) * (
                        m * d_norm
                        - d_norm.sum(axis=0)
                        - cache.normalized * (d_norm * cache.normalized).sum(axis=0)
                    )
                else:
                    d_z = d_norm * cache.inv_std
            else:
                d_z = d_post

            grads[i]["weights"] = cache.inputs.T @ d_z
            if include_l2:
                grads[i]["weights"] = grads[i]["weights"] + self.l2 * layer.weights
            grads[i]["bias"] = d_z.sum(axis=0)
            upstream = d_z @ layer.weights.T
            grads[i] = {k: finite_or_zero(v) for k, v in grads[i].items()}
        return grads, finite_or_zero(upstream)

    def backward(self, caches: List[LayerCache], y: np.ndarray) -> List[Dict[str, np.ndarray]]:
        """Gradients of mean BCE plus ``0.5 * l2 * ||W||^2`` for each layer."""
        y = np.asarray(y, dtype=float).ravel()
        p = caches[-1].activation[:, 0]
        grads, _ = self._backprop(caches, (p - y) / max(1, len(y)), include_l2=True)
        return grads

    def loss(
        self,
        x: np.ndarray,
        y: np.ndarray,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
        include_l2: bool = True,
    ) -> float:
        p, _ = self.forward(x, training=training, rng=rng)
        y = np.asarray(y, dtype=float).ravel()
        p = np.clip(p, 1e-12, 1 - 1e-12)
        bce = float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))
        if include_l2:
            bce += 0.5 * self.l2 * sum(float((layer.weights ** 2).sum()) for layer in self.layers)
        return bce

    def update_running_stats(self, caches: List[LayerCache]) -> None:
        for layer, cache in zip(self.layers, caches):
            if not layer.batch_norm or not cache.used_batch_stats:
                continue
            m = layer.momentum
            layer.running_mean = (1 - m) * layer.running_mean + m * cache.batch_mean
            layer.running_var = (1 - m) * layer.running_var + m * cache.batch_var

    def apply_gradients(self, grads: List[Dict[str, np.ndarray]], learning_rate: float) -> None:
        for layer, grad in zip(self.layers, grads):
            for name, g in grad.items():
                updated = getattr(layer, name) - learning_rate * g
                setattr(layer, name, finite_or_zero(updated))

    def predict(self, x: np.ndarray) -> np.ndarray:
        p, _ = self.forward(x, training=False)
        return safe_prob(p)

    def input_gradient(self, x: np.ndarray) -> np.ndarray:
        """d prob / d input for each row, in inference mode."""
        x = np.atleast_2d(np.asarray(x, dtype=float))
        p, caches = self.forward(x, training=False)
        _, d_input = self._backprop(caches, p * (1.0 - p), include_l2=False)
        return d_input

    def to_dict(self) -> Dict:
        return {"l2": self.l2, "layers": [layer.to_dict() for layer in self.layers]}

    @classmethod
    def from_dict(cls, payload: Dict) -> "FeedForwardNetwork":
        return cls([DenseLayer.from_dict(p) for p in payload["layers"]], l2=payload.get("l2", 0.0))


def tail_split(n: int, fraction: float = 0.2) -> int:
    """Number of leading rows used for training; the tail (at most ``fraction``) validates."""
    val_size = min(max(1, int(n * fraction)), max(1, n - 1))
    return max(1, n - val_size)


@dataclass
class NetworkResult:
    network: FeedForwardNetwork
    seed: int
    val_loss: float
    epochs: int
    warm_started: bool = False


def train_network(
    X: np.ndarray,
    y: np.ndarray,
    hidden: Sequence[int],
    seed: int,
    max_epochs: int = 250,
    patience: int = 10,
    learning_rate: float = 1e-2,
    batch_size: int = 32,
    l2: float = 1e-4,
    dropout: float = 0.3,
    init: Optional[FeedForwardNetwork] = None,
    deadline: Optional[float] = None,
    validation_fraction: float = 0.2,
) -> NetworkResult:
    """Train one network with mini-batch SGD and patience-based early stopping."""
    rng = np.random.default_rng(seed)
    expected = FeedForwardNetwork.build(X.shape[1], hidden, rng, dropout=dropout, l2=l2)
    warm = init is not None and init.shapes == expected.shapes
    net = init.copy() if warm else expected
    net.l2 = l2
    for layer in net.layers[:-1]:
        layer.dropout = dropout

    n = X.shape[0]
    train_size = tail_split(n, min(0.2, validation_fraction))
    X_train, y_train = X[:train_size], y[:train_size]
    X_val, y_val = (X[train_size:], y[train_size:]) if train_size < n else (X_train, y_train)

    best, best_loss, bad_rounds, epochs = net.copy(), math.inf, 0, 0
    batch_size = max(1, int(batch_size))
    for epoch in range(max(0, int(max_epochs))):
        order = rng.permutation(train_size)
        for start in range(0, train_size, batch_size):
            idx = order[start:start + batch_size]
            _, caches = net.forward(X_train[idx], training=True, rng=rng)
            grads = net.backward(caches, y_train[idx])
            net.update_running_stats(caches)
            net.apply_gradients(grads, learning_rate)
        epochs = epoch + 1
        val_loss = net.loss(X_val, y_val, include_l2=False)
        if val_loss + 1e-6 < best_loss:
            best, best_loss, bad_rounds = net.copy(), val_loss, 0
        else:
            bad_rounds += 1
            if bad_rounds >= patience:
                break
        if deadline is not None and time.monotonic() > deadline:
            break
    if not math.isfinite(best_loss):
        best_loss = best.loss(X_val, y_val, include_l2=False)
    return NetworkResult(network=best, seed=seed, val_loss=best_loss, epochs=epochs, warm_started=warm)


class AnnCommittee(BaseLearner):
    """
    Seeded networks grouped into committees.

    The best half of the trained networks (by validation loss, at least one)
    is split into committees of up to three; a prediction is the mean over
    committees of each committee's member mean.
    """

    name = "ann"

    def __init__(
        self,
        features: Optional[Sequence[str]] = None,
        seeds: int = 5,
        max_epochs: int = 250,
        patience: int = 10,
        learning_rate: float = 1e-2,
        batch_size: int = 32,
        l2: float = 1e-4,
        dropout: float = 0.3,
        architecture: str = "compact",
        hidden: Optional[Sequence[int]] = None,
        time_limit: Optional[float] = 70.0,
        seed_offset: int = 0,
        warm_start: Optional[Dict] = None,
    ):
        super().__init__(features)
        self.seeds = max(1, int(seeds))
        self.max_epochs = max_epochs
        self.patience = patience
        self.learning_rate = learning_rate
        self.batch_size = batch_size
        self.l2 = l2
        self.dropout = dropout
        self.architecture = architecture
        self.hidden = list(hidden or ARCHITECTURES[architecture])
        self.time_limit = time_limit
        self.seed_offset = seed_offset
        self.warm_start = warm_start
        self.scaler = Standardizer()
        self.committees: List[List[FeedForwardNetwork]] = []
        self.trained: List[Dict] = []

    @property
    def networks(self) -> List[FeedForwardNetwork]:
        return [net for committee in self.committees for net in committee]

    def _warm_networks(self) -> List[FeedForwardNetwork]:
        if not self.warm_start:
            return []
        try:
            previous = AnnCommittee.from_artifact(self.warm_start)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unusable ANN warm start: %s", exc)
            return []
        return previous.networks

    def fit(self, X: np.ndarray, y: np.ndarray) -> "AnnCommittee":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        self.committees, self.trained = [], []
        self.scaler = Standardizer.fit(X)
        if X.shape[0] < 2:
            return self
        Xs = self.scaler.transform(X)
        warm = self._warm_networks()
        started = time.monotonic()
        deadline = None if not self.time_limit else started + float(self.time_limit)

        results: List[NetworkResult] = []
        for i in range(self.seeds):
            seed = self.seed_offset + i + 1
            result = train_network(
                Xs,
                y,
                self.hidden,
                seed,
                max_epochs=self.max_epochs,
                patience=self.patience,
                learning_rate=self.learning_rate,
                batch_size=self.batch_size,
                l2=self.l2,
                dropout=self.dropout,
                init=warm[i % len(warm)] if warm else None,
                deadline=deadline,
            )
            results.append(result)
            if deadline is not None and time.monotonic() > deadline:
                logger.info("ANN time budget reached after %d of %d seeds", len(results), self.seeds)
                break

        results.sort(key=lambda r: r.val_loss)
        keep = results[:max(1, int(math.ceil(len(results) / 2)))]
        self.committees = [
            [r.network for r in keep[i:i + COMMITTEE_SIZE]]
            for i in range(0, len(keep), COMMITTEE_SIZE)
        ]
        self.trained = [
            {"seed": r.seed, "val_loss": float(r.val_loss), "epochs": r.epochs, "warm_started": r.warm_started}
            for r in results
        ]
        return self

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if not self.committees:
            return np.full(X.shape[0], 0.5)
        Xs = self.scaler.transform(X)
        committee_means = [
            np.mean([net.predict(Xs) for net in committee], axis=0)
            for committee in self.committees
        ]
        return safe_prob(np.mean(committee_means, axis=0))

    def input_gradient(self, x: Sequence[float]) -> np.ndarray:
        """d prob / d raw feature for one row, averaged across all members."""
        x = np.asarray(x, dtype=float).reshape(1, -1)
        if not self.committees:
            return np.zeros(x.shape[1])
        xs = self.scaler.transform(x)
        grads = np.mean([net.input_gradient(xs)[0] for net in self.networks], axis=0)
        std = np.asarray(self.scaler.std) if self.scaler.std else np.ones(x.shape[1])
        return finite_or_zero(grads / std)

    def prediction_variance(self, X: np.ndarray) -> float:
        preds = self.predict_proba(X)
        return float(np.var(preds)) if len(preds) else 0.0

    def summary(self) -> Dict:
        return {
            "architecture": self.architecture,
            "hidden": list(self.hidden),
            "seeds_requested": self.seeds,
            "seeds_trained": len(self.trained),
            "committees": [len(c) for c in self.committees],
            "members": self.trained,
        }

    def to_artifact(self) -> Dict:
        return {
            "type": self.name,
            "features": list(self.features),
            "scaler": self.scaler.to_dict(),
            "architecture": self.architecture,
            "hidden": list(self.hidden),
            "committees": [[net.to_dict() for net in committee] for committee in self.committees],
            "members": list(self.trained),
            "hyperparams": {
                "seeds": self.seeds,
                "max_epochs": self.max_epochs,
                "patience": self.patience,
                "learning_rate": self.learning_rate,
                "batch_size": self.batch_size,
                "l2": self.l2,
                "dropout": self.dropout,
            },
        }

    @classmethod
    def from_artifact(cls, artifact: Dict) -> "AnnCommittee":
        hyper = artifact.get("hyperparams") or {}
        committee = cls(
            features=artifact.get("features"),
            architecture=artifact.get("architecture", "compact"),
            hidden=artifact.get("hidden"),
            **{k: v for k, v in hyper.items() if k in (
                "seeds", "max_epochs", "patience", "learning_rate", "batch_size", "l2", "dropout"
            )},
        )
        committee.scaler = Standardizer.from_dict(artifact.get("scaler"))
        committee.committees = [
            [FeedForwardNetwork.from_dict(net) for net in group]
            for group in artifact.get("committees", [])
        ]
        committee.trained = list(artifact.get("members", []))
        return committee


def train(X: np.ndarray, y: np.ndarray, features: Sequence[str], **kwargs) -> Dict:
    return AnnCommittee(features=features, **kwargs).fit(X, y).to_artifact()


def predict(artifact: Dict, X: np.ndarray) -> np.ndarray:
    return AnnCommittee.from_artifact(artifact).predict_proba(X)
