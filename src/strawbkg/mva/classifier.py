from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np

from ..errors import ConfigError

_ACTIVATIONS = {
    "tanh": np.tanh,
    "sigmoid": lambda a: 1.0 / (1.0 + np.exp(-a)),
    "relu": lambda a: np.maximum(a, 0.0),
    "linear": lambda a: a,
}


@dataclass(frozen=True)
class MLPClassifier:
    """
    Feed-forward network evaluated on one feature vector.

    weights[k] has shape (n_out, n_in); inputs are first mapped to [-1, 1]
    with x_min/x_max when those are given. All arrays are read-only, and
    evaluate() allocates its own buffers, so one instance can be shared.
    """
    input_names: tuple[str, ...]
    weights: tuple[np.ndarray, ...]
    biases: tuple[np.ndarray, ...]
    x_min: Optional[np.ndarray] = None
    x_max: Optional[np.ndarray] = None
    hidden_activation: str = "tanh"
    output_activation: str = "sigmoid"

    def __post_init__(self):
        if not self.weights or len(self.weights) != len(self.biases):
            raise ConfigError("MLP needs at least one layer and one bias vector per layer")
        n_in = len(self.input_names)
        for k, (W, b) in enumerate(zip(self.weights, self.biases)):
            if W.ndim != 2 or W.shape[1] != n_in or b.shape != (W.shape[0],):
                raise ConfigError(
                    f"MLP layer {k}: weight shape {W.shape} / bias shape {b.shape} "
                    f"do not chain from {n_in} inputs"
                )
            n_in = W.shape[0]
        if n_in != 1:
            raise ConfigError(f"MLP must end in a single output neuron, got {n_in}")
        if (self.x_min is None) != (self.x_max is None):
            raise ConfigError("MLP input normalization needs both x_min and x_max")
        for bound in (self.x_min, self.x_max):
            if bound is not None and bound.shape != (len(self.input_names),):
                raise ConfigError(
                    f"MLP normalization bounds have shape {bound.shape}, expected ({len(self.input_names)},)"
                )
        for act in (self.hidden_activation, self.output_activation):
            if act not in _ACTIVATIONS:
                raise ConfigError(f"Unknown activation {act!r}; expected one of {sorted(_ACTIVATIONS)}")
        for a in (*self.weights, *self.biases, self.x_min, self.x_max):
            if a is not None:
                a.setflags(write=False)

    @property
    def n_inputs(self) -> int:
        return len(self.input_names)

    def _normalize(self, x: np.ndarray) -> np.ndarray:
        if self.x_min is None or self.x_max is None:
            return x
        span = self.x_max - self.x_min
        safe = np.where(span > 0, span, 1.0)
        return np.where(span > 0, 2.0 * (x - self.x_min) / safe - 1.0, 0.0)

    def evaluate(self, features: Sequence[float]) -> float:
        x = np.asarray(features, dtype=np.float64)
        if x.shape != (self.n_inputs,):
            raise ValueError(f"Expected {self.n_inputs} features, got shape {x.shape}")
        h = self._normalize(x)
        last = len(self.weights) - 1
        for k, (W, b) in enumerate(zip(self.weights, self.biases)):
            act = _ACTIVATIONS[self.output_activation if k == last else self.hidden_activation]
            h = act(W @ h + b)
        return float(h[0])


def _str_item(z, key: str, default: str) -> str:
    if key not in z.files:
        return default
    return str(np.asarray(z[key]).item())


def load_npz_mlp(path: str | Path) -> MLPClassifier:
    """
    Load MLP weights from an .npz file.

    Expected keys: input names (`input_names` | `names` | `variables`),
    per-layer `W0, b0, W1, b1, ...`, optional `x_min`/`x_max` and optional
    `hidden_activation`/`output_activation` strings.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Classifier weights not found: {p}")
    try:
        z_ctx = np.load(p, allow_pickle=False)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Could not read classifier weights {p}: {exc}") from exc
    if not isinstance(z_ctx, np.lib.npyio.NpzFile):
        raise ConfigError(f"Classifier weights {p} are not an .npz archive")

    with z_ctx as z:
        keys = set(z.files)
        names = None
        for k in ("input_names", "names", "variables"):
            if k in keys:
                names = tuple(str(s) for s in z[k].tolist())
                break
        if names is None:
            raise ConfigError(f"No input names in {p.name}. Found keys: {sorted(keys)}")

        weights: list[np.ndarray] = []
        biases: list[np.ndarray] = []
        k = 0
        while f"W{k}" in keys:
            if f"b{k}" not in keys:
                raise ConfigError(f"{p.name}: W{k} present without b{k}")
            weights.append(z[f"W{k}"].astype(np.float64))
            biases.append(z[f"b{k}"].astype(np.float64))
            k += 1

        x_min = z["x_min"].astype(np.float64) if "x_min" in keys else None
        x_max = z["x_max"].astype(np.float64) if "x_max" in keys else None
        hidden = _str_item(z, "hidden_activation", "tanh")
        output = _str_item(z, "output_activation", "sigmoid")

    return MLPClassifier(
        input_names=names,
        weights=tuple(weights),
        biases=tuple(biases),
        x_min=x_min,
        x_max=x_max,
        hidden_activation=hidden,
        output_activation=output,
    )


def save_npz_mlp(path: str | Path, clf: MLPClassifier) -> Path:
    """Write a classifier in the layout read by load_npz_mlp."""
    p = Path(path)
    if p.suffix != ".npz":
        p = p.with_name(p.name + ".npz")
    arrays: Dict[str, np.ndarray] = {
        "input_names": np.array(clf.input_names, dtype=str),
        "hidden_activation": np.array(clf.hidden_activation),
        "output_activation": np.array(clf.output_activation),
    }
    for k, (W, b) in enumerate(zip(clf.weights, clf.biases)):
        arrays[f"W{k}"] = np.asarray(W)
        arrays[f"b{k}"] = np.asarray(b)
    if clf.x_min is not None and clf.x_max is not None:
        arrays["x_min"] = np.asarray(clf.x_min)
        arrays["x_max"] = np.asarray(clf.x_max)
    np.savez(p, **arrays)
    return p


def check_input_names(clf: MLPClassifier, expected: Sequence[str]) -> None:
    if tuple(expected) != clf.input_names:
        raise ConfigError(
            f"Classifier inputs {list(clf.input_names)} do not match configured names {list(expected)}"
        )
