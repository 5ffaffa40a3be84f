"""Logistic regression trained by per-sample gradient descent.

The update order is part of the model's behaviour: for every iteration,
samples are visited in dataset order and the weights are updated after
each one (w_j += lr * (y - sigmoid(w . x)) * x_j). Do not swap this for a
vectorised or mini-batch optimizer; it changes the learned weights.
"""

import math
from typing import Sequence, Tuple

import numpy as np


LEARNING_RATE = 0.01
ITERATIONS = 1000


def sigmoid(z: float) -> float:
    """Logistic function, written to avoid overflow for large |z|."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def dot_product(weights: Sequence[float], features: Sequence[float]) -> float:
    return float(np.dot(np.asarray(weights, dtype=float), np.asarray(features, dtype=float)))


def fit_weights(
    features: Sequence[Sequence[float]],
    labels: Sequence[int],
    learning_rate: float = LEARNING_RATE,
    iterations: int = ITERATIONS,
) -> list[float]:
    """
    Fit logistic regression weights, starting from zero.
    
    Args:
        features: One row per sample, all rows the same length
        labels: 0/1 label per sample
        learning_rate: Step size
        iterations: Full passes over the dataset
        
    Returns:
        Weight vector with one weight per feature
    """
    if len(features) != len(labels):
        raise ValueError(f"{len(features)} samples but {len(labels)} labels")
    if not features:
        raise ValueError("Cannot fit on an empty dataset")
    
    X = np.asarray(features, dtype=float)
    y = np.asarray(labels, dtype=float)
    weights = np.zeros(X.shape[1])
    
    for _ in range(iterations):
        for i in range(X.shape[0]):
            prediction = sigmoid(float(np.dot(weights, X[i])))
            error = y[i] - prediction
            weights += learning_rate * error * X[i]
    
    return weights.tolist()


def confusion_counts(
    features: Sequence[Sequence[float]],
    labels: Sequence[int],
    weights: Sequence[float],
    threshold: float,
) -> Tuple[int, int, int, int]:
    """Return (tp, fp, tn, fn) for `sigmoid(w . x) > threshold` against the labels."""
    tp = fp = tn = fn = 0
    
    for row, actual in zip(features, labels):
        predicted = 1 if sigmoid(dot_product(weights, row)) > threshold else 0
        if predicted == 1 and actual == 1:
            tp += 1
        elif predicted == 1 and actual == 0:
            fp += 1
        elif predicted == 0 and actual == 0:
            tn += 1
        else:
            fn += 1
    
    return tp, fp, tn, fn
