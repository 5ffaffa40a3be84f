"""Scoring module for ClickGuard - feature extraction and ML fraud scoring."""

from clickguard.scoring.models import (
    FEATURE_NAMES,
    FeatureMismatchError,
    FeatureVector,
    FraudPrediction,
    ModelStatus,
    PredictionSource,
    ScoringModel,
    TrainingMetrics,
    TrainingResult,
)
from clickguard.scoring.features import FeatureExtractor
from clickguard.scoring.service import MLService

__all__ = [
    "FEATURE_NAMES",
    "FeatureMismatchError",
    "FeatureVector",
    "FraudPrediction",
    "ModelStatus",
    "PredictionSource",
    "ScoringModel",
    "TrainingMetrics",
    "TrainingResult",
    "FeatureExtractor",
    "MLService",
]
