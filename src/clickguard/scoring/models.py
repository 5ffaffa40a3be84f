"""Models for feature vectors, trained scoring models and predictions."""

import uuid
from datetime import datetime, UTC
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from clickguard.scoring.logistic import dot_product, sigmoid


# Order shared by training and inference. Never reorder.
FEATURE_NAMES = [
    "hour_of_day",
    "day_of_week",
    "is_vpn",
    "is_hosting",
    "risk_score",
    "country_risk",
    "time_since_last_click_seconds",
    "clicks_from_ip_24h",
    "device_type_code",
]


class FeatureMismatchError(ValueError):
    """Feature vector and model weights do not line up."""


class FeatureVector(BaseModel):
    """Fixed-order numeric features of one click."""
    
    hour_of_day: float = Field(ge=0, le=23)
    day_of_week: float = Field(ge=0, le=6, description="Sunday = 0")
    is_vpn: float = Field(default=0.0)
    is_hosting: float = Field(default=0.0)
    risk_score: float = Field(default=0.0)
    country_risk: float = Field(default=1.0)
    time_since_last_click_seconds: float = Field(default=0.0)
    clicks_from_ip_24h: float = Field(default=1.0)
    device_type_code: float = Field(default=3.0)
    
    def values(self) -> List[float]:
        """Feature values in FEATURE_NAMES order."""
        return [float(getattr(self, name)) for name in FEATURE_NAMES]
    

class ModelStatus(str, Enum):
    """Lifecycle of a persisted model."""
    
    ACTIVE = "active"    # The one model used for scoring
    STALE = "stale"      # Replaced by a newer training run


class ScoringModel(BaseModel):
    """Trained logistic model for one account."""
    
    model_config = ConfigDict(protected_namespaces=())
    
    model_id: str = Field(
        default_factory=lambda: f"model_{uuid.uuid4().hex[:12]}",
    )
    account_id: str = Field(description="Account the model was trained for")
    model_type: str = Field(default="fraud_detection")
    weights: List[float] = Field(description="One weight per feature, FEATURE_NAMES order")
    feature_names: List[str] = Field(default_factory=lambda: list(FEATURE_NAMES))
    threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    trained_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: ModelStatus = Field(default=ModelStatus.ACTIVE)
    
    def score(self, features: FeatureVector | List[float]) -> float:
        """
        Fraud probability for a feature vector.
        
        Raises:
            FeatureMismatchError: If the vector length or layout differs
                from what the model was trained on
        """
        if self.feature_names != FEATURE_NAMES:
            raise FeatureMismatchError(
                f"Model {self.model_id} was trained on features {self.feature_names}, "
                f"expected {FEATURE_NAMES}"
            )
        
        values = features.values() if isinstance(features, FeatureVector) else list(features)
        if len(values) != len(self.weights):
            raise FeatureMismatchError(
                f"Feature vector has {len(values)} values, model {self.model_id} "
                f"has {len(self.weights)} weights"
            )
        
        return sigmoid(dot_product(self.weights, values))


class TrainingMetrics(BaseModel):
    """
    Confusion-matrix metrics of a training run.
    
    Computed on the training set itself (in-sample), so accuracy is
    optimistic. Dashboards read these numbers as-is.
    """
    
    accuracy: float = Field(description="Percent, one decimal")
    precision: float = Field(description="Percent, one decimal")
    recall: float = Field(description="Percent, one decimal")
    true_positives: int
    false_positives: int
    true_negatives: int
    false_negatives: int
    sample_count: int
    in_sample: bool = Field(default=True)
    
    @classmethod
    def from_counts(cls, tp: int, fp: int, tn: int, fn: int) -> "TrainingMetrics":
        total = tp + fp + tn + fn
        accuracy = round((tp + tn) / total * 100, 1) if total else 0.0
        precision = round(tp / (tp + fp) * 100, 1) if tp > 0 else 0.0
        recall = round(tp / (tp + fn) * 100, 1) if tp > 0 else 0.0
        
        return cls(
            accuracy=accuracy,
            precision=precision,
            recall=recall,
            true_positives=tp,
            false_positives=fp,
            true_negatives=tn,
            false_negatives=fn,
            sample_count=total,
        )


class TrainingResult(BaseModel):
    """Output of a successful training run."""
    
    model: ScoringModel
    metrics: TrainingMetrics


class PredictionSource(str, Enum):
    """What produced a prediction."""
    
    MODEL = "MODEL"            # Trained account model
    HEURISTIC = "HEURISTIC"    # Fixed-weight fallback


class FraudPrediction(BaseModel):
    """Fraud verdict for one click."""
    
    model_config = ConfigDict(protected_namespaces=())
    
    is_fraud: bool
    fraud_probability: float = Field(ge=0.0, le=1.0)
    confidence: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=100.0,
        description="|p - 0.5| * 200 for model predictions; None for the heuristic",
    )
    source: PredictionSource
    features: Optional[FeatureVector] = Field(default=None)
    model_id: Optional[str] = Field(default=None)
    fallback_reason: Optional[str] = Field(default=None)
