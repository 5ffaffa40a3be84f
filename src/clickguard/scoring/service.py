"""ML Service - per-account fraud model training and real-time prediction."""

import asyncio
import logging
from datetime import datetime, timedelta, UTC
from typing import Callable, List, Optional, Protocol, Tuple

from clickguard.config import config
from clickguard.scoring.features import ClickHistory, FeatureExtractor
from clickguard.scoring.logistic import ITERATIONS, LEARNING_RATE, confusion_counts, fit_weights
from clickguard.scoring.models import (
    FEATURE_NAMES,
    FeatureMismatchError,
    FraudPrediction,
    PredictionSource,
    ScoringModel,
    TrainingMetrics,
    TrainingResult,
)
from clickguard.storage.models import ClickEvent


logger = logging.getLogger(__name__)


# Fixed-weight fallback used when an account has no trained model
HEURISTIC_VPN_POINTS = 30
HEURISTIC_HOSTING_POINTS = 25
HEURISTIC_HIGH_RISK_POINTS = 30
HEURISTIC_NIGHT_POINTS = 15
HEURISTIC_HIGH_RISK_SCORE = 70
HEURISTIC_NIGHT_HOURS = range(0, 6)
HEURISTIC_FRAUD_THRESHOLD = 50


class ScoringStore(ClickHistory, Protocol):
    """Durable-store operations the ML service depends on."""
    
    async def get_training_clicks(
        self, account_id: str, limit: int
    ) -> List[Tuple[ClickEvent, bool]]:
        ...
    
    async def count_clicks(self, account_id: str, since: datetime) -> int:
        ...
    
    async def save_model(self, model: ScoringModel) -> None:
        ...
    
    async def load_active_model(self, account_id: str) -> Optional[ScoringModel]:
        ...


class MLService:
    """
    Lightweight ML scoring service.
    
    - train(): logistic regression over the account's labeled click history
    - predict(): real-time scoring with the account's active model, or the
      fixed-weight heuristic when there is none
    - auto_update(): retrain only when enough fresh clicks arrived
    
    predict() never raises: scoring must degrade, not block ingestion.
    """
    
    def __init__(
        self,
        store: ScoringStore,
        extractor: Optional[FeatureExtractor] = None,
        min_training_samples: Optional[int] = None,
        training_history_limit: Optional[int] = None,
        retrain_min_recent_clicks: Optional[int] = None,
        retrain_window: Optional[timedelta] = None,
        learning_rate: float = LEARNING_RATE,
        iterations: int = ITERATIONS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        """
        Initialize the ML service.
        
        Args:
            store: Click history and model persistence
            extractor: Feature extractor (default: built on the store)
            min_training_samples: Minimum labeled clicks to train
            training_history_limit: Most recent clicks loaded for training
            retrain_min_recent_clicks: Fresh clicks needed by auto_update
            retrain_window: How far back auto_update counts fresh clicks
            learning_rate: Gradient descent step size
            iterations: Gradient descent passes
            clock: Returns the current UTC time
        """
        self.store = store
        self._clock = clock
        self.extractor = extractor or FeatureExtractor(store, clock=clock)
        self.min_training_samples = min_training_samples or config.min_training_samples
        self.training_history_limit = training_history_limit or config.training_history_limit
        self.retrain_min_recent_clicks = retrain_min_recent_clicks or config.retrain_min_recent_clicks
        self.retrain_window = retrain_window or timedelta(days=config.retrain_window_days)
        self.learning_rate = learning_rate
        self.iterations = iterations
        self.feature_names = list(FEATURE_NAMES)
    
    async def train(self, account_id: str) -> Optional[TrainingResult]:
        """
        Train a replacement model for an account.
        
        Returns:
            TrainingResult, or None when there are fewer labeled clicks
            than min_training_samples
        """
        logger.info(f"Training fraud model for account {account_id}")
        
        training_data = await self.store.get_training_clicks(account_id, self.training_history_limit)
        
        if len(training_data) < self.min_training_samples:
            logger.info(
                f"Not enough data to train {account_id}: "
                f"{len(training_data)} < {self.min_training_samples}"
            )
            return None
        
        features = [self.extractor.extract_features(click).values() for click, _ in training_data]
        labels = [1 if is_fraud else 0 for _, is_fraud in training_data]
        
        weights = await asyncio.to_thread(
            fit_weights, features, labels, self.learning_rate, self.iterations
        )
        
        model = ScoringModel(
            account_id=account_id,
            weights=weights,
            feature_names=self.feature_names,
            trained_at=self._clock(),
        )
        
        # In-sample: evaluated on the same rows it was trained on
        metrics = TrainingMetrics.from_counts(
            *confusion_counts(features, labels, model.weights, model.threshold)
        )
        
        await self.store.save_model(model)
        
        logger.info(
            f"Model {model.model_id} trained for {account_id}: "
            f"accuracy={metrics.accuracy}% precision={metrics.precision}% "
            f"recall={metrics.recall}% (n={metrics.sample_count})"
        )
        return TrainingResult(model=model, metrics=metrics)
    
    async def load_model(self, account_id: str) -> Optional[ScoringModel]:
        """Active model for an account, or None if missing or unreadable."""
        try:
            return await self.store.load_active_model(account_id)
        except Exception as e:
            logger.warning(f"Could not load model for {account_id}: {e}")
            return None
    
    async def predict(self, account_id: str, click: ClickEvent) -> FraudPrediction:
        """
        Score a click.
        
        Args:
            account_id: Account whose model is used
            click: Click to score
            
        Returns:
            FraudPrediction from the active model, or from the heuristic
            (with fallback_reason) if there is no usable model
        """
        model = await self.load_model(account_id)
        if model is None:
            logger.warning(f"No model for {account_id}, using heuristic")
            return self.basic_prediction(click, reason="no_model")
        
        try:
            features = await self.extractor.extract_real_time_features(account_id, click)
            probability = model.score(features)
        except FeatureMismatchError as e:
            logger.error(f"Feature mismatch for {account_id}: {e}")
            return self.basic_prediction(click, reason="feature_mismatch")
        except Exception:
            logger.exception(f"Prediction failed for {account_id}, using heuristic")
            return self.basic_prediction(click, reason="scoring_error")
        
        return FraudPrediction(
            is_fraud=probability > model.threshold,
            fraud_probability=probability,
            confidence=abs(probability - 0.5) * 2 * 100,
            source=PredictionSource.MODEL,
            features=features,
            model_id=model.model_id,
        )
    
    def basic_prediction(self, click: ClickEvent, reason: Optional[str] = None) -> FraudPrediction:
        """Fixed-weight heuristic: VPN +30, hosting +25, risk > 70 +30, 00-05h +15."""
        score = 0
        
        if click.is_vpn:
            score += HEURISTIC_VPN_POINTS
        if click.is_hosting:
            score += HEURISTIC_HOSTING_POINTS
        if click.risk_score > HEURISTIC_HIGH_RISK_SCORE:
            score += HEURISTIC_HIGH_RISK_POINTS
        if click.timestamp.astimezone(UTC).hour in HEURISTIC_NIGHT_HOURS:
            score += HEURISTIC_NIGHT_POINTS
        
        return FraudPrediction(
            is_fraud=score > HEURISTIC_FRAUD_THRESHOLD,
            fraud_probability=min(score, 100) / 100,
            confidence=None,
            source=PredictionSource.HEURISTIC,
            features=self.extractor.extract_features(click),
            fallback_reason=reason,
        )
    
    async def auto_update(self, account_id: str) -> Optional[TrainingResult]:
        """Retrain if the account had enough clicks in the retrain window, else no-op."""
        since = self._clock() - self.retrain_window
        
        try:
            recent = await self.store.count_clicks(account_id, since)
            if recent < self.retrain_min_recent_clicks:
                logger.info(
                    f"Skipping retrain for {account_id}: {recent} recent clicks "
                    f"(< {self.retrain_min_recent_clicks})"
                )
                return None
            
            return await self.train(account_id)
        except Exception:
            logger.exception(f"Auto update failed for {account_id}")
            return None
