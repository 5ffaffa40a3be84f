"""Click Scoring Pipeline - enrich, persist, score and alert on incoming clicks."""

import logging
from typing import List, Optional
from pydantic import BaseModel, Field

from clickguard.alerts import AlertDispatcher, AlertEvent
from clickguard.enrichment import EnrichmentSource, IPEnrichment, IPEnrichmentService
from clickguard.optimization import OptimizationService
from clickguard.scoring import FraudPrediction, MLService
from clickguard.storage import ClickEvent, ClickStore, StoreError


logger = logging.getLogger(__name__)


class ScoredClick(BaseModel):
    """Outcome of running one click through the pipeline."""
    click: ClickEvent = Field(description="Click with enrichment signals applied")
    enrichment: IPEnrichment
    prediction: FraudPrediction
    alert: Optional[AlertEvent] = Field(default=None, description="Alert fired for this click, if any")


def apply_enrichment(click: ClickEvent, enrichment: IPEnrichment) -> ClickEvent:
    """
    Copy of the click carrying the enrichment's network signals.
    
    Flags already set on the click are kept. The country is only filled in
    when the click did not carry one.
    """
    if enrichment.source == EnrichmentSource.DEFAULT:
        return click
    
    update = {
        "is_vpn": click.is_vpn or enrichment.is_vpn or enrichment.is_proxy or enrichment.is_tor,
        "is_hosting": click.is_hosting or enrichment.is_hosting,
        "risk_score": max(click.risk_score, enrichment.risk_score),
    }
    if click.country_code == "XX" and enrichment.country_code != "XX":
        update["country_code"] = enrichment.country_code
    
    return click.model_copy(update=update)


class ScoringPipeline:
    """
    Click -> IP enrichment -> durable store -> fraud prediction -> alert.
    
    Every stage degrades instead of raising, so one bad click never stops
    a batch.
    """
    
    def __init__(
        self,
        enrichment: IPEnrichmentService,
        ml: MLService,
        store: Optional[ClickStore] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        optimizer: Optional[OptimizationService] = None,
    ):
        """
        Initialize the pipeline.
        
        Args:
            enrichment: IP enrichment service
            ml: Fraud scoring service
            store: Where enriched clicks are persisted (None = don't persist)
            dispatcher: Alert dispatcher (None = no alerts)
            optimizer: Prediction cache and batch pacing (None = uncached, sequential)
        """
        self.enrichment = enrichment
        self.ml = ml
        self.store = store
        self.dispatcher = dispatcher
        self.optimizer = optimizer
    
    async def score_click(self, click: ClickEvent) -> ScoredClick:
        """
        Run one click through the pipeline.
        
        Args:
            click: Raw click event
            
        Returns:
            ScoredClick with the enriched click, its prediction and any alert
        """
        enrichment = await self.enrichment.enrich(click.ip_address)
        enriched = apply_enrichment(click, enrichment)
        
        if self.store is not None:
            try:
                await self.store.insert_click(enriched)
            except StoreError as e:
                logger.error(f"Could not persist click {click.click_id}: {e}")
        
        prediction = await self._predict(enriched)
        
        alert = None
        if self.dispatcher is not None:
            alert = await self.dispatcher.evaluate(click.account_id, enriched, prediction, enrichment)
        
        logger.debug(
            f"Scored {click.click_id} ({click.ip_address}): "
            f"p={prediction.fraud_probability:.2f} via {prediction.source.value}"
        )
        return ScoredClick(click=enriched, enrichment=enrichment, prediction=prediction, alert=alert)
    
    async def score_clicks(self, clicks: List[ClickEvent]) -> List[ScoredClick]:
        """Score many clicks, in paced concurrent chunks when an optimizer is set."""
        if self.optimizer is not None:
            return await self.optimizer.process_batch(clicks, self.score_click)
        
        return [await self.score_click(click) for click in clicks]
    
    async def _predict(self, click: ClickEvent) -> FraudPrediction:
        if self.optimizer is None:
            return await self.ml.predict(click.account_id, click)
        
        return await self.optimizer.get_ml_prediction_cached(
            click.account_id,
            click.click_id,
            lambda: self.ml.predict(click.account_id, click),
        )
