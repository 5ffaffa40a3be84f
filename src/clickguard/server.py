"""
ClickGuard API Server

Exposes IP enrichment, click scoring, model training and the cached
dashboard over REST.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load environment variables (provider keys, webhook settings)
load_dotenv()

from clickguard.alerts import AlertDispatcher, WebhookNotifier
from clickguard.config import config
from clickguard.enrichment import EnrichmentCache, IPEnrichmentService
from clickguard.optimization import OptimizationService
from clickguard.pipeline import ScoringPipeline
from clickguard.scoring import MLService
from clickguard.storage import ClickEvent, ClickStore

# Configure Logging
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CACHE_CLEANUP_INTERVAL_SECONDS = 600


# Data Models
class ClickRequest(BaseModel):
    account_id: str
    ip_address: str
    click_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    device_type: str = "UNKNOWN"
    country_code: str = "XX"
    cost_micros: int = Field(default=0, ge=0)
    campaign_id: Optional[str] = None
    
    def to_event(self) -> ClickEvent:
        return ClickEvent(**self.model_dump(exclude_none=True))


# Initialize ClickGuard Components (Singletons)
class ClickGuardContainer:
    def __init__(self, store: Optional[ClickStore] = None):
        self.store = store or ClickStore(config.db_path)
        self.enrichment = IPEnrichmentService(cache=EnrichmentCache(repository=self.store))
        self.ml = MLService(self.store)
        self.optimizer = OptimizationService(self.store)
        
        sink = WebhookNotifier() if config.webhook_url else None
        self.dispatcher = AlertDispatcher(self.store, sink=sink)
        
        self.pipeline = ScoringPipeline(
            enrichment=self.enrichment,
            ml=self.ml,
            store=self.store,
            dispatcher=self.dispatcher,
            optimizer=self.optimizer,
        )
        
        logger.info("ClickGuard Components Initialized")


container = ClickGuardContainer()


async def _cleanup_loop() -> None:
    while True:
        await asyncio.sleep(CACHE_CLEANUP_INTERVAL_SECONDS)
        purged = container.optimizer.purge_expired()
        logger.info(f"Cache cleanup purged {purged} entries")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_cleanup_loop())
    yield
    task.cancel()
    await container.dispatcher.drain()


# FastAPI App
app = FastAPI(title="ClickGuard API", version="0.4.0", lifespan=lifespan)


# Routes
@app.get("/")
async def root():
    return {"status": "online", "system": "ClickGuard"}


@app.get("/enrich/{ip}")
async def enrich_ip(ip: str):
    """Geo, network and risk data for an IP address."""
    container.optimizer.track_usage("/enrich")
    enrichment = await container.enrichment.enrich(ip)
    return enrichment.model_dump(mode="json")


@app.post("/clicks/score")
async def score_click(req: ClickRequest):
    """
    Run a click through enrichment, scoring and alerting.
    
    The click is stored, so later clicks from the same IP see it in their
    history features.
    """
    container.optimizer.track_usage("/clicks/score")
    logger.info(f"Scoring click from {req.ip_address} for {req.account_id}")
    
    scored = await container.pipeline.score_click(req.to_event())
    return scored.model_dump(mode="json")


@app.post("/models/{account_id}/train")
async def train_model(account_id: str):
    """Train a replacement fraud model for an account."""
    container.optimizer.track_usage("/models/train")
    
    result = await container.ml.train(account_id)
    if result is None:
        return {
            "status": "insufficient_data",
            "account_id": account_id,
            "min_samples": container.ml.min_training_samples,
        }
    
    container.optimizer.clear_cache_for_account(account_id)
    return {
        "status": "trained",
        "account_id": account_id,
        "model_id": result.model.model_id,
        "metrics": result.metrics.model_dump(),
    }


@app.get("/dashboard/{account_id}")
async def dashboard(account_id: str):
    container.optimizer.track_usage("/dashboard")
    data = await container.optimizer.load_dashboard_data(account_id)
    return data.model_dump()


@app.get("/performance")
async def performance():
    """Cache effectiveness and endpoint usage."""
    return {
        "metrics": container.optimizer.get_performance_metrics().model_dump(),
        "usage": [stat.model_dump(mode="json") for stat in container.optimizer.get_usage_stats()],
    }
