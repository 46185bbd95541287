"""
DeployGate service: FastAPI app wiring the pipeline controller to its
adapters.

Adapter selection (from the environment, after .env is loaded):
    DRY_RUN_MODE=true   in-memory backend and scripted feed
    RISK_MODEL_URL      remote risk model; heuristic scorer otherwise
    REDIS_URL           redis journal and deployment history
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

import redis
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deploygate import __version__
from deploygate.api import configure, router
from deploygate.backends import DockerBackend, DryRunBackend
from deploygate.config import PipelineConfig
from deploygate.controller import PipelineController
from deploygate.feeds import JenkinsStatusFeed, ScriptedStatusFeed
from deploygate.journal import AttemptJournal, RedisAttemptJournal
from deploygate.logging_config import get_logger
from deploygate.metrics import setup_metrics
from deploygate.scoring import HeuristicRiskScorer, HttpRiskScorer

logger = get_logger(__name__)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


def build_controller(config: Optional[PipelineConfig] = None, dry_run: Optional[bool] = None,
                     feed=None, redis_client=None) -> PipelineController:
    """Assemble a PipelineController from the environment"""
    load_dotenv()
    config = config or PipelineConfig.from_env()
    dry_run = _env_flag("DRY_RUN_MODE") if dry_run is None else dry_run

    if redis_client is None and os.getenv("REDIS_URL"):
        redis_client = redis.from_url(os.getenv("REDIS_URL"), decode_responses=True)
    journal = RedisAttemptJournal(redis_client) if redis_client is not None else AttemptJournal()

    if os.getenv("RISK_MODEL_URL"):
        scorer = HttpRiskScorer(base_url=os.getenv("RISK_MODEL_URL"))
    else:
        scorer = HeuristicRiskScorer(redis_client=redis_client)

    if dry_run:
        backend = DryRunBackend()
        feed = feed or ScriptedStatusFeed()
        logger.warning("[GATE] DRY RUN MODE - no containers will be touched")
    else:
        backend = DockerBackend()
        feed = feed or JenkinsStatusFeed()

    logger.info(
        f"[GATE] Controller ready: scorer={scorer.name} backend={backend.name} feed={feed.name} "
        f"journal={'redis' if redis_client is not None else 'none'} "
        f"threshold={config.risk_threshold}"
    )
    return PipelineController(scorer=scorer, backend=backend, feed=feed, config=config, journal=journal)


async def close_controller(controller: PipelineController, cancel_in_flight: bool = False):
    await controller.shutdown(cancel_in_flight=cancel_in_flight)
    await controller.scorer.aclose()
    await controller.feed.aclose()


def create_app(controller: Optional[PipelineController] = None) -> FastAPI:
    """Create the API app; builds a controller from the environment when none is given"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        active = controller or build_controller()
        app.state.controller = active
        configure(active)
        logger.info("[GATE] API started")

        yield

        # Shutdown
        logger.info("[GATE] Shutting down, rolling back in-flight attempts...")
        await close_controller(active, cancel_in_flight=True)
        configure(None)

    app = FastAPI(
        title="DeployGate",
        version=__version__,
        description="Risk-gated deployment rollout with monitoring and automatic rollback",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    setup_metrics(app)
    return app
