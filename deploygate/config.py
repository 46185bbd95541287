"""
Pipeline configuration consumed by the state machine and controller.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from deploygate import constants
from deploygate.errors import InvalidInput


class PipelineConfig(BaseModel):
    """Gating and monitoring policy for deployment attempts"""

    model_config = {"frozen": True}

    risk_threshold: float = Field(default=constants.RISK_THRESHOLD, ge=0.0, le=1.0)
    scorer_retry_limit: int = Field(default=constants.SCORER_RETRY_LIMIT, ge=0)
    scorer_retry_backoff: float = Field(default=constants.SCORER_RETRY_BACKOFF_SECONDS, ge=0.0)
    monitoring_timeout: float = Field(default=constants.MONITORING_TIMEOUT_SECONDS, gt=0.0)
    monitoring_poll_interval: float = Field(
        default=constants.MONITORING_POLL_INTERVAL_SECONDS, gt=0.0
    )
    watch_backend_health: bool = constants.WATCH_BACKEND_HEALTH

    @model_validator(mode="after")
    def _poll_within_timeout(self):
        if self.monitoring_poll_interval > self.monitoring_timeout:
            raise ValueError("monitoring_poll_interval must not exceed monitoring_timeout")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Build config from the environment (and .env), applying overrides last"""
        load_dotenv()
        values = {
            "risk_threshold": os.getenv("RISK_THRESHOLD", constants.RISK_THRESHOLD),
            "scorer_retry_limit": os.getenv("SCORER_RETRY_LIMIT", constants.SCORER_RETRY_LIMIT),
            "scorer_retry_backoff": os.getenv(
                "SCORER_RETRY_BACKOFF_SECONDS", constants.SCORER_RETRY_BACKOFF_SECONDS
            ),
            "monitoring_timeout": os.getenv(
                "MONITORING_TIMEOUT_SECONDS", constants.MONITORING_TIMEOUT_SECONDS
            ),
            "monitoring_poll_interval": os.getenv(
                "MONITORING_POLL_INTERVAL_SECONDS", constants.MONITORING_POLL_INTERVAL_SECONDS
            ),
            "watch_backend_health": os.getenv(
                "WATCH_BACKEND_HEALTH", constants.WATCH_BACKEND_HEALTH
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            raise InvalidInput("invalid pipeline configuration", detail=str(e)) from e
