import logging
import os
from collections.abc import Mapping
from datetime import timedelta

from pydantic import BaseModel

ENV_PREFIX = "PLANNING_"


class PlanningSettings(BaseModel):
    base_url: str = "http://localhost:8000/api/planning-assignment"
    cache_ttl_seconds: float = 300.0
    cache_max_age_seconds: float = 3600.0
    prefetch_adjacent: bool = True
    request_timeout_seconds: float = 30.0
    cache_dir: str | None = None
    log_level: str = "INFO"

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)

    @property
    def cache_max_age(self) -> timedelta:
        return timedelta(seconds=self.cache_max_age_seconds)

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "PlanningSettings":
        """
        Read ``PLANNING_<FIELD>`` variables, e.g. ``PLANNING_CACHE_TTL_SECONDS``.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            values[name] = raw
        return cls.model_validate(values)


def configure_logging(settings: PlanningSettings) -> None:
    logger = logging.getLogger("planning")
    logger.setLevel(settings.log_level.upper())
    if not logging.getLogger().handlers and not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
