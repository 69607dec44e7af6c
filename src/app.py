"""Application wiring for the local grid rank tracker."""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "app": {"name": "local-grid-tracker", "data_dir": "data"},
    "database": {"url": None, "echo": False},
    "dataforseo": {
        "base_url": "https://api.dataforseo.com/v3",
        "timeout": 60,
        "depth": 20,
        "zoom": 14,
        "language_code": "en",
        "requests_per_minute": None,
    },
    "local_grid": {
        "lookup_concurrency": 10,
        "max_concurrent_scans": 5,
        "max_retries": 2,
        "retry_backoff_seconds": 1.0,
        "call_timeout_seconds": 60,
        "progress_step": 10,
        "cost_per_call": 0.005,
        "stale_scan_minutes": 120,
        "default_grid_size": 7,
        "default_radius_miles": 5.0,
        "default_scan_frequency": "weekly",
    },
    "scheduler": {
        "timezone": "UTC",
        "scan_cron": "0 6 * * *",
        "sweep_interval_minutes": 15,
        "due_batch_size": 20,
    },
}


def _merge(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class GridScanApp:
    """Central application object: loads config and builds the scan pipeline.

    One app owns the single ``LookupLimiter`` of the process, so every
    scanner it hands out shares the same external API budget.

    Usage::

        app = GridScanApp()
        app.initialize()
        outcome = await app.orchestrator.run_scan(campaign_id)
        await app.close()
    """

    def __init__(
        self,
        config_path: str = "config/settings.yaml",
        env_path: str = ".env",
        lookup_client: Optional[Any] = None,
    ):
        self._config_path = config_path
        self._env_path = env_path
        self.config: dict[str, Any] = {}
        self._initialized = False
        self._lookup_client = lookup_client
        self._limiter = None
        self._repository = None
        self._orchestrator = None
        self._scheduler = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load .env and YAML config, then initialise the database."""
        if self._initialized:
            return

        env_file = Path(self._env_path)
        if env_file.exists():
            load_dotenv(env_file)
            logger.info("Loaded environment from %s", self._env_path)

        self.config = _merge(DEFAULT_CONFIG, self._load_config())

        data_dir = self.config["app"].get("data_dir")
        if data_dir:
            Path(data_dir).mkdir(parents=True, exist_ok=True)

        from src.database import init_db
        db_cfg = self.config["database"]
        init_db(database_url=db_cfg.get("url") or os.getenv("DATABASE_URL"), echo=db_cfg.get("echo", False))

        self._initialized = True
        logger.info("GridScanApp initialised.")

    def _load_config(self) -> dict[str, Any]:
        config_file = Path(self._config_path)
        if not config_file.exists():
            logger.warning("Config file not found: %s, using defaults.", self._config_path)
            return {}
        with open(config_file, "r", encoding="utf-8") as fh:
            config = yaml.safe_load(fh) or {}
        logger.info("Configuration loaded from %s", self._config_path)
        return config

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Call initialize() before using the application.")

    # ------------------------------------------------------------------
    # Components (built lazily, one instance each)
    # ------------------------------------------------------------------

    @property
    def grid_config(self) -> dict[str, Any]:
        self._ensure_initialized()
        return self.config["local_grid"]

    @property
    def repository(self):
        self._ensure_initialized()
        if self._repository is None:
            from src.modules.local_grid.repository import ScanRepository
            self._repository = ScanRepository()
        return self._repository

    @property
    def lookup_client(self):
        self._ensure_initialized()
        if self._lookup_client is None:
            from src.integrations.dataforseo_maps import DataForSEOMapsClient
            dfs = self.config["dataforseo"]
            self._lookup_client = DataForSEOMapsClient(
                base_url=dfs.get("base_url", "https://api.dataforseo.com/v3"),
                timeout=dfs.get("timeout", 60),
                depth=dfs.get("depth", 20),
                zoom=dfs.get("zoom", 14),
                language_code=dfs.get("language_code", "en"),
            )
        return self._lookup_client

    @property
    def limiter(self):
        self._ensure_initialized()
        if self._limiter is None:
            from src.utils.rate_limiter import LookupLimiter
            self._limiter = LookupLimiter(
                max_concurrent=self.grid_config.get("lookup_concurrency", 10),
                requests_per_minute=self.config["dataforseo"].get("requests_per_minute"),
                name="dataforseo",
            )
        return self._limiter

    @property
    def orchestrator(self):
        self._ensure_initialized()
        if self._orchestrator is None:
            from src.modules.local_grid.orchestrator import ScanOrchestrator
            from src.modules.local_grid.profile import BusinessProfileRefresher
            from src.modules.local_grid.scanner import KeywordGridScanner

            cfg = self.grid_config
            scanner = KeywordGridScanner(
                self.lookup_client,
                self.limiter,
                max_retries=cfg.get("max_retries", 2),
                retry_backoff=cfg.get("retry_backoff_seconds", 1.0),
                call_timeout=cfg.get("call_timeout_seconds", 60),
            )
            refresher = None
            if hasattr(self.lookup_client, "fetch_business_info"):
                refresher = BusinessProfileRefresher(self.lookup_client, self.repository)
            self._orchestrator = ScanOrchestrator(
                self.repository,
                scanner,
                max_concurrent_scans=cfg.get("max_concurrent_scans", 5),
                profile_refresher=refresher,
                cost_per_call=cfg.get("cost_per_call", 0.005),
                progress_step=cfg.get("progress_step", 10),
                depth=self.config["dataforseo"].get("depth", 20),
                stale_after=timedelta(minutes=cfg.get("stale_scan_minutes", 120)),
            )
        return self._orchestrator

    @property
    def scheduler(self):
        self._ensure_initialized()
        if self._scheduler is None:
            from src.scheduler import ScanScheduler
            sched = self.config["scheduler"]
            self._scheduler = ScanScheduler(
                self.orchestrator,
                timezone=sched.get("timezone", "UTC"),
                scan_cron=sched.get("scan_cron", "0 6 * * *"),
                sweep_interval_minutes=sched.get("sweep_interval_minutes", 15),
                due_batch_size=sched.get("due_batch_size", 20),
            )
        return self._scheduler

    async def close(self) -> None:
        """Stop the scheduler, wait for background work and release HTTP clients."""
        if self._scheduler is not None:
            self._scheduler.stop()
        if self._orchestrator is not None:
            await self._orchestrator.drain()
        if self._lookup_client is not None and hasattr(self._lookup_client, "close"):
            await self._lookup_client.close()
