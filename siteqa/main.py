import logging
from typing import Optional

from fastapi import FastAPI

from siteqa import db
from siteqa.config import Settings, load_settings
from siteqa.errors import install_error_handlers
from siteqa.ratelimit import RateLimiter, build_rate_limiter
from siteqa.routers import itp, ncrs

logger = logging.getLogger("siteqa.app")


def create_app(settings: Optional[Settings] = None, rate_limiter: Optional[RateLimiter] = None) -> FastAPI:
    settings = settings or load_settings()

    logging.getLogger("siteqa").setLevel(settings.log_level)

    app = FastAPI(title="site-qa", version="0.1.0")
    app.state.settings = settings
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings)

    install_error_handlers(app)
    app.include_router(ncrs.router)
    app.include_router(itp.router)

    @app.get("/healthz", include_in_schema=False)
    def healthz():
        return {"ok": True}

    # schema is idempotent, safe on every boot
    db.init_db(settings.db_path)
    logger.info(
        "site-qa ready: db=%s rate_limit=%s batch_workers=%s",
        settings.db_path,
        settings.rate_limit_backend,
        settings.batch_workers,
    )
    return app
