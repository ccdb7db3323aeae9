import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from till.clients.erp import ErpClient
from till.core.config import Settings, get_settings
from till.db import Base, SessionLocal, engine
from till.middleware.idempotency import install_idempotency
from till.routers import carts, health, scan
from till.routers import till as till_router
from till.services.carts import ParkedCarts
from till.services.till import Till

# IMPORTA MODELOS antes de create_all
from till.models import cart as _cart_models  # noqa: F401

logger = logging.getLogger(__name__)


def create_app(cfg: Optional[Settings] = None, client=None, bind=None, bootstrap: bool = True) -> FastAPI:
    """
    Arranque: `uvicorn till.main:create_app --factory`.

    `client` y `bind` permiten inyectar un ERP falso y una BD en memoria.
    """
    cfg = cfg or get_settings()
    if bind is None:
        bind, session_factory = engine, SessionLocal
    else:
        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=bind)

    # Crea tablas faltantes
    Base.metadata.create_all(bind=bind)

    till = Till(client or ErpClient.from_settings(cfg), ParkedCarts(session_factory), cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if bootstrap:
            await till.bootstrap()
        logger.info("%s %s ready (env=%s, cart=%s)", cfg.app_name, cfg.app_version, cfg.app_env, till.carts.active_id)
        yield

    app = FastAPI(title=cfg.app_name, version=cfg.app_version, lifespan=lifespan)
    app.state.till = till
    app.dependency_overrides[get_settings] = lambda: cfg

    install_idempotency(app)
    app.include_router(health.router)
    app.include_router(till_router.router)
    app.include_router(scan.router)
    app.include_router(carts.router)
    return app
