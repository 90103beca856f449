import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_arena import __version__
from agent_arena.agents.llm_client import OpenRouterClient
from agent_arena.api.arena.routes import router as arena_router
from agent_arena.api.middleware import LoggingMiddleware
from agent_arena.competition.manager import SessionManager
from agent_arena.config import ArenaSettings, Config, config, setup_logging
from agent_arena.data.market_data import KrakenPriceFeed
from agent_arena.data.store import InMemorySessionStore, SqlAlchemySessionStore
from agent_arena.db import create_database
from agent_arena.exceptions import FeedStale, InvalidConfig, SessionConflict

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (InvalidConfig, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SessionConflict, status.HTTP_409_CONFLICT),
    (FeedStale, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _allowed_origins(app_config: Config):
    if app_config.is_production:
        return [
            "https://arena.example.com",
        ]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app(manager: Optional[SessionManager] = None, app_config: Config = config) -> FastAPI:
    """
    Composition root.

    With no ``manager`` the lifespan builds one from the environment: Kraken
    feed, OpenRouter client when a key is set, SQLAlchemy store when
    DATABASE_URL is set and an in-memory store otherwise.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        database = None
        if app.state.manager is None:
            database = await create_database(app_config)
            store = SqlAlchemySessionStore(database) if database else InMemorySessionStore()
            feed = KrakenPriceFeed()
            owned.append(feed)
            llm = None
            if app_config.openrouter_api_key:
                llm = OpenRouterClient(app_config.openrouter_api_key)
                owned.append(llm)
            app.state.manager = SessionManager(
                feed=feed,
                llm=llm,
                store=store,
                settings=ArenaSettings.from_env(),
            )
            app.state.database = database
            logger.info("Arena service ready")

        yield

        await app.state.manager.close()
        for resource in owned:
            await resource.close()
        if database is not None:
            await database.close()

    is_production = app_config.is_production
    app = FastAPI(
        title="Agent Arena API",
        description="Multi-agent trading competition simulator",
        version=__version__,
        docs_url="/api/docs" if not is_production else None,
        redoc_url="/api/redoc" if not is_production else None,
        openapi_url="/openapi.json" if not is_production else None,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.database = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(app_config),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Requested-With"],
    )
    app.add_middleware(LoggingMiddleware)

    for error_type, status_code in ERROR_STATUS:
        app.add_exception_handler(error_type, _error_handler(status_code))

    app.include_router(arena_router, prefix="/api/v1/arena", tags=["Arena"])

    @app.get("/")
    async def root():
        return {"message": "Agent Arena API", "version": __version__}

    @app.get("/health")
    async def health_check():
        health = {"status": "healthy", "service": "agent-arena-api"}
        database = app.state.database
        if database is not None:
            health["database"] = await database.health_check()
            if health["database"]["status"] != "healthy":
                health["status"] = "degraded"
        return health

    return app


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


def main():
    import uvicorn

    setup_logging(config.log_level)
    uvicorn.run(create_app(), host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
