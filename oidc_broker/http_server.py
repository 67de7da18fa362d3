import asyncio
import contextlib
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from oidc_broker.broker import Broker, build_broker, new_http_client
from oidc_broker.config import EnvSecretProvider, Secrets, Settings
from oidc_broker.logging_util import configure_logging, get_logger
from oidc_broker.persistence import InMemoryStore, PersistenceFactory, ttl_cleanup_task
from oidc_broker.routes import authRouter
from oidc_broker.sdk.redis_client import RedisClientSingleton
from oidc_broker.utils.exceptions import validation_exception_handler

logger = get_logger(__name__)


@contextlib.asynccontextmanager
async def broker_lifespan(app: FastAPI):
    # A missing secret stops startup here rather than failing requests later.
    secrets_ = Secrets(EnvSecretProvider())
    secrets_.validate()

    store = await PersistenceFactory.create()
    http_client = new_http_client()
    app.state.broker = build_broker(secrets_, store, http_client)

    cleanup_task = None
    if isinstance(store.backend, InMemoryStore):
        cleanup_task = asyncio.create_task(ttl_cleanup_task(store.backend))

    logger.info(f"Broker started for {secrets_.base_url}")
    try:
        yield
    finally:
        if cleanup_task:
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
        await http_client.aclose()
        await RedisClientSingleton.close()
        logger.info("Broker stopped")


def create_app(broker: Optional[Broker] = None) -> FastAPI:
    """
    Build the ASGI app. With an explicit `broker` (tests) no startup work is
    done; otherwise secrets, the state store and the HTTP client are set up
    by the lifespan.
    """
    if broker is None:
        app = FastAPI(lifespan=broker_lifespan)
    else:
        app = FastAPI()
        app.state.broker = broker

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(authRouter, prefix="")
    return app


app = create_app()


def main():
    configure_logging(
        level=Settings.LOG_LEVEL,
        log_file=Settings.LOG_FILE,
        max_bytes=5 * 1024 * 1024,  # 5 MB
        backup_count=3,
    )
    uvicorn.run(app, host="0.0.0.0", port=Settings.PORT)


if __name__ == "__main__":
    main()
