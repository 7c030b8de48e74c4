from fastapi import FastAPI
import logging

from contestant.api.routes import router
from contestant.client import ContestantClient
from contestant.config import settings_from_env
from contestant.infra.redis_client import create_redis
from contestant.websocket_hub import screens

app = FastAPI(title="contestant-station", version="0.1.0")
app.include_router(router)
# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def _startup() -> None:
    # Tests install a prebuilt client before the app starts.
    client = getattr(app.state, "client", None)
    if client is None:
        client = ContestantClient(settings=settings_from_env(), r=create_redis())
        app.state.client = client
    app.state.detach_screens = screens.attach(client)
    await client.start()
    logger.info("Contestant station started (tab %s)", client.elector.tab_id)


@app.on_event("shutdown")
async def _shutdown() -> None:
    detach = getattr(app.state, "detach_screens", None)
    if detach is not None:
        detach()
        app.state.detach_screens = None
    client = getattr(app.state, "client", None)
    if client is not None:
        await client.stop()


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "contestant-station", "version": "0.1.0"}
