"""HTTP trigger for scheduled syncs and connection tests."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, load_settings
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    """Optional body of a trigger request."""

    test_connection: bool = False
    user_id: Optional[str] = None


def create_app(settings: Optional[Settings] = None, engine: Optional[SyncEngine] = None) -> FastAPI:
    """Build the trigger application.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        engine: Sync engine to use (built from settings if omitted)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, 'engine', None) is None:
            app.state.engine = SyncEngine(settings or load_settings())
            await app.state.engine.initialize()
        yield

    app = FastAPI(title="icalsync", version="1.0", lifespan=lifespan)
    app.state.engine = engine

    @app.get("/health")
    async def health():
        return {"ok": True}

    async def trigger(request: Request):
        body = await request.body()
        try:
            payload = SyncRequest.model_validate_json(body) if body.strip() else SyncRequest()
        except ValueError as e:
            return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request body: {e}"})

        sync_engine: SyncEngine = request.app.state.engine
        try:
            if payload.test_connection:
                if not payload.user_id:
                    return JSONResponse(
                        status_code=400,
                        content={"success": False, "error": "user_id is required for test_connection"},
                    )
                result = await sync_engine.test_connection(payload.user_id)
                return result.model_dump()

            report = await sync_engine.run_scheduled()
            return {
                "success": report.success,
                "synced_users": report.synced_users,
                "results": [
                    r.model_dump(include={'user_id', 'status', 'error'}, exclude_none=True)
                    for r in report.results
                ],
            }
        except Exception as e:
            logger.exception("Sync trigger failed")
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    app.add_api_route("/", trigger, methods=["POST"])
    app.add_api_route("/sync", trigger, methods=["POST"])
    return app


app = create_app()
