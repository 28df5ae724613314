from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from shopsync.actions import Action, dispatch
from shopsync.config import Settings
from shopsync.db import ShopDB
from shopsync.logging_config import configure_logging
from shopsync.repo import Repo


def create_app(settings: Settings) -> FastAPI:
    ShopDB(settings.db_path).init()
    repo = Repo(settings.db_path)

    app = FastAPI(title="shopsync")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True, "shops": len(repo.list_shop_ids()), "actions": [a.value for a in Action]}

    @app.post("/invoke")
    async def invoke(request: Request):
        # Always 200: callers branch on `success`, not on the HTTP status.
        try:
            body: Any = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "request body must be JSON", "error_type": "ValidationError"})
        if not isinstance(body, dict):
            return JSONResponse({"success": False, "error": "request body must be an object", "error_type": "ValidationError"})
        action = str(body.pop("action", "") or "")
        result = await dispatch(settings, repo, action, body)
        return JSONResponse(result)

    return app


def run_web(settings: Settings) -> None:
    configure_logging()
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
