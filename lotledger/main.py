# lotledger/main.py
"""Read-only monitoring API over the ledger."""
from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from .api.routes import router as api_router
from .db import init_db
from .utils import logger

# create FastAPI instance
app = FastAPI(title="lotledger")
app.include_router(api_router)


@app.on_event("startup")
def on_startup_create_tables():
    # Ensure database tables are created on startup
    try:
        init_db()
    except SQLAlchemyError as e:
        # keep serving; the stats routes report the failure per request
        logger.error("create_all failed on startup: %s", e)
