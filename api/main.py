import logging
import os
from contextlib import asynccontextmanager

import storage
from broker import get_publisher
from database import init_db
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routers import admin, favorites, loops, notifications, push, social, trending, users

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logging.getLogger("pika").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up BeatThat API")
    init_db()
    storage.ensure_dirs()
    yield
    logger.info("Shutting down BeatThat API")
    get_publisher().close()


app = FastAPI(title="BeatThat API", lifespan=lifespan)

_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "X-User-Id", "X-Admin-Token"],
)

app.include_router(users.router)
app.include_router(loops.router)
app.include_router(social.router)
app.include_router(favorites.router)
app.include_router(trending.router)
app.include_router(notifications.router)
app.include_router(push.router)
app.include_router(admin.router)


@app.get("/health")
def health():
    return {"ok": True}
