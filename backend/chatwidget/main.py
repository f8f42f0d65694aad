# backend/chatwidget/main.py
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from . import config, models
from .api import operator, widget
from .database import SessionLocal, engine
from .feed import LiveFeed
from .logs import configure_logging
from .remote import RemoteFunctions, build_http_client
from .store import DataStore
from .uploads import AttachmentStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.LOG_LEVEL, config.LOG_FORMAT)
    models.Base.metadata.create_all(bind=engine)

    redis_client = redis.from_url(config.REDIS_URL)
    http_client = build_http_client()
    feed = LiveFeed(redis_client)
    app.state.feed = feed
    app.state.store = DataStore(SessionLocal, feed)
    app.state.remote = RemoteFunctions(http_client, config.RESOLVER_URL, config.ASSIGN_URL)
    app.state.uploads = AttachmentStore(config.MEDIA_ROOT, config.MEDIA_URL, config.MAX_FILE_SIZE)
    logger.info("Chat widget engine started", redis=config.REDIS_URL)
    yield
    await http_client.aclose()
    await redis_client.aclose()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API
app.include_router(operator.router, prefix="/api")
app.include_router(widget.router)

# Attachments
app.mount(config.MEDIA_URL, StaticFiles(directory=config.MEDIA_ROOT, check_dir=False), name="media")
