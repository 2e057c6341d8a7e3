from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import threads
from app.config import settings
from app.services import logger as log_service
from app.services.checkpointer import build_checkpointer
from app.services.engine import ResearchEngine


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.engine = ResearchEngine(build_checkpointer(settings))
    log_service.log_event(
        event_type="app_started",
        message="ResearchFlow API started",
        checkpointer=type(app.state.engine.checkpointer).__name__,
    )
    yield
    # Shutdown
    await app.state.engine.close()


app = FastAPI(
    title="ResearchFlow",
    description="Multi-agent deep research workflow engine",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(threads.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "researchflow"}
