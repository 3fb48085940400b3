"""
FastAPI Application for the Math Content Generation Backend
"""

import base64
import logging
from typing import Optional, Union
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, status, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from config import settings
from events import encode_sse
from graph import create_checkpointer, open_pool
from llm import GeminiLanguageModel
from orchestrator import DEFAULT_USER, ContentOrchestrator, ImageInput
from retriever import PgVectorKnowledgeStore
from thread_store import InMemoryThreadStore, PostgresThreadStore, StoreUnavailableError, is_temporary
from rate_limiter import (
    init_rate_limiter,
    close_rate_limiter,
    get_rate_limiter,
    RateLimitConfig
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class SettingsPayload(BaseModel):
    """Partial content settings sent by the client; missing fields are resolved in chat."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    content_type: Optional[str] = Field(None, validation_alias=AliasChoices("content_type", "contentType"))
    grade_level: Optional[Union[str, int]] = Field(None, validation_alias=AliasChoices("grade_level", "gradeLevel"))
    length: Optional[str] = None
    tone: Optional[str] = None


class ImageData(BaseModel):
    base64: str = Field(..., min_length=1)
    content_type: str = Field("image/png", pattern=r"^image/")
    filename: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)

    @field_validator("base64")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        # Accept data URIs as sent by browsers
        if v.startswith("data:") and "," in v:
            v = v.split(",", 1)[1]
        try:
            base64.b64decode(v, validate=True)
        except Exception:
            raise ValueError("Invalid base64 encoding")
        return v


class ChatStreamRequest(BaseModel):
    prompt: Optional[str] = None
    thread_id: Optional[str] = None
    user_id: str = DEFAULT_USER
    settings: Optional[SettingsPayload] = None
    image_data: Optional[ImageData] = None


class HealthResponse(BaseModel):
    status: str
    version: str = "0.1.0"
    environment: str


class ThreadMessagesResponse(BaseModel):
    thread_id: str
    messages: list[dict]

# ============================================================================
# LIFECYCLE & APP
# ============================================================================

orchestrator: Optional[ContentOrchestrator] = None
thread_store = None
db_pool = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    global orchestrator, thread_store, db_pool
    logger.info("Starting up Content Generation Backend...")

    # Initialize rate limiter
    if settings.rate_limit_enabled:
        try:
            rate_config = RateLimitConfig(
                limit=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window
            )
            await init_rate_limiter(settings.redis_url, rate_config)
            logger.info(f"Rate limiter initialized ({settings.rate_limit_requests}/{settings.rate_limit_window}s)")
        except Exception as e:
            logger.warning(f"Rate limiter unavailable (Redis connection failed): {e}")

    # Persistence: each piece degrades to memory on its own
    db_pool = await open_pool(settings.database_url)
    knowledge_store = None
    if db_pool is not None:
        try:
            store = PostgresThreadStore(db_pool)
            await store.setup()
            thread_store = store
        except Exception as e:
            logger.warning(f"Thread store setup failed, using in-memory threads: {e}")
        knowledge_store = PgVectorKnowledgeStore(db_pool)
    if thread_store is None:
        thread_store = InMemoryThreadStore()
    checkpointer = await create_checkpointer(db_pool)

    # Initialize orchestrator
    try:
        orchestrator = ContentOrchestrator(
            llm=GeminiLanguageModel(settings),
            thread_store=thread_store,
            knowledge_store=knowledge_store,
            config=settings,
            checkpointer=checkpointer,
        )
        logger.info(f"Content orchestrator initialized (mode={settings.pipeline_mode})")
    except Exception as e:
        logger.error(f"Failed to initialize orchestrator: {e}")
        raise

    yield

    # Cleanup
    logger.info("Shutting down...")
    await close_rate_limiter()
    if db_pool is not None:
        await db_pool.close()

app = FastAPI(
    title="Math Content Studio API",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="healthy", environment=settings.environment)

@app.get("/v1/quota")
async def get_quota(user_id: str = DEFAULT_USER):
    """Get current rate limit quota status for a user."""
    try:
        limiter = await get_rate_limiter()
        return await limiter.get_quota_status(user_id)
    except RuntimeError:
        # Rate limiter not available
        return {
            "remaining": -1,  # -1 means unlimited
            "limit": -1,
            "window_seconds": settings.rate_limit_window,
            "reset_in_seconds": 0,
            "message": "Rate limiting not enabled"
        }

@app.post("/v1/chat/stream")
async def chat_stream(payload: ChatStreamRequest, request: Request):
    if orchestrator is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Orchestrator not initialized")

    if not payload.prompt or not payload.prompt.strip():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "A prompt is required")

    # Check rate limit
    try:
        limiter = await get_rate_limiter()
        allowed, remaining, reset_in = await limiter.check_rate_limit(payload.user_id)
        if not allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "message": f"Too many requests. Try again in {reset_in} seconds.",
                    "retry_after": reset_in,
                    "remaining": 0,
                    "limit": limiter.config.limit
                },
                headers={"Retry-After": str(reset_in)}
            )
    except RuntimeError:
        # Rate limiter not available, continue without limiting
        logger.debug("Rate limiter not available, skipping rate limit check")

    image = None
    if payload.image_data is not None:
        image = ImageInput(base64=payload.image_data.base64, content_type=payload.image_data.content_type)

    logger.info(f"[ChatStream] Thread: {payload.thread_id or 'new'}, image: {image is not None}")
    events = orchestrator.stream(
        payload.prompt,
        thread_id=payload.thread_id,
        user_id=payload.user_id,
        settings=payload.settings.model_dump(exclude_none=True) if payload.settings else {},
        image=image,
    )

    async def event_source():
        try:
            async for event in events:
                if await request.is_disconnected():
                    logger.info("[ChatStream] Client disconnected, stopping run")
                    break
                yield encode_sse(event)
        finally:
            await events.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

@app.get("/v1/threads/{thread_id}/messages", response_model=ThreadMessagesResponse)
async def get_thread_messages(thread_id: str):
    if thread_store is None or is_temporary(thread_id):
        return ThreadMessagesResponse(thread_id=thread_id, messages=[])
    try:
        messages = await thread_store.list(thread_id)
    except StoreUnavailableError as e:
        logger.error(f"[Threads] Error: {e}")
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Thread history unavailable")
    return ThreadMessagesResponse(thread_id=thread_id, messages=messages)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.backend_port, reload=True)
