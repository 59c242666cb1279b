import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import pytz

from app_context import AppContext, build_context
from config import SCHEDULER_ENABLED, is_generator_configured
from database import DEFAULT_HISTORY_PAGE, HISTORY_LIMIT
from errors import GenerationFailed
from logging_setup import configure_logging, short_id
from models import (
    ChatRequest,
    ManualDigestRequest,
    RegisterPushRequest,
    SettingsUpdate,
    default_settings_payload,
)
from services.digest_generator import TOPICS

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ("429", "rate limit", "rate_limit", "quota", "resource_exhausted", "overloaded")


def is_rate_limit_error(message: str | None) -> bool:
    """Provider errors that should reach the client as 429 instead of 500."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def error_response(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    content = {"success": False, "error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def create_app(context: AppContext | None = None, start_scheduler: bool = True) -> FastAPI:
    """
    Build the API app.

    Args:
        context: Prebuilt services (tests); built on startup when omitted.
        start_scheduler: Start the background digest scheduler on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is None:
            configure_logging()
        app.state.context = context or build_context()
        scheduler = app.state.context.scheduler

        # Startup: start scheduler if content generation is configured
        if start_scheduler and SCHEDULER_ENABLED and is_generator_configured():
            scheduler.start()
        elif start_scheduler:
            logger.warning("Content generation not configured or scheduler disabled, digest scheduler not started")
        yield
        # Shutdown: stop scheduler and close HTTP clients
        app.state.context.close()

    app = FastAPI(
        title="Daily Digest API",
        description="Scheduled AI news digests delivered as push notifications",
        version="2.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type"],
    )

    @app.get("/")
    def root():
        return {
            "status": "ok",
            "message": "Daily Digest API",
            "version": "2.0.0",
            "features": ["chat", "daily-digest", "push-notifications"],
        }

    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": datetime.now(pytz.utc).isoformat()}

    @app.post("/chat")
    def chat(body: ChatRequest, ctx: AppContext = Depends(get_context)):
        """One chat turn; the client sends the earlier turns as history."""
        if not body.message or not body.message.strip():
            return error_response(400, "Message is required")

        try:
            text = ctx.chat.reply(body.message, body.history)
        except GenerationFailed as e:
            logger.error("Chat request failed: %s", e)
            if is_rate_limit_error(str(e)):
                return error_response(429, "The AI is busy. Try again in a few seconds.", "Rate limit exceeded")
            return error_response(500, "Could not get an AI response", str(e))

        return {
            "success": True,
            "response": text,
            "timestamp": datetime.now(pytz.utc).isoformat(),
        }

    @app.get("/digest/topics")
    def list_topics():
        return {"success": True, "topics": list(TOPICS)}

    @app.get("/digest/status")
    def digest_status(
        check: bool = Query(False),
        ctx: AppContext = Depends(get_context),
    ):
        """Check generator configuration, scheduler state and store health."""
        status = {
            "generator_configured": is_generator_configured(),
            "provider": ctx.generator.provider,
            **ctx.scheduler.describe(),
            "recipients_enabled": len(ctx.recipients.all_enabled_with_token()),
            "persistence_failures": ctx.datastore.failure_count,
        }
        if check:
            status["generator_reachable"] = ctx.generator.check_connection()
        return status

    @app.get("/digest/settings")
    def get_settings(
        recipient_id: str | None = Query(None, alias="recipientId"),
        device_id: str | None = Query(None, alias="deviceId"),
        ctx: AppContext = Depends(get_context),
    ):
        recipient_id = recipient_id or device_id
        if not recipient_id:
            return error_response(400, "recipientId is required")

        settings = ctx.recipients.get(recipient_id)
        return {
            "success": True,
            "settings": (
                settings.model_dump(mode="json", by_alias=True)
                if settings
                else default_settings_payload()
            ),
        }

    @app.post("/digest/settings")
    def save_settings(body: SettingsUpdate, ctx: AppContext = Depends(get_context)):
        if not body.recipient_id:
            return error_response(400, "recipientId is required")

        settings = ctx.recipients.save(body.recipient_id, body.preference_updates())
        logger.info("Settings saved for recipient: %s", short_id(body.recipient_id))
        return {"success": True, "settings": settings.model_dump(mode="json", by_alias=True)}

    @app.post("/digest/register-push")
    def register_push(body: RegisterPushRequest, ctx: AppContext = Depends(get_context)):
        if not body.recipient_id or not body.push_token:
            return error_response(400, "recipientId and pushToken are required")

        ctx.recipients.register_token(body.recipient_id, body.push_token)
        logger.info("Push token registered for recipient: %s", short_id(body.recipient_id))
        return {"success": True, "message": "Push token registered"}

    @app.get("/digest/history")
    def get_history(
        recipient_id: str | None = Query(None, alias="recipientId"),
        device_id: str | None = Query(None, alias="deviceId"),
        limit: int = Query(DEFAULT_HISTORY_PAGE),
        ctx: AppContext = Depends(get_context),
    ):
        recipient_id = recipient_id or device_id
        if not recipient_id:
            return error_response(400, "recipientId is required")

        # Non-positive limits fall back to the default page; large ones are capped
        limit = min(limit, HISTORY_LIMIT) if limit > 0 else DEFAULT_HISTORY_PAGE
        history = ctx.history.list(recipient_id, limit)
        return {
            "success": True,
            "history": [record.model_dump(mode="json", by_alias=True) for record in history],
        }

    @app.get("/digest/history/{digest_id}")
    def get_digest(
        digest_id: str,
        recipient_id: str | None = Query(None, alias="recipientId"),
        device_id: str | None = Query(None, alias="deviceId"),
        ctx: AppContext = Depends(get_context),
    ):
        recipient_id = recipient_id or device_id
        if not recipient_id:
            return error_response(400, "recipientId is required")

        digest = ctx.history.get(recipient_id, digest_id)
        if not digest:
            return error_response(404, "Digest not found")
        return {"success": True, "digest": digest.model_dump(mode="json", by_alias=True)}

    @app.post("/test-digest")
    def trigger_test_digest(body: ManualDigestRequest, ctx: AppContext = Depends(get_context)):
        """Generate and send a digest right away, outside the schedule."""
        if not body.topic or not body.topic.strip():
            return error_response(400, "topic is required")

        logger.info("Test digest requested for topic: %s", body.topic)
        result = ctx.pipeline.trigger_manual_digest(
            body.recipient_id or "test-device",
            body.topic.strip(),
            body.custom_prompt or "",
            body.push_token,
        )
        if not result.success:
            status_code = 429 if is_rate_limit_error(result.error) else 500
            return error_response(status_code, result.error or "Digest generation failed")
        return result.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    import os

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
