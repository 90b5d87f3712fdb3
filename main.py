import inspect
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from openai import AsyncOpenAI

from dal.session_dal import SessionDAL
from routes.realtime_ws import router as realtime_router
from routes.session_route import prompt_router, router as session_router
from services.chat.attachments import AttachmentProcessor
from services.chat.prompts import SystemPromptLoader
from services.chat.session_registry import SessionRegistry
from services.chat.stream_gateway import OpenAIStreamGateway
from utils.app_config import AppConfig
from utils.database_init import AsyncDatabaseInitializer

BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = BASE_DIR / "public"

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file if present

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the SQLite session store (at DATABASE_DIR/chat.db)
      - the OpenAI async client and the streaming gateway built on it
      - the session registry that owns live session controllers
    and attach them to `app.state`.
    """
    config: AppConfig = app.state.config

    db_initializer = AsyncDatabaseInitializer()
    await db_initializer.ensure_database()
    app.state.db_initializer = db_initializer

    openai_api_key = os.getenv("OPENAI_API_KEY")
    if not openai_api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is not set")

    try:
        openai_client = AsyncOpenAI()
    except Exception as exc:
        raise RuntimeError("Failed to initialize OpenAI Async client") from exc

    app.state.openai_client = openai_client

    prompt_loader = SystemPromptLoader(config.system_prompt_path)
    app.state.prompt_loader = prompt_loader
    app.state.attachment_processor = AttachmentProcessor()

    gateway = OpenAIStreamGateway(openai_client, model=config.chat_model, prompt_loader=prompt_loader)
    registry = SessionRegistry(
        SessionDAL(db_initializer),
        gateway,
        reasoning_budget=config.reasoning_budget,
        generation_timeout=config.generation_timeout,
    )
    app.state.session_registry = registry

    try:
        yield
    finally:
        try:
            await registry.shutdown()
        except Exception:
            logger.exception("Error while stopping live sessions")

        # Gracefully close the OpenAI client if it exposes a close/aclose method.
        client = getattr(app.state, "openai_client", None)
        if client is not None:
            aclose = getattr(client, "aclose", None) or getattr(client, "close", None)
            if aclose is not None:
                try:
                    if inspect.iscoroutinefunction(aclose):
                        await aclose()
                    else:
                        result = aclose()
                        if inspect.isawaitable(result):
                            await result
                except Exception:
                    # Ignore shutdown errors to avoid masking more important issues.
                    pass


def create_app(config: AppConfig | None = None, *, use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    config = config or AppConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(lifespan=lifespan if use_lifespan else None)
    app.state.config = config

    # Serve static assets from the public directory, if it exists.
    if PUBLIC_DIR.exists():
        app.mount("/public", StaticFiles(directory=PUBLIC_DIR), name="public")

    @app.get("/", include_in_schema=False)
    async def serve_index():
        """
        Serve the frontend index page from the public directory.
        """
        index_path = PUBLIC_DIR / "index.html"
        if not index_path.exists():
            raise HTTPException(status_code=404, detail="Frontend not found")
        return FileResponse(index_path)

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check that verifies the session store and OpenAI client presence.
        """
        has_db = hasattr(request.app.state, "db_initializer")
        has_openai = (
            hasattr(request.app.state, "openai_client")
            and request.app.state.openai_client is not None
        )
        return {"ok": True, "db_initialized": has_db, "openai_available": has_openai}

    # Register application routers
    app.include_router(session_router)
    app.include_router(prompt_router)
    app.include_router(realtime_router)

    return app


app = create_app()
