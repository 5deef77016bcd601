"""
Wiring for the context engine: environment, summarization model, world book.

PostgreSQL is used for the world book when DATABASE_URL is set; otherwise
an in-memory world book keeps the engine runnable without a database.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .compaction import (
    ContextSyncController,
    ConversationSummarizer,
    EngineSettings,
    InMemoryWorldbook,
    PostgresWorldbook,
    StoreError,
    TierCalculator,
    WorldbookStore,
)

logger = logging.getLogger(__name__)


# Load environment variables (.env overrides the process environment)
load_dotenv(override=True)


DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
SUMMARY_TEMPERATURE = 0.3
SUMMARY_MAX_TOKENS = 2000


def get_credentials() -> tuple[str | None, str | None]:
    """
    Resolve API credentials.

    - API Key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def create_summarizer(settings: EngineSettings) -> ConversationSummarizer:
    """Create the LLM-backed summarizer; without a model it fails every call."""
    model_name = settings.summary_model or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
    try:
        api_key, base_url = get_credentials()
        init_kwargs = {"temperature": SUMMARY_TEMPERATURE, "max_tokens": SUMMARY_MAX_TOKENS}
        if api_key:
            init_kwargs["api_key"] = api_key
        if base_url:
            init_kwargs["base_url"] = base_url

        model_provider = os.getenv("MODEL_PROVIDER")
        provider_kwargs = {}
        if model_provider:
            provider_kwargs["model_provider"] = model_provider

        summary_llm = init_chat_model(model_name, **provider_kwargs, **init_kwargs)
    except Exception as e:
        logger.warning("Failed to create summarizer LLM: %s", e)
        summary_llm = None

    return ConversationSummarizer(llm=summary_llm, max_summary_tokens=settings.max_summary_tokens)


def create_worldbook(settings: EngineSettings) -> WorldbookStore:
    """PostgreSQL world book if DATABASE_URL is configured, else in-memory."""
    if settings.database_url:
        try:
            from psycopg import Connection
            from psycopg.rows import dict_row

            conn = Connection.connect(
                settings.database_url,
                autocommit=True,
                prepare_threshold=0,
                row_factory=dict_row,
            )
            return PostgresWorldbook(conn, worldbook_name=settings.worldbook_name)
        except Exception as e:
            import warnings
            warnings.warn(
                f"Failed to initialize PostgreSQL world book: {e}. "
                "Falling back to in-memory world book."
            )
    return InMemoryWorldbook()


def build_controller(
    settings: Optional[EngineSettings] = None,
    summarizer=None,
    store: Optional[WorldbookStore] = None,
) -> ContextSyncController:
    """
    Build and initialize a controller.

    Persisted mode and config in the world book win over environment
    defaults; the enable gate only ever comes from ``settings``. If the
    world book cannot be read, the controller starts from the environment
    settings and the error is logged.
    """
    settings = settings or EngineSettings.from_env()
    controller = ContextSyncController(
        calculator=TierCalculator(summarizer or create_summarizer(settings)),
        store=store or create_worldbook(settings),
        config=settings.context_config,
        mode=settings.mode,
        enabled=settings.enabled,
    )
    try:
        controller.initialize()
    except StoreError as e:
        logger.warning("Could not load context settings from world book: %s", e)
    return controller
