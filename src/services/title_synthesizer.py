"""Background conversation title synthesis.

Runs once per conversation, after the first assistant response is
saved. Picks a fast, cheap model the user can call, asks it for a short
title based on the first user message and writes it back only while the
conversation still carries the default title. Best-effort: every
failure is logged and swallowed.
"""

import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractContextManager

from sqlalchemy.orm import Session

from src.config import KeplerConfig, get_config
from src.db.connection import get_db_context
from src.db.models import MessageRole
from src.providers.base import ProviderAdapter
from src.providers.config import ChatMessage, CompletionParams
from src.providers.registry import build_adapter
from src.services.conversation_persistence_service import ConversationPersistenceService
from src.services.credential_service import CredentialService
from src.services.model_catalog import ModelCatalog, ModelDescriptor, Vendor

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255

TITLE_PROMPT = """Based on this message:
\"\"\"{message}\"\"\"

Generate a short title (4-5 words) that names the topic of the message.
Return only the title, nothing else. Do not answer or react to the message."""


def select_title_model(
    catalog: ModelCatalog, vendors: Iterable[Vendor], preferences: list[str]
) -> ModelDescriptor | None:
    """Choose the model used for title synthesis.

    Preferences are matched as substrings against the ids of models
    whose vendor the user can call, in order. Falls back to the cheapest
    available model by input rate.
    """
    available = catalog.available_for(vendors)
    if not available:
        return None
    for preference in preferences:
        for model in available:
            if preference in model.id:
                return model
    return min(available, key=lambda m: (m.input_cost_per_1k, m.output_cost_per_1k))


def clean_title(raw: str) -> str:
    """Strip whitespace and one layer of surrounding quotes, then truncate."""
    title = (raw or "").strip()
    if len(title) >= 2 and title[0] == title[-1] and title[0] in "\"'":
        title = title[1:-1].strip()
    else:
        title = title.strip("\"'").strip()
    return title[:MAX_TITLE_LENGTH]


class TitleSynthesizer:
    """Generates a conversation title with a lightweight model call.

    Args:
        db_context: Factory for a short-lived session context manager.
        adapter_factory: (vendor, api_key) -> ProviderAdapter.
        credentials_factory: Session -> CredentialService.
        catalog: Built-in model catalog (custom models are layered per user).
        config: Application config; title settings are read from it.
    """

    def __init__(
        self,
        db_context: Callable[[], AbstractContextManager[Session]] = get_db_context,
        adapter_factory: Callable[[Vendor, str], ProviderAdapter] = build_adapter,
        credentials_factory: Callable[[Session], CredentialService] = CredentialService,
        catalog: ModelCatalog | None = None,
        config: KeplerConfig | None = None,
    ) -> None:
        self._db_context = db_context
        self._adapter_factory = adapter_factory
        self._credentials_factory = credentials_factory
        self._catalog = catalog or ModelCatalog()
        self._config = config or get_config()

    async def synthesize(self, user_id: str, conversation_id: str) -> str | None:
        """Generate and store a title. Never raises.

        Returns:
            The written title, or None when nothing was written.
        """
        try:
            return await self._synthesize(user_id, conversation_id)
        except Exception as e:
            logger.warning("Title generation failed for conversation %s: %s", conversation_id, e)
            return None

    async def _synthesize(self, user_id: str, conversation_id: str) -> str | None:
        default_title = self._config.title.default_title

        with self._db_context() as db:
            svc = ConversationPersistenceService(db)
            conversation = svc.get_conversation(conversation_id, user_id)
            if conversation is None or conversation.title != default_title:
                logger.debug("Title generation skipped for %s: custom title", conversation_id)
                return None
            first_user = next(
                (m for m in svc.get_messages(conversation_id) if m.role == MessageRole.user.value),
                None,
            )
            if first_user is None or not first_user.content.strip():
                return None
            user_text = first_user.content

            credentials = self._credentials_factory(db)
            vendors = credentials.available_vendors(user_id)
            catalog = credentials.build_catalog(user_id, self._catalog)
            model = select_title_model(catalog, vendors, self._config.title.model_preferences)
            if model is None:
                logger.info("Title generation: no suitable model for user %s", user_id)
                return None
            api_key = credentials.get_secret(user_id, model.vendor)

        adapter = self._adapter_factory(model.vendor, api_key)
        completion = await adapter.generate_completion(
            model.id,
            [ChatMessage(role="user", content=TITLE_PROMPT.format(message=user_text))],
            CompletionParams(
                temperature=self._config.title.temperature,
                max_tokens=self._config.title.max_tokens,
            ),
        )
        title = clean_title(completion.text)
        if not title:
            logger.info("Title generation: empty title from %s", model.id)
            return None

        with self._db_context() as db:
            written = ConversationPersistenceService(db).update_title_if_default(
                conversation_id, title, default_title
            )
        if not written:
            logger.debug("Title for %s changed meanwhile; keeping it", conversation_id)
            return None
        logger.info("Generated title for conversation %s: %s", conversation_id, title)
        return title
