"""Free chat with a global character, and learning from it."""

from __future__ import annotations

import logging

from skena.generation import ChatReply, GenerationClient
from skena.models import ChatMessage, ChatSession, GlobalCharacter, Language, now_ms
from skena.storage.library import Library

logger = logging.getLogger(__name__)


class CompanionChat:
    """One owner's ongoing chat with one GlobalCharacter.

    The session is loaded from (or created in) the ``chats`` partition and
    written back after every exchange.
    """

    def __init__(
        self,
        owner_id: str,
        character: GlobalCharacter,
        library: Library,
        client: GenerationClient,
        language: Language | None = None,
    ) -> None:
        if character.owner_id != owner_id:
            raise ValueError(f"Character {character.id} is owned by {character.owner_id!r}")
        self.owner_id = owner_id
        self.character = character
        self.library = library
        self.client = client
        self.language = language
        self.session = library.get_chat_session(owner_id, character.id) or ChatSession(
            character_id=character.id, user_id=owner_id,
        )

    @property
    def messages(self) -> list[ChatMessage]:
        return self.session.messages

    def _save(self) -> None:
        self.session.last_updated = now_ms()
        self.library.save_chat_session(self.session)

    async def send(self, text: str) -> ChatMessage | None:
        """Send a user line and return the character's reply. Blank text is ignored."""
        text = text.strip()
        if not text:
            return None
        history = list(self.session.messages)
        self.session.messages.append(ChatMessage(role="user", content=text))
        self._save()

        reply: ChatReply = await self.client.chat_with_character(
            self.character, history, text, lang=self.language,
        )
        message = ChatMessage(
            role="model",
            content=reply.text,
            media_url=reply.media_url,
            media_type=reply.media_type,
        )
        self.session.messages.append(message)
        self._save()
        return message

    async def evolve(self) -> GlobalCharacter:
        """Fold the chat into the character: refined personality, style and a new memory."""
        if not self.session.messages:
            return self.character
        evolution = await self.client.evolve_character(self.character, self.session.messages)
        character = self.character
        if evolution.personality:
            character.personality = evolution.personality
        if evolution.speaking_style:
            character.speaking_style = evolution.speaking_style
        if evolution.memory:
            character.memories.append(evolution.memory)
            logger.info("%s remembers: %s", character.name, evolution.memory)

        characters = self.library.characters(self.owner_id)
        characters.upsert(character)
        characters.save()
        return character
