"""
Discord side of the sync: a small gateway over discord.py.

Handlers talk to Discord only through DiscordGateway and only see the
platform-neutral models, which keeps them testable without a bot.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import discord

from .errors import CounterpartMissingError, ForumSyncError
from .helpers import MESSAGE_LIMIT, THREAD_NAME_LIMIT, truncate
from .models import ChatAttachment, ChatMessage, ChatThread, ForumTag

log = logging.getLogger("red.forum_sync.discord")

RELAY_WEBHOOK_NAME = "forum-sync relay"
MAX_APPLIED_TAGS = 5


def chat_message_from_discord(message: discord.Message) -> ChatMessage:
    channel = message.channel
    author = message.author
    return ChatMessage(
        id=message.id,
        channel_id=channel.id,
        parent_id=getattr(channel, "parent_id", None),
        guild_id=message.guild.id if message.guild else None,
        content=message.content,
        author_id=author.id,
        author_name=author.display_name,
        author_avatar_url=author.display_avatar.url if author.display_avatar else None,
        author_is_bot=author.bot,
        webhook_id=message.webhook_id,
        attachments=[ChatAttachment(a.url, a.filename, a.content_type) for a in message.attachments],
    )


def chat_thread_from_discord(thread: discord.Thread) -> ChatThread:
    return ChatThread(
        id=thread.id,
        parent_id=thread.parent_id,
        name=thread.name,
        archived=thread.archived,
        locked=thread.locked,
        applied_tag_ids=[tag.id for tag in getattr(thread, "applied_tags", [])],
    )


def forum_tags_from_discord(forum: discord.ForumChannel) -> List[ForumTag]:
    return [ForumTag(id=tag.id, name=tag.name) for tag in forum.available_tags]


class DiscordGateway:
    def __init__(self, bot: Any) -> None:
        self.bot = bot
        self._relay_webhooks: Dict[int, discord.Webhook] = {}

    async def _channel(self, channel_id: int) -> Any:
        channel = self.bot.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.bot.fetch_channel(channel_id)
        except discord.NotFound as e:
            raise CounterpartMissingError(f"Channel {channel_id} not found") from e

    async def _thread(self, thread_id: int) -> discord.Thread:
        channel = await self._channel(thread_id)
        if not isinstance(channel, discord.Thread):
            raise ForumSyncError(f"Channel {thread_id} is not a thread")
        return channel

    async def _forum(self, forum_id: int) -> discord.ForumChannel:
        channel = await self._channel(forum_id)
        if not isinstance(channel, discord.ForumChannel):
            raise ForumSyncError(f"Channel {forum_id} is not a forum channel")
        return channel

    # ----------------------
    # Threads
    # ----------------------
    async def create_thread(self, forum_id: int, name: str, content: str, tag_ids: List[int]) -> ChatThread:
        forum = await self._forum(forum_id)
        tags = [tag for tag in (forum.get_tag(tag_id) for tag_id in tag_ids) if tag is not None]
        if len(tags) > MAX_APPLIED_TAGS:
            log.warning("Discord 5-tag limit: dropped %d tag(s) on new thread %r", len(tags) - MAX_APPLIED_TAGS, name)
            tags = tags[:MAX_APPLIED_TAGS]
        created = await forum.create_thread(
            name=truncate(name, THREAD_NAME_LIMIT),
            content=truncate(content, MESSAGE_LIMIT),
            applied_tags=tags,
        )
        return chat_thread_from_discord(created.thread)

    async def get_thread_state(self, thread_id: int) -> ChatThread:
        return chat_thread_from_discord(await self._thread(thread_id))

    async def set_archived(self, thread_id: int, archived: bool) -> None:
        thread = await self._thread(thread_id)
        if thread.archived != archived:
            await thread.edit(archived=archived)

    async def set_locked(self, thread_id: int, locked: bool) -> None:
        thread = await self._thread(thread_id)
        if thread.locked != locked:
            await thread.edit(locked=locked)

    async def rename_thread(self, thread_id: int, name: str, *, unarchive: bool = False) -> None:
        """Discord rejects edits to an archived thread unless they also unarchive it."""
        thread = await self._thread(thread_id)
        if unarchive:
            await thread.edit(name=truncate(name, THREAD_NAME_LIMIT), archived=False)
        else:
            await thread.edit(name=truncate(name, THREAD_NAME_LIMIT))

    async def set_tags(self, thread_id: int, tag_ids: List[int]) -> None:
        thread = await self._thread(thread_id)
        forum = thread.parent
        if not isinstance(forum, discord.ForumChannel):
            raise ForumSyncError(f"Thread {thread_id} is not in a forum channel")
        tags = [tag for tag in (forum.get_tag(tag_id) for tag_id in tag_ids) if tag is not None]
        await thread.edit(applied_tags=tags[:MAX_APPLIED_TAGS])

    async def delete_thread(self, thread_id: int) -> None:
        thread = await self._thread(thread_id)
        try:
            await thread.delete()
        except discord.NotFound as e:
            raise CounterpartMissingError(f"Thread {thread_id} already deleted") from e

    async def fetch_available_tags(self, forum_id: int) -> List[ForumTag]:
        return forum_tags_from_discord(await self._forum(forum_id))

    # ----------------------
    # Messages
    # ----------------------
    async def post_message(
        self,
        thread_id: int,
        content: str,
        *,
        username: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> int:
        """
        Post into a thread and return the message id.

        With ``username`` the message is sent through the forum's relay webhook
        so it shows the GitHub author's name and avatar.
        """
        thread = await self._thread(thread_id)
        content = truncate(content, MESSAGE_LIMIT)
        if username is None:
            message = await thread.send(content)
            return message.id

        webhook = await self._relay_webhook(thread.parent_id)
        try:
            message = await webhook.send(
                content,
                username=truncate(username, 80),
                avatar_url=avatar_url,
                thread=thread,
                wait=True,
            )
        except discord.NotFound:
            # Webhook was deleted from under us
            self._relay_webhooks.pop(thread.parent_id, None)
            webhook = await self._relay_webhook(thread.parent_id)
            message = await webhook.send(
                content, username=truncate(username, 80), avatar_url=avatar_url, thread=thread, wait=True
            )
        return message.id

    async def delete_message(self, thread_id: int, message_id: int) -> None:
        thread = await self._thread(thread_id)
        try:
            await thread.get_partial_message(message_id).delete()
        except discord.NotFound as e:
            raise CounterpartMissingError(f"Message {message_id} already deleted") from e

    async def _relay_webhook(self, forum_id: int) -> discord.Webhook:
        webhook = self._relay_webhooks.get(forum_id)
        if webhook is not None:
            return webhook
        forum = await self._forum(forum_id)
        for existing in await forum.webhooks():
            if existing.name == RELAY_WEBHOOK_NAME and existing.user and existing.user.id == self.bot.user.id:
                webhook = existing
                break
        else:
            webhook = await forum.create_webhook(name=RELAY_WEBHOOK_NAME, reason="Relay GitHub comments")
            log.info("Created relay webhook for forum %s", forum_id)
        self._relay_webhooks[forum_id] = webhook
        return webhook

    # ----------------------
    # Channels
    # ----------------------
    async def create_forum_channel(
        self, guild_id: int, name: str, *, category_id: Optional[int] = None, topic: Optional[str] = None
    ) -> int:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise ForumSyncError(f"Guild {guild_id} not found")
        category = guild.get_channel(category_id) if category_id else None
        if category_id and not isinstance(category, discord.CategoryChannel):
            raise ForumSyncError(f"Category {category_id} not found")
        forum = await guild.create_forum(name=name, category=category, topic=topic, reason="forumsync watch")
        log.info("Created forum channel %s (%s) in guild %s", forum.name, forum.id, guild_id)
        return forum.id

    async def delete_channel(self, channel_id: int) -> None:
        channel = await self._channel(channel_id)
        await channel.delete(reason="forumsync unwatch")
        self._relay_webhooks.pop(channel_id, None)
