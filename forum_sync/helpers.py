from __future__ import annotations

import re
from typing import Iterable, List, Optional, Tuple

from .models import ChatAttachment, ChatMessage, ForumTag

BOT_MARKER = "`BOT`"

DISCORD_MESSAGE_LINK_RE = re.compile(r"https://discord\.com/channels/\d+/(\d+)/(\d+)")

# Discord limits
THREAD_NAME_LIMIT = 100
MESSAGE_LIMIT = 2000


def map_github_labels_to_tag_ids(available_tags: Iterable[ForumTag], labels: Iterable[str]) -> List[int]:
    name_to_id = {tag.name: tag.id for tag in available_tags}
    return [name_to_id[label] for label in labels if label in name_to_id]


def map_tag_ids_to_github_labels(available_tags: Iterable[ForumTag], tag_ids: Iterable[int]) -> List[str]:
    names = {tag.id: tag.name for tag in available_tags}
    result: List[str] = []
    for tag_id in tag_ids:
        name = names.get(tag_id)
        if name:
            result.append(name)
    return result


def has_bot_marker(body: Optional[str]) -> bool:
    return bool(body) and BOT_MARKER in body


def extract_discord_link(body: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Return ``(thread_id, message_id)`` from the first Discord message link in ``body``."""
    if not body:
        return None, None
    m = DISCORD_MESSAGE_LINK_RE.search(body)
    if not m:
        return None, None
    return int(m.group(1)), int(m.group(2))


def avatar_url_for(message: ChatMessage) -> str:
    if message.author_avatar_url:
        return message.author_avatar_url
    return f"https://cdn.discordapp.com/embed/avatars/{message.author_id % 5}.png"


def format_attachments(attachments: Iterable[ChatAttachment]) -> str:
    markdown = ""
    for attachment in attachments:
        if attachment.content_type and attachment.content_type.startswith("image/"):
            markdown += f'![{attachment.filename}]({attachment.url} "{attachment.filename}")\n'
        else:
            markdown += f"[{attachment.filename}]({attachment.url})\n"
    return markdown


def format_issue_body(message: ChatMessage) -> str:
    """
    Render a Discord message as a GitHub issue or comment body.

    The header links back to the message, which is how correlations are
    rebuilt on startup, and carries the bot marker so the comment webhook
    for it is not relayed back into Discord.
    """
    name = message.author_name
    link = message.jump_url
    header = f"<kbd>[![{name}]({avatar_url_for(message)})]({link})</kbd> [{name}]({link})  {BOT_MARKER}\n\n"
    return header + f"{message.content}\n" + format_attachments(message.attachments)


def format_thread_starter(body: Optional[str], login: str, html_url: Optional[str] = None) -> str:
    """Starter message for a thread opened from a GitHub issue."""
    text = (body or "").strip() or "*No description provided*"
    footer = f"_Created by: {login}_"
    if html_url:
        footer += f" ({html_url})"
    return truncate(text, MESSAGE_LIMIT - len(footer) - 2) + "\n\n" + footer


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."
