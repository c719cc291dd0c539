"""
Notification channels and the per-cycle dispatcher.

Supports:
- Slack webhooks
- Discord webhooks
- Generic JSON webhooks
- Feishu (Lark) bot messages

One poll cycle produces at most one notification per rule: the dispatcher
aggregates the whole MatchBuffer into a single message and sends it once.
There is no retry queue. The buffer is cleared after the attempt whether
it succeeded or not.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import httpx

from ..common.errors import NotificationError
from ..config.settings import settings
from .match_buffer import MatchBuffer
from .types import MatchResult, NotificationTarget, Rule

if TYPE_CHECKING:
    from ..archivist.storage import RuleStore
    from .registry import NotifiedSet

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]


def _escape_slack_markdown(text: str) -> str:
    """Escape Slack markdown characters in user-provided text."""
    if not text:
        return text
    # Backtick first to avoid double-escaping
    for char in ('`', '*', '_', '~'):
        text = text.replace(char, f'\\{char}')
    return text


@dataclass
class NotificationMessage:
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationChannel(ABC):
    """Outbound channel. send() returns True on success and never raises."""

    def __init__(self, client_factory: Optional[ClientFactory] = None, timeout: Optional[float] = None):
        self.timeout = timeout or settings.notification_timeout
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self.timeout))

    name = "base"

    @abstractmethod
    def build_payload(self, title: str, body: str, metadata: Dict[str, Any]) -> dict:
        ...

    async def send(self, target: NotificationTarget, title: str, body: str, metadata: Dict[str, Any]) -> bool:
        payload = self.build_payload(title, body, metadata)
        try:
            async with self._client_factory() as client:
                response = await client.post(target.address, json=payload)
                response.raise_for_status()
                logger.info(f"{self.name} notification sent: {title}")
                return True
        except Exception as e:
            logger.error(f"Failed to send {self.name} notification: {e}")
            return False


class SlackChannel(NotificationChannel):
    name = "slack"

    def build_payload(self, title: str, body: str, metadata: Dict[str, Any]) -> dict:
        text = f"*{_escape_slack_markdown(title)}*\n\n{_escape_slack_markdown(body)}"
        return {
            "text": text,
            "blocks": [
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": text}
                }
            ]
        }


class DiscordChannel(NotificationChannel):
    name = "discord"

    def build_payload(self, title: str, body: str, metadata: Dict[str, Any]) -> dict:
        # Discord uses 'content' instead of 'text'; hard limit of 2000 chars
        content = f"**{title}**\n\n{body}"
        return {"content": content[:2000]}


class WebhookChannel(NotificationChannel):
    name = "webhook"

    def build_payload(self, title: str, body: str, metadata: Dict[str, Any]) -> dict:
        return {"title": title, "body": body, "metadata": metadata}


class FeishuChannel(NotificationChannel):
    """Feishu (Lark) bot message rendered as an interactive card.

    The target address is the receive id (a chat_id by default). The tenant
    access token is fetched with the app credentials and reused until a
    minute before it expires.
    """
    name = "feishu"

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        timeout: Optional[float] = None,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client_factory, timeout)
        self.app_id = app_id if app_id is not None else settings.feishu_app_id
        self.app_secret = app_secret if app_secret is not None else settings.feishu_app_secret
        self.base_url = (base_url or settings.feishu_base_url).rstrip("/")
        self.receive_id_type = settings.feishu_receive_id_type
        self._clock = clock
        self._token = ""
        self._token_expires_at = 0.0

    def build_payload(self, title: str, body: str, metadata: Dict[str, Any]) -> dict:
        elements: List[dict] = [{"tag": "div", "text": {"tag": "lark_md", "content": body}}]
        url = metadata.get("url")
        if url:
            elements.append({
                "tag": "action",
                "actions": [{
                    "tag": "button",
                    "text": {"tag": "plain_text", "content": "View post"},
                    "url": url,
                    "type": "default",
                }],
            })
        return {
            "header": {"title": {"tag": "plain_text", "content": title}},
            "elements": elements,
        }

    async def send(self, target: NotificationTarget, title: str, body: str, metadata: Dict[str, Any]) -> bool:
        if not self.app_id or not self.app_secret:
            logger.error("Feishu credentials not configured, notification not sent")
            return False

        card = self.build_payload(title, body, metadata)
        try:
            async with self._client_factory() as client:
                token = await self._tenant_token(client)
                response = await client.post(
                    f"{self.base_url}/im/v1/messages",
                    params={"receive_id_type": self.receive_id_type},
                    headers={"Authorization": f"Bearer {token}"},
                    json={
                        "receive_id": target.address,
                        "msg_type": "interactive",
                        # Feishu expects the card as a JSON string
                        "content": json.dumps(card, ensure_ascii=False),
                    },
                )
                response.raise_for_status()
                data = response.json()
                if data.get("code", 0) != 0:
                    raise NotificationError("feishu", data.get("code"), data.get("msg", ""))
                logger.info(f"{self.name} notification sent: {title}")
                return True
        except Exception as e:
            logger.error(f"Failed to send {self.name} notification: {e}")
            return False

    async def _tenant_token(self, client: httpx.AsyncClient) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        response = await client.post(
            f"{self.base_url}/auth/v3/tenant_access_token/internal",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        response.raise_for_status()
        data = response.json()
        if data.get("code", 0) != 0:
            raise NotificationError("feishu", data.get("code"), data.get("msg", ""))

        self._token = data["tenant_access_token"]
        # Refresh a minute early
        self._token_expires_at = self._clock() + max(0, int(data.get("expire", 0)) - 60)
        logger.debug("Fetched Feishu tenant access token")
        return self._token


def default_channels(client_factory: Optional[ClientFactory] = None) -> Dict[str, NotificationChannel]:
    return {
        "slack": SlackChannel(client_factory),
        "discord": DiscordChannel(client_factory),
        "webhook": WebhookChannel(client_factory),
        "feishu": FeishuChannel(client_factory),
    }


def build_message(rule: Rule, matches: List[MatchResult]) -> NotificationMessage:
    """One aggregate message for a cycle; the first match is the representative."""
    count = len(matches)
    first = matches[0]
    noun = "match" if count == 1 else "matches"
    title = f"{count} new {noun} for rule {rule.name}"

    excerpt = first.text if len(first.text) <= 280 else first.text[:277] + "..."
    lines = [
        f"Account: @{rule.account}",
        f"Item: {first.item_id}",
        f"Author: {first.author_id or 'unknown'}",
        f"Score: {first.relevance_score:.2f}",
        f"Why: {first.explanation}",
    ]
    if excerpt:
        lines.append(f"> {excerpt}")
    if count > 1:
        lines.append(f"(+{count - 1} more)")

    metadata = {
        "ruleId": rule.id,
        "ruleName": rule.name,
        "matchCount": count,
        "itemIds": [m.item_id for m in matches],
        "itemId": first.item_id,
        "authorId": first.author_id,
        "relevanceScore": first.relevance_score,
        "explanation": first.explanation,
        "url": f"https://x.com/{rule.account.lstrip('@')}/status/{first.item_id}",
    }
    return NotificationMessage(title=title, body="\n".join(lines), metadata=metadata)


class NotificationDispatcher:
    """Turns a rule's MatchBuffer into exactly one notification call."""

    def __init__(
        self,
        notified: "NotifiedSet",
        store: Optional["RuleStore"] = None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
    ):
        self.notified = notified
        self.store = store
        self.channels = channels if channels is not None else default_channels()

    async def dispatch(self, rule: Rule, buffer: MatchBuffer) -> bool:
        """Send one aggregate notification for the buffer, then clear it.

        Returns True only if a notification went out successfully.
        """
        try:
            pending = self._unnotified(buffer.snapshot())
            if not pending:
                logger.info(f"[rule {rule.id}] All buffered matches already notified, nothing to send")
                return False

            target = rule.notification_target
            if target is None:
                logger.warning(f"[rule {rule.id}] No notification target configured, dropping {len(pending)} matches")
                return False

            channel = self.channels.get(target.channel)
            if channel is None:
                logger.error(f"[rule {rule.id}] Unknown notification channel '{target.channel}'")
                return False

            message = build_message(rule, pending)
            try:
                sent = await channel.send(target, message.title, message.body, message.metadata)
            except Exception as e:
                logger.error(f"[rule {rule.id}] Notification channel raised: {e}", exc_info=True)
                sent = False

            if not sent:
                logger.critical(f"[rule {rule.id}] Notification failed, {len(pending)} matches not delivered")
                return False

            item_ids = [m.item_id for m in pending]
            self.notified.add_many(item_ids)
            await self._mark_notified(rule.id, item_ids)
            return True
        finally:
            buffer.clear()

    def _unnotified(self, matches: List[MatchResult]) -> List[MatchResult]:
        seen = set()
        pending = []
        for match in matches:
            if match.item_id in seen or self.notified.contains(match.item_id):
                continue
            seen.add(match.item_id)
            pending.append(match)
        return pending

    async def _mark_notified(self, rule_id: str, item_ids: List[str]) -> None:
        if self.store is None:
            return
        try:
            await self.store.mark_notified(rule_id, item_ids)
        except Exception as e:
            logger.error(f"[rule {rule_id}] Failed to persist notified items: {e}")
