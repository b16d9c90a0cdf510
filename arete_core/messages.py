import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

DM_SENTINEL = "DM"


def channel_key_for(guild_id: Optional[str], channel_id: str) -> str:
    """
    Composite key scoping all per-channel state. DMs share a sentinel guild so
    they never collide with guild channels.
    """
    return f"{guild_id or DM_SENTINEL}:{channel_id}"


@dataclass(frozen=True)
class IncomingMessage:
    """
    Transport-neutral view of a chat message. The adapter layer builds these
    from discord.py objects; the core never touches the transport directly.
    """

    message_id: str
    channel_id: str
    guild_id: Optional[str]
    author_id: str
    author_name: str = ""
    author_is_bot: bool = False
    content: str = ""
    mentions_agent: bool = False
    reply_to_message_id: Optional[str] = None
    reply_to_author_id: Optional[str] = None
    reply_same_channel: bool = True
    is_thread: bool = False
    has_attachments: bool = False
    created_at: float = field(default_factory=lambda: time.time())

    @property
    def channel_key(self) -> str:
        return channel_key_for(self.guild_id, self.channel_id)

    @property
    def is_dm(self) -> bool:
        return self.guild_id is None


@dataclass(frozen=True)
class ChannelMetrics:
    total_messages: int = 0
    bot_messages: int = 0
    human_messages: int = 0
    last_activity: float = 0.0
    last_engagement_score: float = 0.0


@dataclass(frozen=True)
class CostTotals:
    total_cost_usd: float = 0.0
    total_calls: int = 0


@dataclass(frozen=True)
class EngagementContext:
    message: IncomingMessage
    channel_key: str
    recent_messages: Sequence[IncomingMessage] = ()
    channel_metrics: Optional[ChannelMetrics] = None
    cost_totals: Optional[CostTotals] = None
    agent_id: Optional[str] = None
    agent_name: str = ""


def to_chat_messages(
    recent: Sequence[IncomingMessage], current: IncomingMessage, agent_id: Optional[str]
) -> List[dict]:
    """
    Render the bounded window plus the triggering message as model chat turns,
    oldest first. Messages authored by the agent become assistant turns.
    """
    ordered = sorted([m for m in recent if m.message_id != current.message_id], key=lambda m: m.created_at)
    ordered.append(current)
    rendered: List[dict] = []
    for msg in ordered:
        if agent_id is not None and msg.author_id == agent_id:
            rendered.append({"role": "assistant", "content": msg.content})
        else:
            label = msg.author_name or msg.author_id
            rendered.append({"role": "user", "content": f"{label}: {msg.content}"})
    return rendered
