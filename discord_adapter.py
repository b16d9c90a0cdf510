import asyncio
import os
import resource
import sys
import time
from typing import Any, Dict, List, Optional, Sequence

import discord

from arete_core import (
    ActionResult,
    CostLedger,
    EngagementPipeline,
    IncomingMessage,
    OpenAIModelClient,
    PlanGenerator,
    RuntimeConfig,
)
from arete_core.audit import build_logger
from arete_core.llm import ModelClient, compose_reply
from arete_core.messages import to_chat_messages
from arete_core.plan import ImagePlan, IgnorePlan, MessagePlan, Plan, ReactPlan

DISCORD_MESSAGE_LIMIT = 2000
_EMOJI_CONTINUATIONS = {"\u200d", "\ufe0f", "\u20e3"}


def chunk_text(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """Split on line boundaries where possible so each chunk fits one Discord message."""
    chunks: List[str] = []
    remaining = text.strip()
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = remaining.rfind(" ", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def split_emoji(reaction: str) -> List[str]:
    """Group a run of emoji into individual reactions (ZWJ sequences and modifiers stay whole)."""
    clusters: List[str] = []
    for ch in "".join(reaction.split()):
        joined = clusters and clusters[-1].endswith("\u200d")
        modifier = ch in _EMOJI_CONTINUATIONS or 0x1F3FB <= ord(ch) <= 0x1F3FF
        if clusters and (joined or modifier):
            clusters[-1] += ch
        else:
            clusters.append(ch)
    return clusters


def to_incoming(message: discord.Message, agent_id: Optional[int]) -> IncomingMessage:
    reply_to_message_id = None
    reply_to_author_id = None
    reply_same_channel = True
    reference = message.reference
    if reference is not None and reference.message_id is not None:
        reply_to_message_id = str(reference.message_id)
        reply_same_channel = reference.channel_id == message.channel.id
        resolved = reference.resolved
        if isinstance(resolved, discord.Message):
            reply_to_author_id = str(resolved.author.id)
    return IncomingMessage(
        message_id=str(message.id),
        channel_id=str(message.channel.id),
        guild_id=str(message.guild.id) if message.guild else None,
        author_id=str(message.author.id),
        author_name=message.author.display_name,
        author_is_bot=message.author.bot,
        content=message.content or "",
        mentions_agent=agent_id is not None and any(m.id == agent_id for m in message.mentions),
        reply_to_message_id=reply_to_message_id,
        reply_to_author_id=reply_to_author_id,
        reply_same_channel=reply_same_channel,
        is_thread=isinstance(message.channel, discord.Thread),
        has_attachments=bool(message.attachments),
        created_at=message.created_at.timestamp(),
    )


class DiscordTransport:
    """Chat transport over a discord.Client; resolves IncomingMessage ids back to live messages."""

    def __init__(self, client: "AreteClient"):
        self.client = client
        self._live: Dict[str, discord.Message] = {}

    def remember(self, message: discord.Message) -> None:
        self._live[str(message.id)] = message

    def forget(self, message_id: str) -> None:
        self._live.pop(message_id, None)

    async def _get_channel(self, channel_id: int) -> Optional[Any]:
        channel = self.client.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(channel_id)
            except discord.DiscordException as exc:
                print(f"[ACTION-ERROR] fetch_channel failed for {channel_id}: {exc}", flush=True)
                return None
        return channel

    async def resolve(self, message: IncomingMessage) -> discord.Message:
        live = self._live.get(message.message_id)
        if live is not None:
            return live
        channel = await self._get_channel(int(message.channel_id))
        if channel is None:
            raise LookupError(f"channel {message.channel_id} not found")
        return await channel.fetch_message(int(message.message_id))

    async def fetch_recent(self, message: IncomingMessage, limit: int) -> Sequence[IncomingMessage]:
        source = await self.resolve(message)
        agent_id = self.client.user.id if self.client.user else None
        history = [m async for m in source.channel.history(limit=limit, before=source)]
        return [to_incoming(m, agent_id) for m in history]

    async def react(self, message: IncomingMessage, emoji: str) -> None:
        source = await self.resolve(message)
        await source.add_reaction(emoji)

    async def reply(self, message: IncomingMessage, text: str, tts: bool = False) -> None:
        source = await self.resolve(message)
        for index, chunk in enumerate(chunk_text(text)):
            if index == 0:
                await source.reply(chunk, tts=tts, mention_author=False)
            else:
                await source.channel.send(chunk, tts=tts)


class DiscordPlanExecutor:
    """
    Dispatches validated plans. Message text is written by the reply model;
    image plans have no renderer here and fall back to a text answer.
    """

    def __init__(self, transport: DiscordTransport, model_client: ModelClient, config: RuntimeConfig):
        self.transport = transport
        self.model_client = model_client
        self.config = config

    async def execute(self, message: IncomingMessage, plan: Plan, direct: bool) -> ActionResult:
        if plan.presence is not None:
            await self._apply_presence(plan)

        if isinstance(plan, IgnorePlan):
            return ActionResult(action="ignore", success=True, detail="Ignored")

        if isinstance(plan, ReactPlan):
            added = 0
            for emoji in split_emoji(plan.reaction):
                try:
                    await self.transport.react(message, emoji)
                    added += 1
                except discord.HTTPException as exc:
                    print(f"[ACTION-ERROR] react {emoji!r}: {exc}", flush=True)
            return ActionResult(action="react", success=added > 0, detail=f"Added {added} reaction(s)")

        extra_instructions = None
        if isinstance(plan, ImagePlan):
            extra_instructions = (
                "Image generation is unavailable right now. Briefly describe what you would draw for: "
                f"{plan.image_request.prompt}"
            )
        elif not isinstance(plan, MessagePlan):
            return ActionResult(action=plan.action, success=False, detail="Unsupported plan")

        text = await self._compose(message, plan, extra_instructions)
        await self.transport.reply(message, text, tts=plan.modality == "tts")
        return ActionResult(action=plan.action, success=True, detail="Reply sent")

    async def _compose(self, message: IncomingMessage, plan: Plan, extra_instructions: Optional[str]) -> str:
        try:
            recent = await self.transport.fetch_recent(message, self.config.recent_message_window)
        except (discord.DiscordException, LookupError):
            recent = ()
        agent_id = str(self.transport.client.user.id) if self.transport.client.user else None
        context = to_chat_messages(recent, message, agent_id)
        if extra_instructions:
            context.append({"role": "system", "content": extra_instructions})
        agent_name = self.transport.client.user.display_name if self.transport.client.user else ""
        return await compose_reply(
            self.model_client,
            self.config.reply_model,
            context,
            agent_name=agent_name,
            verbosity=plan.openai_options.verbosity,
            reasoning_effort=plan.openai_options.reasoning_effort,
        )

    async def _apply_presence(self, plan: Plan) -> None:
        presence = plan.presence
        activity = None
        if presence.activities:
            first = presence.activities[0]
            if first.type == 4:
                activity = discord.CustomActivity(name=first.state or first.name)
            elif first.type == 1 and first.url:
                activity = discord.Streaming(name=first.name, url=first.url)
            else:
                activity = discord.Activity(type=discord.ActivityType(first.type), name=first.name, state=first.state)
        try:
            await self.transport.client.change_presence(status=discord.Status(presence.status), activity=activity)
        except (discord.DiscordException, ValueError) as exc:
            print(f"[ACTION-ERROR] presence update: {exc}", flush=True)


class AreteClient(discord.Client):
    def __init__(self, config: RuntimeConfig, model_client: ModelClient):
        intents = discord.Intents.none()
        intents.guilds = True
        intents.messages = True
        intents.message_content = True
        intents.dm_messages = True
        super().__init__(
            intents=intents,
            max_messages=200,
            member_cache_flags=discord.MemberCacheFlags.none(),
            chunk_guilds_at_startup=False,
        )
        self.config = config
        self.model_client = model_client
        self.transport = DiscordTransport(self)
        self.executor = DiscordPlanExecutor(self.transport, model_client, config)
        self.pipeline: Optional[EngagementPipeline] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    def attach(self, pipeline: EngagementPipeline) -> None:
        self.pipeline = pipeline

    async def setup_hook(self) -> None:
        if self.pipeline is not None:
            self._maintenance_task = asyncio.create_task(self.pipeline.run_maintenance(), name="arete_maintenance")
            self._maintenance_task.add_done_callback(_log_task_failure)

    async def close(self) -> None:
        try:
            if self._maintenance_task is not None:
                self._maintenance_task.cancel()
            await super().close()
        finally:
            close = getattr(self.model_client, "close", None)
            if close is not None:
                close()

    async def on_ready(self) -> None:
        if self.pipeline is not None and self.user is not None:
            self.pipeline.set_identity(str(self.user.id), self.user.display_name)
        mem_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
        llm_state = "n/a"
        breaker = getattr(self.model_client, "breaker", None)
        if breaker is not None:
            tripped, reason = breaker.status()
            llm_state = f"open ({reason})" if tripped else "closed"
        print(
            f"[READY] Arete online as {self.user} | guilds={len(self.guilds)} mem={mem_mb:.1f} MB llm={llm_state}",
            flush=True,
        )

    async def on_message(self, message: discord.Message) -> None:
        if self.pipeline is None:
            return
        incoming = to_incoming(message, self.user.id if self.user else None)
        self.transport.remember(message)
        task = asyncio.create_task(self._handle(incoming), name=f"engage:{incoming.message_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)

    async def _handle(self, incoming: IncomingMessage) -> None:
        started = time.monotonic()
        try:
            result = await self.pipeline.handle(incoming)
        finally:
            self.transport.forget(incoming.message_id)
        if result.outcome in {"executed", "failed"}:
            print(
                f"[ENGAGE] {incoming.channel_key} trigger={result.trigger} outcome={result.outcome} "
                f"took={time.monotonic() - started:.2f}s",
                flush=True,
            )


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        print(f"[TASK-ERROR] {task.get_name()}: {exc}", file=sys.stderr, flush=True)


async def main() -> None:
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable required.")

    config = RuntimeConfig.from_env()
    model_client = OpenAIModelClient(timeout_seconds=config.llm_timeout_seconds)
    costs = CostLedger()
    planner = PlanGenerator(model_client, config, costs=costs)
    client = AreteClient(config, model_client)
    pipeline = EngagementPipeline(
        config,
        planner,
        transport=client.transport,
        executor=client.executor,
        costs=costs,
        audit_logger=build_logger(config),
    )
    client.attach(pipeline)
    async with client:
        await client.start(token)


if __name__ == "__main__":
    asyncio.run(main())
