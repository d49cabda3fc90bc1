import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Tuple

from .actions import ActionInterpreter
from .artifacts import ArtifactEncoder, ArtifactGenerator, DescriptionEncoder
from .cancellation import CancelToken, TurnCancelled
from .classifier import RequestClassifier, build_contents
from .config import AppSettings
from .dispatcher import ToolDispatcher
from .events import EventBus
from .locales import Translator
from .mutator import (
    add_version,
    clear_in_flight,
    evolve,
    fork_conversation,
    history_through_last_user,
    make_message,
    message_index,
    replace_messages,
    select_version,
    update_message,
)
from .schemas import (
    AnalysisStep,
    Conversation,
    InlineData,
    Message,
    RecentAttachment,
    TextAttachment,
    Verdict,
)
from .strategy import PlannerContext, StrategyPlanner
from .tools import UiBridge, WeatherService, YouTubeSearch
from .workspace import Workspace

logger = logging.getLogger("uvicorn.error")

API_KEY_RE = re.compile(r"api[_ ]?key", re.IGNORECASE)
NETWORK_RE = re.compile(r"network|fetch", re.IGNORECASE)
TITLE_CHARS = 30
SHUTDOWN_GRACE_S = 2.0


class TurnBusyError(RuntimeError):
    pass


class TaskRegistry:
    """Running turn tasks and spawned artifact tasks, keyed so they can be stopped and awaited.

    A conversation can hold several live tokens at once: a finished turn whose video is still
    polling keeps its token until the artifact task ends, alongside the token of a newer turn.
    """

    def __init__(self, shutdown_grace_s: float = SHUTDOWN_GRACE_S):
        self.turn_tasks: Dict[str, asyncio.Task] = {}
        self.cancel_tokens: Dict[str, List[CancelToken]] = {}
        self.artifact_tasks: Set[asyncio.Task] = set()
        self.shutdown_grace_s = shutdown_grace_s
        self._holds: Dict[CancelToken, int] = {}

    def is_busy(self, conversation_id: str) -> bool:
        task = self.turn_tasks.get(conversation_id)
        return task is not None and not task.done()

    def tokens_for(self, conversation_id: str) -> List[CancelToken]:
        return list(self.cancel_tokens.get(conversation_id, []))

    def _hold(self, conversation_id: str, token: CancelToken, task: asyncio.Task) -> None:
        tokens = self.cancel_tokens.setdefault(conversation_id, [])
        if token not in tokens:
            tokens.append(token)
        self._holds[token] = self._holds.get(token, 0) + 1
        task.add_done_callback(lambda _task: self._release(conversation_id, token))

    def _release(self, conversation_id: str, token: CancelToken) -> None:
        remaining = self._holds.get(token, 1) - 1
        if remaining > 0:
            self._holds[token] = remaining
            return
        self._holds.pop(token, None)
        tokens = self.cancel_tokens.get(conversation_id, [])
        if token in tokens:
            tokens.remove(token)
        if not tokens:
            self.cancel_tokens.pop(conversation_id, None)

    def start_turn(self, conversation_id: str, token: CancelToken, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.turn_tasks[conversation_id] = task
        self._hold(conversation_id, token, task)
        return task

    def spawn_artifact(self, coro: Coroutine[Any, Any, None], conversation_id: str, token: CancelToken) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.artifact_tasks.add(task)
        task.add_done_callback(self.artifact_tasks.discard)
        self._hold(conversation_id, token, task)
        return task

    def pending(self) -> List[asyncio.Task]:
        running = [task for task in self.turn_tasks.values() if not task.done()]
        running.extend(task for task in self.artifact_tasks if not task.done())
        return running

    async def drain(self) -> None:
        # Turns spawn artifact tasks, so keep waiting until nothing new appears.
        while True:
            running = self.pending()
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def shutdown(self) -> None:
        # Tasks still inside a backend call after the grace period are cancelled outright.
        for tokens in list(self.cancel_tokens.values()):
            for token in tokens:
                token.cancel("shutdown")
        running = self.pending()
        if not running:
            return
        _, stuck = await asyncio.wait(running, timeout=self.shutdown_grace_s)
        for task in stuck:
            task.cancel()
        if stuck:
            await asyncio.gather(*stuck, return_exceptions=True)


@dataclass
class TurnContext:
    settings: AppSettings
    generation: Any
    t: Translator
    workspace: Workspace
    bus: EventBus
    ui: UiBridge
    encoder: ArtifactEncoder = field(default_factory=DescriptionEncoder)
    weather: WeatherService = field(default_factory=WeatherService)
    youtube: Optional[YouTubeSearch] = None
    tasks: TaskRegistry = field(default_factory=TaskRegistry)
    clock: Callable[[], datetime] = lambda: datetime.now().astimezone()
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self):
        if self.youtube is None:
            self.youtube = YouTubeSearch(self.settings.artifacts.tool_latency_s)


def classify_error(exc: BaseException, t: Translator) -> str:
    details = str(exc) or exc.__class__.__name__
    if API_KEY_RE.search(details):
        return t("api_key_error")
    if NETWORK_RE.search(details):
        return t("network_error")
    return t("unexpected_error", details)


def _complete(step: AnalysisStep) -> AnalysisStep:
    return step.model_copy(update={"status": "completed"})


def agent_pool(verdict: Verdict, t: Translator) -> List[AnalysisStep]:
    pool: List[AnalysisStep] = []
    pending = t("agent_task_pending")
    if verdict.intent in ("information_retrieval", "data_analysis") or verdict.domain == "research":
        pool.append(AnalysisStep(id="a1", type="agent", title=t("agent_deep_search"), icon="search", details=pending))
    if verdict.intent == "code_development" or verdict.domain == "technical":
        pool.append(AnalysisStep(id="a2", type="agent", title=t("agent_code_interpreter"), icon="code", details=pending))
    if verdict.domain == "spreadsheet":
        pool.append(
            AnalysisStep(id="a4", type="agent", title=t("agent_spreadsheet_specialist"), icon="sheet", details=pending)
        )
    if verdict.intent == "creative_ideation" or verdict.domain == "creative" or not pool:
        pool.append(
            AnalysisStep(id="a3", type="agent", title=t("agent_creative_suite"), icon="wand-sparkles", details=pending)
        )
    return pool


AGENT_TASKS = {
    "a1": "agent_task_searching",
    "a2": "agent_task_coding",
    "a3": "agent_task_creative_writing",
    "a4": "agent_task_spreadsheet",
}


class TurnController:
    """Runs assistant turns and the conversation operations that start them."""

    def __init__(self, ctx: TurnContext):
        self.ctx = ctx
        settings = ctx.settings
        self.classifier = RequestClassifier(ctx.generation, settings.models.classifier)
        self.planner = StrategyPlanner(settings, ctx.t)
        self.dispatcher = ToolDispatcher(ctx.generation, ctx.t, ctx.ui, ctx.weather, ctx.youtube)
        self.artifacts = ArtifactGenerator(ctx.generation, ctx.workspace.store, ctx.bus, ctx.t, settings, ctx.encoder)
        self.interpreter = ActionInterpreter(ctx.t, ctx.workspace, ctx.bus, self.artifacts, ctx.tasks.spawn_artifact)

    @property
    def store(self):
        return self.ctx.workspace.store

    # Pacing

    async def _pace(self, token: CancelToken, base: float, jitter: float = 0.2) -> None:
        scale = self.ctx.settings.pacing.scale
        if scale <= 0:
            token.raise_if_cancelled()
            return
        await token.sleep((base + self.ctx.rng.random() * jitter) * scale)

    def _steps(
        self,
        conversation_id: str,
        message_id: str,
        fn: Callable[[List[AnalysisStep]], List[AnalysisStep]],
    ) -> None:
        self.store.update_message(
            conversation_id,
            message_id,
            lambda m: evolve(m, analysis_state=fn(list(m.analysis_state or []))),
        )

    def _planner_context(self, conversation_id: str) -> PlannerContext:
        workspace = self.ctx.workspace
        return PlannerContext(
            locale=self.ctx.settings.locale,
            user=workspace.user,
            now=self.ctx.clock(),
            memory_facts=list(workspace.memory_facts),
            recent_conversations=workspace.store.list_sorted(),
            active_conversation_id=conversation_id,
        )

    # Turn

    async def _analyze(
        self,
        conversation_id: str,
        message_id: str,
        contents: List[Dict[str, Any]],
        token: CancelToken,
    ) -> Verdict:
        t = self.ctx.t
        pacing = self.ctx.settings.pacing
        self._steps(
            conversation_id,
            message_id,
            lambda _s: [AnalysisStep(id="c0", title=t("core_ingesting"), status="active", icon="brain-circuit")],
        )
        await self._pace(token, pacing.ingest_min_s, pacing.ingest_max_s - pacing.ingest_min_s)

        verdict = await self.classifier.classify(contents)
        token.raise_if_cancelled()

        intent = f"{t('intent_label')}: {t('intent_' + verdict.intent)}"
        self._steps(
            conversation_id,
            message_id,
            lambda steps: [
                *[_complete(s) for s in steps],
                AnalysisStep(id="c1", title=t("core_deconstructing"), status="active", icon="zap", details=intent),
            ],
        )
        for label, value in (("domain", verdict.domain), ("complexity", verdict.complexity)):
            await self._pace(token, pacing.step_s)
            detail = f"{t(label + '_label')}: {t(label + '_' + value)}"
            self._steps(
                conversation_id,
                message_id,
                lambda steps, detail=detail: [
                    s.model_copy(update={"details": f"{s.details}, {detail}"}) if s.id == "c1" else s for s in steps
                ],
            )
        await self._pace(token, pacing.detail_s)

        strategy = f"{t('strategy_label')}: {t('strategy_' + verdict.tool)}"
        self._steps(
            conversation_id,
            message_id,
            lambda steps: [
                *[_complete(s) for s in steps],
                AnalysisStep(id="c2", title=t("core_strategizing"), status="active", icon="wand-sparkles", details=strategy),
            ],
        )
        await self._pace(token, pacing.step_s)

        if verdict.tool == "multi_agent_collaboration" and verdict.complexity == "complex":
            await self._run_agents(conversation_id, message_id, verdict, token)

        self._steps(
            conversation_id,
            message_id,
            lambda steps: [
                *[_complete(s) for s in steps if s.id != "c3"],
                AnalysisStep(id="c4", title=t("core_synthesizing"), status="active", icon="folders"),
            ],
        )
        await self._pace(token, pacing.step_s)
        self._steps(
            conversation_id,
            message_id,
            lambda steps: [
                *[_complete(s) for s in steps],
                AnalysisStep(id="c5", title=t("core_finalizing"), status="active", icon="zap"),
            ],
        )
        return verdict

    async def _run_agents(self, conversation_id: str, message_id: str, verdict: Verdict, token: CancelToken) -> None:
        t = self.ctx.t
        pacing = self.ctx.settings.pacing
        pool = agent_pool(verdict, t)
        self._steps(
            conversation_id,
            message_id,
            lambda steps: [
                *[_complete(s) for s in steps if s.type == "core"],
                AnalysisStep(id="c3", title=t("core_dispatching"), status="active", icon="zap"),
                *pool,
            ],
        )
        await self._pace(token, pacing.step_s)

        def set_agent(agent_id: str, **changes: Any) -> None:
            self._steps(
                conversation_id,
                message_id,
                lambda steps: [s.model_copy(update=changes) if s.id == agent_id else s for s in steps],
            )

        for agent in pool:
            await self._pace(token, pacing.agent_s)
            set_agent(agent.id, status="active", details=t("agent_task_initializing"))
        for agent in pool:
            task_detail = t(AGENT_TASKS[agent.id])
            await self._pace(token, pacing.agent_s * 2, 0.5)
            set_agent(agent.id, details=task_detail)
            await self._pace(token, pacing.agent_s * 2, 0.5)
            set_agent(agent.id, status="completed", details=task_detail)
        await self._pace(token, pacing.agent_s, 0)

    def _mark_stopped(self, conversation_id: str, message_id: str) -> None:
        stopped = make_message("system", self.ctx.t("generation_stopped"))
        self.store.update_message(conversation_id, message_id, lambda _m: stopped)

    async def run_turn(
        self,
        history: List[Message],
        conversation_id: str,
        model: Optional[str],
        token: CancelToken,
    ) -> Optional[str]:
        """Analyse, generate and fold the response into a fresh model message.

        Returns the model message id, or None if the conversation vanished.
        """
        t = self.ctx.t
        placeholder = make_message("model", "", analysis_state=[], is_typing=True)
        message_id = placeholder.id
        if self.store.upsert(conversation_id, lambda c: replace_messages(c, [*history, placeholder])) is None:
            return None
        logger.info("Turn started for conversation %s", conversation_id)
        try:
            contents = build_contents(history)
            verdict = await self._analyze(conversation_id, message_id, contents, token)
            plan = self.planner.plan(verdict, model, self._planner_context(conversation_id))
            started = time.perf_counter()
            result = await self.dispatcher.dispatch(
                plan,
                contents,
                token,
                lambda fn: self.store.update_message(conversation_id, message_id, fn),
            )
            self.interpreter.interpret(result, conversation_id, message_id, token, started)
        except TurnCancelled:
            logger.info("Turn stopped for conversation %s", conversation_id)
            self._mark_stopped(conversation_id, message_id)
        except asyncio.CancelledError:
            logger.info("Turn task cancelled for conversation %s", conversation_id)
            self._mark_stopped(conversation_id, message_id)
            raise
        except Exception as exc:
            logger.exception("Turn failed for conversation %s", conversation_id)
            error_text = classify_error(exc, t)
            self.store.update_message(
                conversation_id,
                message_id,
                lambda m: clear_in_flight(m, content_history=[error_text], active_version_index=0),
            )
            self.ctx.bus.toast(error_text, "error", t("toast_error_title"))
        return message_id

    def start_turn(self, conversation_id: str, history: List[Message], model: Optional[str]) -> asyncio.Task:
        token = CancelToken()
        return self.ctx.tasks.start_turn(
            conversation_id, token, self.run_turn(history, conversation_id, model, token)
        )

    # Operations

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self.store.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        return conversation

    def _ensure_idle(self, conversation_id: str) -> None:
        if self.ctx.tasks.is_busy(conversation_id):
            raise TurnBusyError(self.ctx.t("turn_in_progress"))

    def _remember(
        self,
        images: List[InlineData],
        audio: Optional[InlineData],
        attachment: Optional[TextAttachment],
    ) -> None:
        stamp_items: List[RecentAttachment] = []
        if attachment is not None:
            if attachment.provider:
                stamp_items.append(
                    RecentAttachment(
                        type="cloud", provider=attachment.provider, title=attachment.title, content=attachment.content
                    )
                )
            else:
                stamp_items.append(RecentAttachment(type="text", title=attachment.title, content=attachment.content))
        for item in [*images, *([audio] if audio is not None else [])]:
            if item.name:
                stamp_items.append(RecentAttachment(type="local", name=item.name, mime_type=item.mime_type))
        self.ctx.workspace.remember_attachments(stamp_items)

    def _title_for(
        self,
        text: str,
        images: List[InlineData],
        audio: Optional[InlineData],
        attachment: Optional[TextAttachment],
    ) -> str:
        t = self.ctx.t
        title = text
        if not title and attachment is not None:
            title = attachment.title
        if not title and images:
            title = t("image_chat_title")
        if not title and audio is not None:
            title = t("audio_chat_title")
        title = title.strip()
        if len(title) > TITLE_CHARS:
            return title[:TITLE_CHARS] + "..."
        return title

    async def send_message(
        self,
        conversation_id: Optional[str],
        text: str,
        images: Optional[List[InlineData]] = None,
        audio: Optional[InlineData] = None,
        text_attachment: Optional[TextAttachment] = None,
        model: Optional[str] = None,
    ) -> Tuple[Conversation, asyncio.Task]:
        t = self.ctx.t
        images = list(images or [])
        if any(not image.mime_type.startswith("image/") for image in images):
            raise ValueError(t("unsupported_file_type"))
        if audio is not None and not audio.mime_type.startswith("audio/"):
            raise ValueError(t("unsupported_file_type"))
        if not text.strip() and not images and audio is None and text_attachment is None:
            raise ValueError(t("empty_message"))

        if conversation_id is None:
            conversation = self.ctx.workspace.new_conversation(model)
        else:
            conversation = self._require(conversation_id)
            self._ensure_idle(conversation.id)
        self._remember(images, audio, text_attachment)

        user_message = make_message("user", text, images=images, audio=audio, text_attachment=text_attachment)
        changes: Dict[str, Any] = {}
        if not conversation.messages:
            title = self._title_for(text, images, audio, text_attachment)
            if title:
                changes["title"] = title
        if model and model != conversation.model:
            changes["model"] = model
        if changes:
            conversation = self.store.upsert(conversation.id, lambda c: evolve(c, **changes))
        conversation = self.store.append(conversation.id, user_message)
        self.ctx.workspace.active_conversation_id = conversation.id
        task = self.start_turn(conversation.id, list(conversation.messages), conversation.model)
        return conversation, task

    async def edit_message(self, conversation_id: str, message_id: str, new_text: str) -> asyncio.Task:
        conversation = self._require(conversation_id)
        self._ensure_idle(conversation_id)
        index = message_index(conversation, message_id)
        if index < 0:
            raise KeyError(message_id)
        edited = add_version(conversation.messages[index], new_text)
        history = [*conversation.messages[:index], edited]
        self.store.upsert(conversation_id, lambda c: replace_messages(c, history))
        return self.start_turn(conversation_id, history, conversation.model)

    async def change_version(self, conversation_id: str, message_id: str, index: int) -> Optional[asyncio.Task]:
        """Switch the visible version; anything but the last message re-runs the turn from it."""
        conversation = self._require(conversation_id)
        position = message_index(conversation, message_id)
        if position < 0:
            raise KeyError(message_id)
        selected = select_version(conversation.messages[position], index)
        if position == len(conversation.messages) - 1:
            self.store.upsert(conversation_id, lambda c: update_message(c, message_id, lambda _m: selected))
            return None
        self._ensure_idle(conversation_id)
        history = [*conversation.messages[:position], selected]
        self.store.upsert(conversation_id, lambda c: replace_messages(c, history))
        return self.start_turn(conversation_id, history, conversation.model)

    async def regenerate(self, conversation_id: str) -> asyncio.Task:
        conversation = self._require(conversation_id)
        self._ensure_idle(conversation_id)
        history = history_through_last_user(conversation)
        if not history:
            raise ValueError("conversation has no user message to regenerate from")
        self.store.upsert(conversation_id, lambda c: replace_messages(c, history))
        return self.start_turn(conversation_id, history, conversation.model)

    def stop(self, conversation_id: str) -> bool:
        """Cancel the running turn and any artifact jobs earlier turns left behind."""
        tokens = [token for token in self.ctx.tasks.tokens_for(conversation_id) if not token.cancelled]
        if not tokens:
            return False
        for token in tokens:
            token.cancel()
        logger.info("Stop requested for conversation %s", conversation_id)
        return True

    def fork_conversation(self, conversation_id: str, message_id: str) -> Conversation:
        conversation = self._require(conversation_id)
        forked = fork_conversation(conversation, message_id, self.ctx.t("fork_title", conversation.title))
        self.store.insert(forked)
        self.ctx.workspace.active_conversation_id = forked.id
        return forked
