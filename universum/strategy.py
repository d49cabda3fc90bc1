from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from . import prompts
from .config import CAPABLE_LABEL, FAST_LABEL, AppSettings
from .locales import Translator
from .schemas import Conversation, GenerationConfig, GenerationPlan, MemoryFact, Message, UserRecord, Verdict
from .tools import TOOL_DECLARATIONS

RECENT_SUMMARY_CHARS = 250

CREATIVE_TOOLS = ("creative_suite", "multi_agent_collaboration")
CODE_TOOLS = ("code_interpreter", "multi_agent_collaboration")
SPREADSHEET_TOOLS = ("spreadsheet_specialist", "multi_agent_collaboration")
PRESENTATION_TOOLS = ("creative_suite", "multi_agent_collaboration")
SEARCH_TOOLS = ("deep_search", "multi_agent_collaboration")


@dataclass
class PlannerContext:
    locale: str = "en"
    user: Optional[UserRecord] = None
    now: Optional[datetime] = None
    memory_facts: List[MemoryFact] = field(default_factory=list)
    recent_conversations: List[Conversation] = field(default_factory=list)
    active_conversation_id: Optional[str] = None


@dataclass
class PlanState:
    verdict: Verdict
    tier: Optional[str] = None

    @property
    def fast(self) -> bool:
        return self.tier == "fast"

    @property
    def capable(self) -> bool:
        return self.tier == "capable"

    @property
    def creative(self) -> bool:
        return self.verdict.tool in CREATIVE_TOOLS

    @property
    def code(self) -> bool:
        return self.verdict.tool in CODE_TOOLS

    @property
    def spreadsheet(self) -> bool:
        return self.verdict.tool in SPREADSHEET_TOOLS

    @property
    def presentation(self) -> bool:
        return self.verdict.tool in PRESENTATION_TOOLS

    @property
    def deep_search(self) -> bool:
        return self.verdict.tool in SEARCH_TOOLS


Fragment = Union[str, Callable[[PlanState], str]]
InstructionRule = Tuple[Callable[[PlanState], bool], Fragment]


def _always(_state: PlanState) -> bool:
    return True


# Evaluated top to bottom; every matching fragment is appended in this order.
INSTRUCTION_RULES: List[InstructionRule] = [
    (_always, prompts.MEMORY),
    (_always, prompts.WEATHER),
    (_always, prompts.PDF_GENERATION),
    (_always, prompts.WORD_GENERATION),
    (_always, prompts.COMPUTER_CONTROL),
    (_always, prompts.OPEN_WEBSITE),
    (_always, prompts.YOUTUBE_SEARCH),
    (lambda s: s.capable, prompts.CAPABLE_TIER),
    (lambda s: s.creative, prompts.CREATIVE_WRITING),
    (lambda s: s.code, prompts.CODE_GENERATION),
    (lambda s: s.spreadsheet, prompts.SPREADSHEET_GENERATION),
    (lambda s: s.presentation, prompts.PRESENTATION_GENERATION),
    (lambda s: s.creative or s.presentation, prompts.IMAGE_GENERATION),
    (lambda s: s.verdict.domain == "video", prompts.VIDEO_GENERATION),
    (lambda s: s.deep_search, prompts.DEEP_SEARCH),
]


def _summarize_message(message: Message) -> Optional[str]:
    content = message.active_content
    if not content:
        return None
    prefix = "User" if message.role == "user" else "AI"
    clipped = content[:RECENT_SUMMARY_CHARS].replace("\n", " ")
    ellipsis = "..." if len(content) > RECENT_SUMMARY_CHARS else ""
    return f'- {prefix}: "{clipped}{ellipsis}"'


def recent_conversations_context(
    conversations: List[Conversation],
    active_id: Optional[str],
    t: Translator,
    limit: int = 5,
) -> str:
    """Summaries of other recent conversations: first user message plus the last two messages."""
    if not active_id or len(conversations) <= 1:
        return ""
    recent = [c for c in conversations if c.id != active_id and c.messages][:limit]
    if not recent:
        return ""
    blocks = []
    for conversation in recent:
        picked: List[Message] = []
        first_user = next((m for m in conversation.messages if m.role == "user"), None)
        if first_user is not None:
            picked.append(first_user)
        for message in conversation.messages[-2:]:
            if all(message.id != p.id for p in picked):
                picked.append(message)
        lines = [line for line in (_summarize_message(m) for m in picked) if line]
        title = f"{t('conversation_title_label')}: {conversation.title}"
        blocks.append("\n".join([title, *lines]))
    body = "\n\n".join(blocks)
    return f"\n\n---\n{prompts.RECENT_CONTEXT_TITLE}\n{prompts.RECENT_CONTEXT_INFO}\n\n{body}\n---"


def context_preamble(context: PlannerContext, t: Translator, limit: int = 5) -> str:
    now = context.now or datetime.now().astimezone()
    moment = now.strftime("%A, %B %d, %Y at %H:%M:%S %Z").strip()
    user_line = t("user_name", context.user.name) if context.user else ""
    recent = recent_conversations_context(
        context.recent_conversations, context.active_conversation_id, t, limit
    )
    memory = ""
    if context.memory_facts:
        facts = "\n".join(fact.content for fact in context.memory_facts)
        memory = f"\n\n### {prompts.MEMORY_FACTS_TITLE}\n{facts}"
    return f"{user_line}\n{t('current_date_time', moment)}{recent}{memory}"


class StrategyPlanner:
    """Maps a verdict and the model label to a model id and generation config."""

    def __init__(self, settings: AppSettings, t: Translator, rules: Optional[List[InstructionRule]] = None):
        self.settings = settings
        self.t = t
        self.rules = rules if rules is not None else INSTRUCTION_RULES

    def _tier(self, label: Optional[str]) -> Optional[str]:
        if label == CAPABLE_LABEL:
            return "capable"
        if label == FAST_LABEL:
            return "fast"
        return None

    def plan(self, verdict: Verdict, model_label: Optional[str], context: PlannerContext) -> GenerationPlan:
        tools = [dict(declaration) for declaration in TOOL_DECLARATIONS]
        if verdict.domain == "math":
            return GenerationPlan(
                model=self.settings.models.capable,
                config=GenerationConfig(system_instruction=prompts.MATH_SYSTEM, temperature=0, tools=tools),
            )

        model = self.settings.model_for_label(model_label)
        state = PlanState(verdict=verdict, tier=self._tier(model_label))
        instruction = context_preamble(context, self.t, self.settings.recent_conversation_limit)
        instruction += "\n\n" + prompts.base_persona(context.locale).lstrip("\n")
        for predicate, fragment in self.rules:
            if predicate(state):
                instruction += fragment(state) if callable(fragment) else fragment

        temperature = 0.5
        thinking_budget: Optional[int] = None
        if state.capable:
            temperature = 0.0
        elif state.fast:
            temperature = 0.8
            if not (state.creative or state.code):
                thinking_budget = 0
        web_search = False
        if state.deep_search:
            web_search = True
            temperature = 0.1

        return GenerationPlan(
            model=model,
            config=GenerationConfig(
                system_instruction=instruction,
                temperature=temperature,
                tools=tools,
                web_search=web_search,
                thinking_budget=thinking_budget,
            ),
        )
