from datetime import datetime, timezone

from universum import prompts
from universum.config import AppSettings, CAPABLE_LABEL, FAST_LABEL
from universum.locales import Translator
from universum.mutator import make_message, new_conversation
from universum.schemas import MemoryFact, UserRecord, Verdict
from universum.strategy import PlannerContext, StrategyPlanner, recent_conversations_context
from universum.tools import TOOL_DECLARATIONS


NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)


def _planner() -> StrategyPlanner:
    return StrategyPlanner(AppSettings(), Translator("en"))


def test_math_domain_uses_dedicated_instruction():
    plan = _planner().plan(Verdict(domain="math", tool="creative_suite"), FAST_LABEL, PlannerContext(now=NOW))

    assert plan.model == AppSettings().models.capable
    assert plan.config.system_instruction == prompts.MATH_SYSTEM
    assert plan.config.temperature == 0
    assert [t["name"] for t in plan.config.tools] == [t["name"] for t in TOOL_DECLARATIONS]


def test_fast_tier_disables_thinking_for_plain_requests():
    plan = _planner().plan(Verdict(), FAST_LABEL, PlannerContext(now=NOW))

    assert plan.model == AppSettings().models.fast
    assert plan.config.temperature == 0.8
    assert plan.config.thinking_budget == 0
    assert prompts.CAPABLE_TIER not in plan.config.system_instruction


def test_fast_tier_keeps_thinking_for_code():
    plan = _planner().plan(Verdict(tool="code_interpreter"), FAST_LABEL, PlannerContext(now=NOW))

    assert plan.config.thinking_budget is None
    assert prompts.CODE_GENERATION in plan.config.system_instruction


def test_capable_tier_is_deterministic_and_adds_tier_fragment():
    plan = _planner().plan(Verdict(), CAPABLE_LABEL, PlannerContext(now=NOW))

    assert plan.config.temperature == 0.0
    assert prompts.CAPABLE_TIER in plan.config.system_instruction


def test_unknown_label_uses_capable_model_with_base_temperature():
    plan = _planner().plan(Verdict(), "something-else", PlannerContext(now=NOW))

    assert plan.model == AppSettings().models.capable
    assert plan.config.temperature == 0.5


def test_deep_search_enables_web_search():
    plan = _planner().plan(Verdict(tool="deep_search"), CAPABLE_LABEL, PlannerContext(now=NOW))

    assert plan.config.web_search is True
    assert plan.config.temperature == 0.1
    assert prompts.DEEP_SEARCH in plan.config.system_instruction


def test_fragments_follow_rule_order():
    plan = _planner().plan(Verdict(tool="multi_agent_collaboration", domain="video"), CAPABLE_LABEL, PlannerContext(now=NOW))
    instruction = plan.config.system_instruction

    order = [
        prompts.MEMORY,
        prompts.YOUTUBE_SEARCH,
        prompts.CAPABLE_TIER,
        prompts.CREATIVE_WRITING,
        prompts.CODE_GENERATION,
        prompts.SPREADSHEET_GENERATION,
        prompts.PRESENTATION_GENERATION,
        prompts.IMAGE_GENERATION,
        prompts.VIDEO_GENERATION,
        prompts.DEEP_SEARCH,
    ]
    positions = [instruction.index(fragment) for fragment in order]
    assert positions == sorted(positions)


def test_preamble_carries_user_date_and_memory():
    context = PlannerContext(
        now=NOW,
        user=UserRecord(name="Ada", email="ada@example.com"),
        memory_facts=[MemoryFact(id="f1", content="Likes tea")],
    )

    instruction = _planner().plan(Verdict(), CAPABLE_LABEL, context).config.system_instruction

    assert instruction.startswith("The user's name is Ada.\nThe current date and time is Friday, March 14, 2025")
    assert f"### {prompts.MEMORY_FACTS_TITLE}\nLikes tea" in instruction


def test_recent_context_excludes_active_and_empty_conversations():
    t = Translator("en")
    active = new_conversation("Active")
    empty = new_conversation("Empty")
    other = new_conversation("Holiday").model_copy(
        update={
            "messages": [
                make_message("user", "Where should I go?"),
                make_message("model", "x" * 300),
                make_message("user", "Thanks"),
            ]
        }
    )

    text = recent_conversations_context([active, empty, other], active.id, t)

    assert "Title: Holiday" in text
    assert "Title: Active" not in text
    assert "Title: Empty" not in text
    assert '- User: "Where should I go?"' in text
    assert '- AI: "' + "x" * 250 + '..."' in text
    assert recent_conversations_context([active], active.id, t) == ""
