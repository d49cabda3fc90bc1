import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from .artifacts import ACTION_KINDS, ArtifactGenerator, initial_progress
from .cancellation import CancelToken
from .events import EventBus
from .locales import Translator
from .mutator import clear_in_flight, evolve, set_sole_content
from .schemas import (
    ACTION_ADAPTER,
    CodeBlock,
    GenerationResult,
    GroundingCitation,
    PdfAction,
    PresentationAction,
    SpreadsheetAction,
    VideoAction,
    WordAction,
)
from .workspace import Workspace

logger = logging.getLogger("uvicorn.error")

FENCE_RE = re.compile(r"```(?:json)?\s*({[\s\S]*?})\s*```")
HTML_BLOCK_RE = re.compile(r"```(html)\n([\s\S]*?)```\s*$")
MEMORY_RE = re.compile(r"<memory>([\s\S]*?)</memory>")

Spawn = Callable[[Coroutine[Any, Any, None], str, CancelToken], Any]


@dataclass
class ExtractedAction:
    action: BaseModel
    remaining_text: str


def _validate_action(raw: str) -> Optional[BaseModel]:
    try:
        return ACTION_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        logger.warning("Ignoring invalid action payload: %s", exc.errors()[:1])
        return None


def extract_action(text: str) -> Optional[ExtractedAction]:
    """Find an action payload in model text.

    A fenced JSON block wins; its whole match is removed from the visible text. Without one,
    the span from the first ``{`` to the last ``}`` counts only if it parses and names an action.
    """
    text = text or ""
    match = FENCE_RE.search(text)
    if match:
        action = _validate_action(match.group(1).strip())
        if action is None:
            return None
        remaining = (text[: match.start()] + text[match.end():]).strip()
        return ExtractedAction(action=action, remaining_text=remaining)

    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    candidate = text[first : last + 1]
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    if not isinstance(parsed, dict) or not parsed.get("action"):
        return None
    action = _validate_action(candidate)
    if action is None:
        return None
    return ExtractedAction(action=action, remaining_text=text.replace(candidate, "", 1).strip())


def confirmation_text(action: BaseModel, remaining: str, t: Translator) -> str:
    if isinstance(action, VideoAction):
        return ""
    if remaining:
        return remaining
    if isinstance(action, (PdfAction, WordAction)):
        return t("document_confirmation", action.filename)
    if isinstance(action, SpreadsheetAction):
        return t("spreadsheet_confirmation", action.filename)
    if isinstance(action, PresentationAction):
        return t("presentation_confirmation", action.filename)
    return t("image_confirmation")


def extract_code_block(text: str) -> Tuple[str, Optional[CodeBlock]]:
    match = HTML_BLOCK_RE.search(text)
    if not match or not match.group(2):
        return text, None
    return text[: match.start()].strip(), CodeBlock(language=match.group(1), code=match.group(2).strip())


def extract_memory_facts(text: str) -> Tuple[str, List[str]]:
    match = MEMORY_RE.search(text)
    if not match:
        return text, []
    facts: List[str] = []
    try:
        payload = json.loads(match.group(1))
        raw_facts = payload.get("facts") if isinstance(payload, dict) else None
        if isinstance(raw_facts, list):
            facts = [fact for fact in raw_facts if isinstance(fact, str) and fact.strip()]
    except ValueError as exc:
        logger.warning("Could not parse memory block: %s", exc)
    return MEMORY_RE.sub("", text, count=1).strip(), facts


def dedupe_grounding(citations: List[GroundingCitation]) -> List[GroundingCitation]:
    unique: Dict[str, GroundingCitation] = {}
    for citation in citations:
        if citation.uri:
            unique[citation.uri] = citation
    return list(unique.values())


class ActionInterpreter:
    """Turns the final model response into either a pending artifact or the finished reply."""

    def __init__(
        self,
        t: Translator,
        workspace: Workspace,
        bus: EventBus,
        artifacts: ArtifactGenerator,
        spawn: Spawn,
    ):
        self.t = t
        self.workspace = workspace
        self.bus = bus
        self.artifacts = artifacts
        self.spawn = spawn

    def interpret(
        self,
        result: GenerationResult,
        conversation_id: str,
        message_id: str,
        token: CancelToken,
        started_at: Optional[float] = None,
    ) -> Optional[BaseModel]:
        store = self.workspace.store
        text = result.text or ""
        extracted = extract_action(text)
        if extracted is not None:
            action = extracted.action
            kind = ACTION_KINDS[action.action]
            confirmation = confirmation_text(action, extracted.remaining_text, self.t)
            progress = initial_progress(action, self.t)
            store.update_message(
                conversation_id,
                message_id,
                lambda m: clear_in_flight(
                    set_sole_content(m, confirmation), pending_artifact=kind, artifact_progress=progress
                ),
            )
            logger.info("Scheduling %s artifact for message %s", kind, message_id)
            self.spawn(self.artifacts.run(action, conversation_id, message_id, token), conversation_id, token)
            return action

        text, code_block = extract_code_block(text)
        text, facts = extract_memory_facts(text)
        if facts and self.workspace.add_memory_facts(facts):
            self.bus.toast(self.t("memory_auto_saved"), "info", self.t("memory_title"))
        if not text.strip() and code_block is None:
            text = self.t("empty_response_placeholder")
        elapsed = time.perf_counter() - started_at if started_at is not None else None
        grounding = dedupe_grounding(result.grounding)
        store.update_message(
            conversation_id,
            message_id,
            lambda m: evolve(
                clear_in_flight(set_sole_content(m, text)),
                grounding=grounding,
                code_block=code_block,
                generation_time=elapsed,
            ),
        )
        return None
