import json
import logging
import re
from typing import Any, Dict, List, get_args

from .prompts import CLASSIFIER_SYSTEM
from .schemas import Complexity, Domain, GenerationConfig, Intent, Message, Strategy, Verdict

logger = logging.getLogger("uvicorn.error")

VERDICT_FIELDS = {
    "domain": get_args(Domain),
    "complexity": get_args(Complexity),
    "intent": get_args(Intent),
    "tool": get_args(Strategy),
}
VERDICT_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {name: {"type": "STRING", "enum": list(values)} for name, values in VERDICT_FIELDS.items()},
    "required": list(VERDICT_FIELDS),
}
FENCE_RE = re.compile(r"```(?:json)?\s*({[\s\S]*?})\s*```")


def attachment_block(title: str, content: str) -> str:
    return f'\n\n--- ATTACHED DOCUMENT: "{title}" ---\n{content}\n--- END OF DOCUMENT ---'


def build_contents(messages: List[Message]) -> List[Dict[str, Any]]:
    """Serialize visible history into role-tagged content turns (system messages excluded)."""
    contents: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        role = "user" if message.role == "user" else "model"
        parts: List[Dict[str, Any]] = []
        text = message.active_content
        if message.text_attachment is not None:
            text += attachment_block(message.text_attachment.title, message.text_attachment.content)
        if text:
            parts.append({"text": text})
        for image in message.images:
            parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
        if message.audio is not None:
            parts.append({"inlineData": {"mimeType": message.audio.mime_type, "data": message.audio.data}})
        if parts:
            contents.append({"role": role, "parts": parts})
    return contents


def parse_verdict(text: str) -> Verdict:
    match = FENCE_RE.search(text or "")
    raw = match.group(1) if match else (text or "").strip()
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("verdict is not a JSON object")
    defaults = Verdict()
    values = {}
    for name, allowed in VERDICT_FIELDS.items():
        value = data.get(name)
        values[name] = value if value in allowed else getattr(defaults, name)
    return Verdict(**values)


class RequestClassifier:
    def __init__(self, generation: Any, model: str):
        self.generation = generation
        self.model = model

    async def classify(self, contents: List[Dict[str, Any]]) -> Verdict:
        """Never raises: any failure degrades to the ordinary-chat verdict."""
        config = GenerationConfig(system_instruction=CLASSIFIER_SYSTEM.strip(), temperature=0)
        try:
            result = await self.generation.generate_structured(self.model, contents, VERDICT_SCHEMA, config)
            return parse_verdict(result.text)
        except Exception as exc:
            logger.warning("Request classification failed, using default verdict: %s", exc)
            return Verdict()
