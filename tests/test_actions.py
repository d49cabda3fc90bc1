import json

import pytest

from universum.actions import confirmation_text, dedupe_grounding, extract_action, extract_code_block, extract_memory_facts
from universum.cancellation import CancelToken
from universum.locales import Translator
from universum.mutator import make_message
from universum.schemas import GenerationResult, GroundingCitation, ImageAction, PdfAction, VideoAction
from tests.fakes import FakeGenerationService


def test_fenced_block_wins_and_is_removed():
    text = 'Here you go {"not": "this"}\n```json\n{"action": "generate_image", "prompt": "a cat", "count": 2}\n```\nEnjoy'

    extracted = extract_action(text)

    assert isinstance(extracted.action, ImageAction)
    assert extracted.action.count == 2
    assert extracted.remaining_text == 'Here you go {"not": "this"}\n\nEnjoy'


def test_invalid_fenced_block_yields_no_action():
    text = '```json\n{"action": "generate_pdf", "filename": "a.pdf"}\n```'

    assert extract_action(text) is None


def test_bare_json_object_counts_when_it_names_an_action():
    payload = {"action": "generate_video", "prompt": "waves", "aspectRatio": "9:16"}
    extracted = extract_action("Sure! " + json.dumps(payload))

    assert isinstance(extracted.action, VideoAction)
    assert extracted.action.aspect_ratio == "9:16"
    assert extracted.remaining_text == "Sure!"


def test_bare_braces_without_action_are_plain_text():
    assert extract_action('Use {"key": "value"} in your config.') is None
    assert extract_action("a } then {") is None


def test_confirmation_text_defaults():
    t = Translator("en")
    pdf = PdfAction(action="generate_pdf", filename="report.pdf", title="R", content="body")

    assert confirmation_text(pdf, "", t) == 'I\'ve created the document "report.pdf". You can download it now.'
    assert confirmation_text(pdf, "Custom intro", t) == "Custom intro"
    assert confirmation_text(VideoAction(action="generate_video", prompt="p"), "ignored", t) == ""
    assert confirmation_text(ImageAction(action="generate_image", prompt="p"), "", t) == "Here is the image I generated for you."


def test_trailing_html_block_becomes_code_block():
    text, block = extract_code_block("Here is a widget.\n```html\n<div>hi</div>\n```")

    assert text == "Here is a widget."
    assert block.language == "html"
    assert block.code == "<div>hi</div>"
    assert extract_code_block("```html\n<p>x</p>\n```\nmore text")[1] is None


def test_memory_block_is_stripped_and_parsed():
    text, facts = extract_memory_facts('Nice to meet you! <memory>{"facts": ["Name is Ada", ""]}</memory>')
    assert text == "Nice to meet you!"
    assert facts == ["Name is Ada"]

    text, facts = extract_memory_facts("Hi <memory>not json</memory>")
    assert text == "Hi"
    assert facts == []


def test_grounding_is_deduplicated_by_uri():
    citations = [GroundingCitation(uri="https://a", title="A"), GroundingCitation(uri="https://a", title="A2"), GroundingCitation(uri="https://b")]

    assert [c.uri for c in dedupe_grounding(citations)] == ["https://a", "https://b"]


def _seed(controller):
    workspace = controller.ctx.workspace
    conversation = workspace.new_conversation()
    placeholder = make_message("model", "", is_typing=True, analysis_state=[])
    workspace.store.append(conversation.id, placeholder)
    return conversation.id, placeholder.id


@pytest.mark.asyncio
async def test_interpret_saves_memory_and_finalizes(turn_factory):
    controller = turn_factory()
    cid, mid = _seed(controller)
    result = GenerationResult(
        text='Hello Ada.<memory>{"facts": ["User is called Ada"]}</memory>',
        grounding=[GroundingCitation(uri="https://x"), GroundingCitation(uri="https://x")],
    )

    action = controller.interpreter.interpret(result, cid, mid, CancelToken(), started_at=0.0)

    assert action is None
    message = controller.store.get(cid).messages[-1]
    assert message.active_content == "Hello Ada."
    assert message.is_typing is False
    assert message.analysis_state is None
    assert len(message.grounding) == 1
    assert message.generation_time is not None
    assert [f.content for f in controller.ctx.workspace.memory_facts] == ["User is called Ada"]
    toast = controller.ctx.bus.events_of("toast")[-1]["payload"]
    assert toast["message"] == "Fact automatically saved to memory."


@pytest.mark.asyncio
async def test_interpret_empty_text_uses_placeholder(turn_factory):
    controller = turn_factory()
    cid, mid = _seed(controller)

    controller.interpreter.interpret(GenerationResult(text="  "), cid, mid, CancelToken())

    message = controller.store.get(cid).messages[-1]
    assert message.active_content.startswith("[The model did not provide a text response")


@pytest.mark.asyncio
async def test_interpret_action_hands_off_to_artifact(turn_factory):
    fake = FakeGenerationService()
    controller = turn_factory(generation=fake)
    cid, mid = _seed(controller)
    text = '```json\n{"action": "generate_image", "prompt": "a red fox", "count": 1}\n```'

    action = controller.interpreter.interpret(GenerationResult(text=text), cid, mid, CancelToken())

    assert isinstance(action, ImageAction)
    pending = controller.store.get(cid).messages[-1]
    assert pending.pending_artifact == "image"
    assert pending.artifact_progress.count == 1
    assert pending.active_content == "Here is the image I generated for you."

    await controller.ctx.tasks.drain()

    done = controller.store.get(cid).messages[-1]
    assert done.pending_artifact is None
    assert done.artifact.kind == "image"
    assert fake.image_calls[0]["prompt"] == "a red fox"
