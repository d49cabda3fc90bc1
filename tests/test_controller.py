import asyncio

import pytest

from universum.controller import TurnBusyError, agent_pool, classify_error
from universum.llm import GenerationError
from universum.locales import Translator
from universum.mutator import add_version, make_message, new_conversation
from universum.schemas import FunctionCall, GenerationResult, InlineData, TextAttachment, Verdict
from tests.fakes import FakeGenerationService


async def _until(predicate, attempts: int = 500):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _seed(controller, *pairs):
    conversation = new_conversation("Seeded")
    messages = [make_message(role, text) for role, text in pairs]
    conversation = conversation.model_copy(update={"messages": messages})
    controller.store.insert(conversation)
    return conversation


@pytest.mark.asyncio
async def test_send_message_creates_conversation_and_answers(turn_factory):
    fake = FakeGenerationService(responses=["Hi there!"])
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "Hello, who are you and what can you do?")
    await task

    stored = controller.store.get(conversation.id)
    assert stored.title == "Hello, who are you and what ca..."
    assert [m.role for m in stored.messages] == ["user", "model"]
    reply = stored.messages[1]
    assert reply.active_content == "Hi there!"
    assert reply.is_typing is False
    assert reply.analysis_state is None
    assert controller.ctx.workspace.active_conversation_id == conversation.id
    assert fake.calls[0]["contents"] == [{"role": "user", "parts": [{"text": "Hello, who are you and what can you do?"}]}]
    assert "The current date and time is Friday, March 14, 2025" in fake.calls[0]["config"].system_instruction


@pytest.mark.asyncio
async def test_short_title_is_not_ellipsized_and_attachments_are_remembered(turn_factory):
    controller = turn_factory()
    image = InlineData(mime_type="image/png", data="AAA", name="cat.png")
    attachment = TextAttachment(title="notes.txt", content="hello")

    conversation, task = await controller.send_message(None, "", images=[image], text_attachment=attachment)
    await task

    assert controller.store.get(conversation.id).title == "notes.txt"
    recents = controller.ctx.workspace.recent_attachments
    assert [(r.type, r.title or r.name) for r in recents] == [("text", "notes.txt"), ("local", "cat.png")]


@pytest.mark.asyncio
async def test_image_only_message_gets_image_title(turn_factory):
    controller = turn_factory()
    image = InlineData(mime_type="image/jpeg", data="AAA")

    conversation, task = await controller.send_message(None, "", images=[image])
    await task

    assert controller.store.get(conversation.id).title == "Image Chat"


@pytest.mark.asyncio
async def test_send_rejects_empty_and_unsupported_input(turn_factory):
    controller = turn_factory()

    with pytest.raises(ValueError):
        await controller.send_message(None, "   ")
    with pytest.raises(ValueError):
        await controller.send_message(None, "look", images=[InlineData(mime_type="application/pdf", data="x")])
    with pytest.raises(KeyError):
        await controller.send_message("missing", "hi")
    assert controller.store.list() == []


@pytest.mark.asyncio
async def test_second_send_while_busy_is_rejected(turn_factory):
    fake = FakeGenerationService()
    fake.gate = asyncio.Event()
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "first")
    await fake.entered.wait()

    with pytest.raises(TurnBusyError):
        await controller.send_message(conversation.id, "second")

    fake.gate.set()
    await task
    assert len(controller.store.get(conversation.id).messages) == 2


@pytest.mark.asyncio
async def test_stop_turns_reply_into_system_message(turn_factory):
    fake = FakeGenerationService()
    fake.gate = asyncio.Event()
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "tell me a long story")
    await fake.entered.wait()
    assert controller.stop(conversation.id) is True
    fake.gate.set()
    await task

    last = controller.store.get(conversation.id).messages[-1]
    assert last.role == "system"
    assert last.active_content == "Generation stopped by user."
    assert controller.stop(conversation.id) is False


@pytest.mark.asyncio
async def test_generation_error_becomes_reply_and_toast(turn_factory):
    fake = FakeGenerationService(responses=[GenerationError("API_KEY rejected (401): bad key")])
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "hi")
    await task

    reply = controller.store.get(conversation.id).messages[-1]
    assert reply.content_history == ["The API key is missing or invalid. Please check your configuration."]
    assert reply.is_typing is False
    toast = controller.ctx.bus.events_of("toast")[-1]["payload"]
    assert toast["level"] == "error"


def test_classify_error_buckets():
    t = Translator("en")

    assert classify_error(RuntimeError("Invalid api key"), t).startswith("The API key")
    assert classify_error(GenerationError("Network error: refused"), t).startswith("A network error")
    assert classify_error(RuntimeError("Failed to fetch"), t).startswith("A network error")
    assert classify_error(ValueError("odd"), t) == "An unexpected error occurred: odd"


@pytest.mark.asyncio
async def test_edit_adds_version_and_truncates_tail(turn_factory):
    fake = FakeGenerationService(responses=["new answer"])
    controller = turn_factory(generation=fake)
    conversation = _seed(controller, ("user", "q1"), ("model", "a1"), ("user", "q2"), ("model", "a2"))
    first = conversation.messages[0]

    task = await controller.edit_message(conversation.id, first.id, "q1 revised")
    await task

    messages = controller.store.get(conversation.id).messages
    assert len(messages) == 2
    assert messages[0].content_history == ["q1", "q1 revised"]
    assert messages[0].active_version_index == 1
    assert messages[1].active_content == "new answer"
    assert fake.calls[0]["contents"] == [{"role": "user", "parts": [{"text": "q1 revised"}]}]


@pytest.mark.asyncio
async def test_change_version_on_last_message_is_in_place(turn_factory):
    fake = FakeGenerationService()
    controller = turn_factory(generation=fake)
    conversation = _seed(controller, ("user", "q1"), ("model", "a1"))
    last = add_version(conversation.messages[1], "a1 alt")
    controller.store.update_message(conversation.id, last.id, lambda _m: last)

    result = await controller.change_version(conversation.id, last.id, 0)

    assert result is None
    assert controller.store.get(conversation.id).messages[1].active_content == "a1"
    assert fake.calls == []
    with pytest.raises(IndexError):
        await controller.change_version(conversation.id, last.id, 5)


@pytest.mark.asyncio
async def test_change_version_on_earlier_message_reruns(turn_factory):
    fake = FakeGenerationService(responses=["rerun answer"])
    controller = turn_factory(generation=fake)
    conversation = _seed(controller, ("user", "q1"), ("model", "a1"), ("user", "q2"), ("model", "a2"))
    first = add_version(conversation.messages[0], "q1 alt")
    controller.store.update_message(conversation.id, first.id, lambda _m: first)

    task = await controller.change_version(conversation.id, first.id, 0)
    await task

    messages = controller.store.get(conversation.id).messages
    assert [m.active_content for m in messages] == ["q1", "rerun answer"]
    assert messages[0].content_history == ["q1", "q1 alt"]


@pytest.mark.asyncio
async def test_regenerate_replaces_last_reply(turn_factory):
    fake = FakeGenerationService(responses=["second try"])
    controller = turn_factory(generation=fake)
    conversation = _seed(controller, ("user", "q1"), ("model", "a1"))

    task = await controller.regenerate(conversation.id)
    await task

    messages = controller.store.get(conversation.id).messages
    assert [m.active_content for m in messages] == ["q1", "second try"]
    assert messages[1].id != conversation.messages[1].id


@pytest.mark.asyncio
async def test_regenerate_without_user_message_fails(turn_factory):
    controller = turn_factory()
    conversation = _seed(controller, ("model", "welcome"))

    with pytest.raises(ValueError):
        await controller.regenerate(conversation.id)


@pytest.mark.asyncio
async def test_fork_conversation_becomes_active(turn_factory):
    controller = turn_factory()
    conversation = _seed(controller, ("user", "q1"), ("model", "a1"), ("user", "q2"))

    forked = controller.fork_conversation(conversation.id, conversation.messages[1].id)

    assert forked.title == "Seeded (fork)"
    assert len(forked.messages) == 2
    assert controller.ctx.workspace.active_conversation_id == forked.id
    assert len(controller.store.get(conversation.id).messages) == 3
    with pytest.raises(KeyError):
        controller.fork_conversation(conversation.id, "nope")


@pytest.mark.asyncio
async def test_multi_agent_turn_records_agents_and_clears_steps(turn_factory):
    fake = FakeGenerationService(
        verdict={"domain": "research", "complexity": "complex", "intent": "code_development", "tool": "multi_agent_collaboration"}
    )
    controller = turn_factory(generation=fake)
    snapshots = []
    controller.store.add_listener(
        lambda _e, _cid, conv: conv and conv.messages and snapshots.append(conv.messages[-1].analysis_state)
    )

    conversation, task = await controller.send_message(None, "research and build a scraper")
    await task

    seen_ids = {step.id for state in snapshots if state for step in state}
    assert {"c0", "c1", "c2", "c3", "c4", "c5", "a1", "a2"} <= seen_ids
    assert controller.store.get(conversation.id).messages[-1].analysis_state is None


def test_agent_pool_falls_back_to_creative():
    t = Translator("en")

    assert [a.id for a in agent_pool(Verdict(), t)] == ["a3"]
    assert [a.id for a in agent_pool(Verdict(domain="spreadsheet", intent="data_analysis"), t)] == ["a1", "a4"]


VIDEO_REPLY = '```json\n{"action": "generate_video", "prompt": "waves at dusk"}\n```'


@pytest.mark.asyncio
async def test_weather_question_is_answered_from_forecast(turn_factory):
    args = {"location": "Tokyo", "days": 3}
    fake = FakeGenerationService(
        responses=[
            GenerationResult(
                function_calls=[FunctionCall(name="getWeatherForecast", args=args)],
                model_turn={"role": "model", "parts": [{"functionCall": {"name": "getWeatherForecast", "args": args}}]},
            ),
            "Expect humid days in Tokyo.",
        ]
    )
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "What's the weather in Tokyo for 3 days?")
    await task

    reply = controller.store.get(conversation.id).messages[-1]
    assert reply.active_content == "Expect humid days in Tokyo."
    assert reply.is_typing is False
    assert reply.artifact_progress is None
    assert reply.pending_artifact is None
    follow_up = fake.calls[1]
    assert follow_up["config"].tools == []
    forecast = follow_up["contents"][-1]["parts"][0]["functionResponse"]["response"]["forecast"]
    assert len(forecast) == 3
    assert {"dayOfWeek", "condition", "highTemperature", "lowTemperature"} <= set(forecast[0])


@pytest.mark.asyncio
async def test_turn_completes_when_classification_fails(turn_factory):
    fake = FakeGenerationService(responses=["Still here."])
    fake.structured_error = RuntimeError("classifier offline")
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "hello")
    await task

    reply = controller.store.get(conversation.id).messages[-1]
    assert reply.role == "model"
    assert reply.active_content == "Still here."
    assert reply.is_typing is False
    assert len(fake.structured_calls) == 1
    assert fake.calls[0]["config"].web_search is False
    assert controller.ctx.bus.events_of("toast") == []


@pytest.mark.asyncio
async def test_fenced_image_action_ends_with_two_images(turn_factory):
    images = [InlineData(mime_type="image/png", data="Zm94MQ=="), InlineData(mime_type="image/png", data="Zm94Mg==")]
    fake = FakeGenerationService(
        responses=['```json\n{"action":"generate_image","prompt":"a red fox in snow","count":2}\n```'],
        images=images,
    )
    fake.image_gate = asyncio.Event()
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "draw a fox")
    await task

    pending = controller.store.get(conversation.id).messages[-1]
    assert pending.pending_artifact == "image"
    assert pending.active_content == "Here is the image I generated for you."

    fake.image_gate.set()
    await controller.ctx.tasks.drain()

    done = controller.store.get(conversation.id).messages[-1]
    assert done.pending_artifact is None
    assert done.artifact.kind == "image"
    assert len(done.artifact.images) == 2
    assert fake.image_calls[0]["count"] == 2


@pytest.mark.asyncio
async def test_stop_during_video_poll_ends_polling(turn_factory):
    fake = FakeGenerationService(responses=[VIDEO_REPLY])
    fake.video_pending = True
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "make a video of the sea")
    await task
    await _until(lambda: fake.video_calls.count("poll") >= 3)

    assert controller.stop(conversation.id) is True
    await controller.ctx.tasks.drain()
    polls = fake.video_calls.count("poll")
    await asyncio.sleep(0.01)

    assert fake.video_calls.count("poll") == polls
    assert "download" not in fake.video_calls
    last = controller.store.get(conversation.id).messages[-1]
    assert last.role == "system"
    assert last.active_content == "Generation stopped by user."
    assert controller.ctx.tasks.cancel_tokens == {}


@pytest.mark.asyncio
async def test_stop_reaches_video_started_by_earlier_turn(turn_factory):
    fake = FakeGenerationService(responses=[VIDEO_REPLY])
    fake.video_pending = True
    controller = turn_factory(generation=fake)

    conversation, task = await controller.send_message(None, "make a video of the sea")
    await task
    await _until(lambda: fake.video_calls.count("poll") >= 2)
    video_message_id = controller.store.get(conversation.id).messages[-1].id

    fake.gate = asyncio.Event()
    fake.entered.clear()
    _, second = await controller.send_message(conversation.id, "and meanwhile, a haiku?")
    await fake.entered.wait()
    assert len(controller.ctx.tasks.tokens_for(conversation.id)) == 2

    assert controller.stop(conversation.id) is True
    fake.gate.set()
    await second
    await controller.ctx.tasks.drain()
    polls = fake.video_calls.count("poll")
    await asyncio.sleep(0.01)

    assert fake.video_calls.count("poll") == polls
    messages = controller.store.get(conversation.id).messages
    video_message = next(m for m in messages if m.id == video_message_id)
    assert video_message.role == "system"
    assert video_message.active_content == "Generation stopped by user."
    assert messages[-1].role == "system"
    assert all(m.pending_artifact is None for m in messages)
    assert controller.stop(conversation.id) is False


@pytest.mark.asyncio
async def test_shutdown_marks_stuck_turn_as_stopped(turn_factory):
    fake = FakeGenerationService()
    fake.gate = asyncio.Event()
    controller = turn_factory(generation=fake)
    controller.ctx.tasks.shutdown_grace_s = 0.01

    conversation, task = await controller.send_message(None, "long answer please")
    await fake.entered.wait()
    await controller.ctx.tasks.shutdown()

    assert task.cancelled()
    last = controller.store.get(conversation.id).messages[-1]
    assert last.role == "system"
    assert last.active_content == "Generation stopped by user."
