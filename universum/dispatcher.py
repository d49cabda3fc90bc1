import logging
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancelToken
from .locales import Translator
from .mutator import evolve, set_sole_content
from .schemas import FunctionCall, GenerationPlan, GenerationResult, Message
from .tools import (
    COMPUTER_CONTROL_TOOL,
    OPEN_WEBSITE_TOOL,
    WEATHER_TOOL,
    YOUTUBE_TOOL,
    UiBridge,
    WeatherService,
    YouTubeSearch,
    computer_control,
    open_website,
)

logger = logging.getLogger("uvicorn.error")

MessageUpdate = Callable[[Callable[[Message], Message]], None]


def _find_call(calls: List[FunctionCall], name: str) -> Optional[FunctionCall]:
    for call in calls:
        if call.name == name:
            return call
    return None


def _show_status(text: str) -> Callable[[Message], Message]:
    return lambda m: evolve(set_sole_content(m, text), is_typing=False)


class ToolDispatcher:
    """Primary generation call plus at most one follow-up per requested tool.

    Tools are handled in a fixed order: weather, computer control, open website, YouTube.
    Each follow-up answers the primary model turn with the tool's result and replaces the
    current response.
    """

    def __init__(
        self,
        generation: Any,
        t: Translator,
        ui: UiBridge,
        weather: WeatherService,
        youtube: YouTubeSearch,
    ):
        self.generation = generation
        self.t = t
        self.ui = ui
        self.weather = weather
        self.youtube = youtube

    async def dispatch(
        self,
        plan: GenerationPlan,
        contents: List[Dict[str, Any]],
        token: CancelToken,
        update: MessageUpdate,
    ) -> GenerationResult:
        primary = await self.generation.generate(plan.model, contents, plan.config)
        token.raise_if_cancelled()
        response = primary
        calls = primary.function_calls

        call = _find_call(calls, WEATHER_TOOL)
        if call is not None:
            update(_show_status(response.text or self.t("consulting_weather")))
            data = self.weather.forecast(call.args.get("location"), call.args.get("days"))
            response = await self._follow_up(plan, contents, primary, WEATHER_TOOL, data, token)

        call = _find_call(calls, COMPUTER_CONTROL_TOOL)
        if call is not None:
            setting = call.args.get("setting")
            update(_show_status(response.text or self.t("performing_action", setting)))
            result = computer_control(self.ui, setting, call.args.get("value"))
            response = await self._follow_up(plan, contents, primary, COMPUTER_CONTROL_TOOL, {"result": result}, token)

        call = _find_call(calls, OPEN_WEBSITE_TOOL)
        if call is not None:
            update(_show_status(response.text or self.t("opening_website")))
            _, result = open_website(self.ui, call.args.get("url"))
            response = await self._follow_up(plan, contents, primary, OPEN_WEBSITE_TOOL, {"result": result}, token)

        call = _find_call(calls, YOUTUBE_TOOL)
        if call is not None:
            query = call.args.get("query") or ""
            update(_show_status(self.t("searching_youtube", query)))
            videos = await self.youtube.search(query)
            token.raise_if_cancelled()
            update(lambda m: evolve(set_sole_content(m, ""), is_typing=True, video_search_results=videos))
            payload = {"results": [video.model_dump() for video in videos]}
            response = await self._follow_up(plan, contents, primary, YOUTUBE_TOOL, payload, token)

        return response

    async def _follow_up(
        self,
        plan: GenerationPlan,
        contents: List[Dict[str, Any]],
        primary: GenerationResult,
        name: str,
        payload: Dict[str, Any],
        token: CancelToken,
    ) -> GenerationResult:
        logger.info("Answering tool call %s", name)
        model_turn = primary.model_turn or {"role": "model", "parts": []}
        follow_contents = [
            *contents,
            model_turn,
            {"role": "tool", "parts": [{"functionResponse": {"name": name, "response": payload}}]},
        ]
        config = plan.config.model_copy(update={"tools": [], "web_search": False})
        result = await self.generation.generate(plan.model, follow_contents, config)
        token.raise_if_cancelled()
        return result
