import asyncio
import random
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .events import EventBus
from .schemas import VideoResult


WEATHER_TOOL = "getWeatherForecast"
COMPUTER_CONTROL_TOOL = "computerControl"
OPEN_WEBSITE_TOOL = "openWebsite"
YOUTUBE_TOOL = "searchYouTube"

TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": WEATHER_TOOL,
        "description": "Get the weather forecast for a given location for a number of days.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "location": {"type": "STRING", "description": "The city and state, e.g. San Francisco, CA"},
                "days": {"type": "NUMBER", "description": "The number of days to forecast, e.g. 5."},
            },
            "required": ["location"],
        },
    },
    {
        "name": COMPUTER_CONTROL_TOOL,
        "description": (
            "Change settings on the user's interface, like the visual theme, font or background, "
            "or trigger actions like logging in."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "setting": {
                    "type": "STRING",
                    "description": "The setting to change or action to trigger.",
                    "enum": ["changeTheme", "changeFont", "changeBackground", "login"],
                },
                "value": {
                    "type": "STRING",
                    "description": (
                        'For "changeTheme" use "light" or "dark"; for "changeFont" names like "serif" or "mono"; '
                        'for "changeBackground" names like "neural" or "starfield". Not required for "login".'
                    ),
                },
            },
            "required": ["setting"],
        },
    },
    {
        "name": OPEN_WEBSITE_TOOL,
        "description": "Opens a given URL in a new browser tab.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "url": {"type": "STRING", "description": "The full URL including http:// or https://"},
            },
            "required": ["url"],
        },
    },
    {
        "name": YOUTUBE_TOOL,
        "description": "Search for videos on YouTube and display the results to the user.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "query": {"type": "STRING", "description": 'The search query, e.g. "lofi hip hop radio".'},
            },
            "required": ["query"],
        },
    },
]

VALID_THEMES = ("light", "dark")
VALID_FONTS = (
    "sans", "serif", "mono", "lora", "fira-code", "poppins", "montserrat", "playfair",
    "jetbrains-mono", "nunito", "merriweather", "inconsolata", "lato", "oswald", "roboto-mono",
)
VALID_BACKGROUNDS = (
    "universum", "neural", "cosmic", "plain", "geometric", "starfield", "gradient-wave", "hexagon",
    "bubbles", "noise", "topo", "blueprint", "aurora", "circuit", "wavy-grid", "polka-dots",
    "digital-rain", "tetris-fall",
)


class UiState(BaseModel):
    theme: str = "dark"
    font: str = "sans"
    background: str = "universum"


class UiBridge:
    """Client-side effects requested by tools, delivered as bus events."""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self.state = UiState()
        self.opened_urls: Tuple[str, ...] = ()

    def apply(self, **changes: str) -> UiState:
        self.state = self.state.model_copy(update=changes)
        self.bus.publish("ui_state_changed", self.state.model_dump())
        return self.state

    def request_login(self) -> None:
        self.bus.publish("login_requested", {})

    def open_url(self, url: str) -> None:
        self.opened_urls = (*self.opened_urls, url)
        self.bus.publish("open_url", {"url": url})


def computer_control(ui: UiBridge, setting: Any, value: Any) -> str:
    if setting == "changeTheme" and value in VALID_THEMES:
        ui.apply(theme=value)
        ui.bus.toast(f"Theme changed to {value}.", "success")
        return f"Theme successfully changed to {value}."
    if setting == "changeFont" and value in VALID_FONTS:
        ui.apply(font=value)
        ui.bus.toast(f"Font changed to {value}.", "success")
        return f"Font successfully changed to {value}."
    if setting == "changeBackground" and value in VALID_BACKGROUNDS:
        ui.apply(background=value)
        ui.bus.toast(f"Background changed to {value}.", "success")
        return f"Background successfully changed to {value}."
    if setting == "login":
        ui.request_login()
        return "Login screen opened for user."
    return "Unknown setting or value."


def open_website(ui: UiBridge, url: Any) -> Tuple[bool, str]:
    if isinstance(url, str) and (url.startswith("http://") or url.startswith("https://")):
        ui.open_url(url)
        return True, f"Successfully opened {url}."
    return False, f"Invalid or insecure URL provided: {url}."


WEATHER_BASES: List[Tuple[Tuple[str, ...], int, str]] = [
    (("dubai", "cairo"), 38, "Sunny"),
    (("london", "berlin"), 15, "Cloudy"),
    (("moscow", "oslo"), -2, "Snowing"),
    (("sydney",), 22, "Showers"),
    (("tokyo",), 28, "Humid"),
]
WEATHER_CONDITIONS = ["Sunny", "Partly Cloudy", "Cloudy", "Showers", "Thunderstorms"]
MAX_FORECAST_DAYS = 14


class WeatherService:
    """Deterministic-random forecast mock; pass a seeded Random for repeatable output."""

    def __init__(self, rng: Optional[random.Random] = None, today: Optional[Callable[[], date]] = None):
        self.rng = rng or random.Random()
        self.today = today or date.today

    def forecast(self, location: Any, days: Any = 1) -> Dict[str, Any]:
        lowered = str(location or "").lower()
        base_temp, base_condition = 20, "Partly Cloudy"
        for needles, temp, condition in WEATHER_BASES:
            if any(needle in lowered for needle in needles):
                base_temp, base_condition = temp, condition
                break
        try:
            count = int(days) if days else 1
        except (TypeError, ValueError):
            count = 1
        count = max(1, min(count, MAX_FORECAST_DAYS))
        start = self.today()
        entries = []
        for i in range(count):
            day = start + timedelta(days=i)
            high = base_temp + self.rng.randint(0, 3) - 2 + i
            low = high - (5 + self.rng.randint(0, 2))
            condition = base_condition
            if i > 1 and self.rng.random() > 0.6:
                condition = self.rng.choice(WEATHER_CONDITIONS)
            entries.append(
                {
                    "date": day.isoformat(),
                    "dayOfWeek": day.strftime("%A"),
                    "highTemperature": f"{high}°C",
                    "lowTemperature": f"{low}°C",
                    "condition": condition,
                    "humidity": f"{40 + self.rng.randint(0, 29)}%",
                    "windSpeed": f"{5 + self.rng.randint(0, 14)} km/h",
                }
            )
        return {"forecast": entries}


def _video(video_id: str, title: str, channel: str, live: bool = False) -> VideoResult:
    suffix = "hqdefault_live.jpg" if live else "hqdefault.jpg"
    return VideoResult(
        video_id=video_id,
        title=title,
        thumbnail_url=f"https://i.ytimg.com/vi/{video_id}/{suffix}",
        channel_title=channel,
    )


class YouTubeSearch:
    """Keyword-bucketed stand-in for a video search API."""

    def __init__(self, latency_s: float = 1.5):
        self.latency_s = latency_s

    async def search(self, query: Any) -> List[VideoResult]:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        lowered = str(query or "").lower()
        if "lofi" in lowered or "music" in lowered:
            return [
                _video("jfKfPfyJRdk", "lofi hip hop radio 📚 - beats to relax/study to", "Lofi Girl", live=True),
                _video("5qap5aO4i9A", "lofi hip hop radio 💤 - beats to sleep/chill to", "Lofi Girl", live=True),
                _video("rUxyKA_-grg", "24/7 lofi hip hop radio - beats to study/relax/game to", "the bootleg boy", live=True),
            ]
        if "react" in lowered or "tutorial" in lowered:
            return [
                _video(
                    "bMknfKXIFA8",
                    "React Course - Beginner's Tutorial for React JavaScript Library [2022]",
                    "freeCodeCamp.org",
                ),
                _video("SqcY0GlETPk", "React Tutorial for Beginners", "Programming with Mosh"),
            ]
        return [
            _video("dQw4w9WgXcQ", "Official Music Video", "Official Channel"),
            _video("V-_O7nl0Ii0", "The History of the World, I Guess", "bill wurtz"),
        ]
