import random
from datetime import date

import pytest

from universum.events import EventBus
from universum.tools import UiBridge, WeatherService, YouTubeSearch, computer_control, open_website


def test_weather_forecast_is_clamped_and_seeded():
    service = WeatherService(rng=random.Random(3), today=lambda: date(2025, 1, 1))

    forecast = service.forecast("Dubai", 40)["forecast"]

    assert len(forecast) == 14
    assert forecast[0]["date"] == "2025-01-01"
    assert forecast[0]["dayOfWeek"] == "Wednesday"
    assert forecast[0]["condition"] == "Sunny"
    again = WeatherService(rng=random.Random(3), today=lambda: date(2025, 1, 1)).forecast("Dubai", 40)["forecast"]
    assert again == forecast


def test_weather_defaults_to_one_day_for_bad_input():
    forecast = WeatherService(rng=random.Random(1)).forecast(None, "many")["forecast"]

    assert len(forecast) == 1
    assert forecast[0]["condition"] == "Partly Cloudy"


def test_computer_control_validates_values():
    bus = EventBus()
    ui = UiBridge(bus)

    assert computer_control(ui, "changeBackground", "starfield") == "Background successfully changed to starfield."
    assert computer_control(ui, "changeTheme", "neon") == "Unknown setting or value."
    assert computer_control(ui, "login", None) == "Login screen opened for user."
    assert ui.state.background == "starfield"
    assert ui.state.theme == "dark"
    assert bus.events_of("login_requested")


def test_open_website_requires_http_scheme():
    ui = UiBridge(EventBus())

    assert open_website(ui, "https://example.com") == (True, "Successfully opened https://example.com.")
    assert open_website(ui, "javascript:alert(1)")[0] is False
    assert ui.opened_urls == ("https://example.com",)


@pytest.mark.asyncio
async def test_youtube_search_buckets_by_keyword():
    search = YouTubeSearch(0)

    tutorials = await search.search("react tutorial")
    fallback = await search.search("cats")

    assert tutorials[0].channel_title == "freeCodeCamp.org"
    assert fallback[0].thumbnail_url == "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg"
