"""
Unit tests for schedule lookups and formatting.
"""

import json
from datetime import datetime

from schedule import (
    SAMPLE_SCHEDULE,
    ProgramSchedule,
    format_guide_message,
    format_time_12h,
    load_schedule,
    weekday_index,
)

# 2024-01-03 is a Wednesday (schedule day 3).
WEDNESDAY = datetime(2024, 1, 3, 13, 15)


def test_weekday_index_starts_on_sunday():
    assert weekday_index(datetime(2024, 1, 7)) == 0
    assert weekday_index(WEDNESDAY) == 3


def test_format_time_12h():
    assert format_time_12h("00:05") == "12:05 AM"
    assert format_time_12h("12:30") == "12:30 PM"
    assert format_time_12h("14:00") == "2:00 PM"
    assert format_time_12h("bogus") == "bogus"


def test_format_guide_message():
    assert format_guide_message({"now": "Scrubs", "next": "South Park"}) == (
        "Now Playing: **Scrubs**\nUp Next: **South Park**"
    )
    with_image = format_guide_message({"now": "A", "next": "B", "image": " https://x/y.png "})
    assert with_image.endswith("\nhttps://x/y.png")
    assert format_guide_message({"customMessage": "Meeting!"}) == "Meeting!"
    assert format_guide_message({"now": "A"}) == "Schedule information is currently unavailable."
    assert format_guide_message(None) == "Error: Schedule data missing."


def test_entries_at_exact_minute_only():
    schedule = ProgramSchedule(SAMPLE_SCHEDULE)
    assert schedule.entries_at(datetime(2024, 1, 3, 13, 0)) == [SAMPLE_SCHEDULE[3]["13:00"]]
    assert schedule.entries_at(datetime(2024, 1, 3, 13, 1)) == []


def test_now_and_next_skips_custom_messages():
    schedule = ProgramSchedule(SAMPLE_SCHEDULE)
    assert schedule.now_and_next(datetime(2024, 1, 3, 13, 45))["now"] == "South Park"
    assert schedule.now_and_next(datetime(2024, 1, 3, 8, 0)) is None
    assert schedule.current_show_title(WEDNESDAY) == "South Park"


def test_day_listing():
    schedule = ProgramSchedule(SAMPLE_SCHEDULE)
    listing = schedule.day_listing(WEDNESDAY)
    assert listing.startswith("**Schedule for Wednesday:**")
    assert "12:30 PM - Scrubs" in listing
    assert "MOVIE: Spider-Man" in listing
    assert "No schedule found" in schedule.day_listing(datetime(2024, 1, 6))


def test_week_listing_starts_monday():
    listing = ProgramSchedule(SAMPLE_SCHEDULE).week_listing()
    assert listing.index("**Monday**") < listing.index("**Wednesday**") < listing.index("**Sunday**")


def test_movie_listing():
    listing = ProgramSchedule(SAMPLE_SCHEDULE).movie_listing()
    assert listing == "Wednesday, 2:00 PM - Spider-Man"


def test_load_schedule_from_file(tmp_path):
    path = tmp_path / "schedule.json"
    path.write_text(json.dumps({"2": {"20:00": {"now": "Late Show", "next": "News"}}}))
    assert load_schedule(str(path)) == {2: {"20:00": {"now": "Late Show", "next": "News"}}}


def test_load_schedule_falls_back_to_sample(tmp_path):
    assert load_schedule(str(tmp_path / "missing.json")) is SAMPLE_SCHEDULE
    assert load_schedule("") is SAMPLE_SCHEDULE
