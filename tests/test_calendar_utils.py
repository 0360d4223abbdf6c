import unittest
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

from icalendar import Calendar

from raceplanner.calendar_utils import (
    CalendarEvent,
    build_calendar_description,
    build_google_calendar_url,
    build_ics_string,
    build_outlook_calendar_url,
    ceil_to_15_minutes,
    escape_text,
    fold_line,
    format_duration,
    format_ics_date,
)


def _event(**overrides) -> CalendarEvent:
    values = {
        "uid": "ir_123_456_w0_s0",
        "title": "Daytona 24",
        "location": "Daytona International Speedway - Road Course",
        "start_time": datetime(2026, 1, 24, 18, 40, tzinfo=timezone.utc),
        "end_time": datetime(2026, 1, 25, 18, 54, tzinfo=timezone.utc),
        "description": "Line one\nLine two",
    }
    values.update(overrides)
    return CalendarEvent(**values)


class CeilTests(unittest.TestCase):
    def test_rounds_up_to_next_quarter(self) -> None:
        value = datetime(2026, 1, 1, 1, 54, tzinfo=timezone.utc)
        self.assertEqual(ceil_to_15_minutes(value), datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc))

    def test_boundary_is_unchanged(self) -> None:
        value = datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc)
        self.assertEqual(ceil_to_15_minutes(value), value)

    def test_rolls_over_midnight(self) -> None:
        value = datetime(2026, 1, 1, 23, 54, tzinfo=timezone.utc)
        self.assertEqual(ceil_to_15_minutes(value), datetime(2026, 1, 2, 0, 0, tzinfo=timezone.utc))

    def test_seconds_past_boundary_round_up(self) -> None:
        value = datetime(2026, 1, 1, 2, 0, 1, tzinfo=timezone.utc)
        self.assertEqual(ceil_to_15_minutes(value), datetime(2026, 1, 1, 2, 15, tzinfo=timezone.utc))


class FoldingTests(unittest.TestCase):
    def test_line_of_75_characters_is_unchanged(self) -> None:
        line = "X" * 75
        self.assertEqual(fold_line(line), line)

    def test_long_summary_folds_after_75_characters(self) -> None:
        line = "SUMMARY:" + "a" * 80
        self.assertEqual(len(line), 88)
        folded = fold_line(line)
        first, rest = folded.split("\r\n", 1)
        self.assertEqual(len(first), 75)
        self.assertTrue(rest.startswith(" "))
        self.assertEqual(first + rest[1:], line)

    def test_no_physical_line_exceeds_75(self) -> None:
        folded = fold_line("DESCRIPTION:" + "b" * 500)
        for physical in folded.split("\r\n"):
            self.assertLessEqual(len(physical), 75)


class IcsTests(unittest.TestCase):
    def test_escape_text(self) -> None:
        self.assertEqual(escape_text("a\\b;c,d\ne"), "a\\\\b\\;c\\,d\\ne")

    def test_format_ics_date(self) -> None:
        self.assertEqual(format_ics_date(datetime(2026, 1, 24, 18, 40, 5, tzinfo=timezone.utc)), "20260124T184005Z")

    def test_document_uses_crlf_and_ceils_end(self) -> None:
        ics = build_ics_string(_event(), now=datetime(2026, 1, 1, tzinfo=timezone.utc))

        self.assertTrue(ics.endswith("END:VCALENDAR\r\n"))
        self.assertNotIn("\n", ics.replace("\r\n", ""))
        self.assertIn("UID:ir_123_456_w0_s0@race-team-planner\r\n", ics)
        self.assertIn("DTSTART:20260124T184000Z\r\n", ics)
        self.assertIn("DTEND:20260125T190000Z\r\n", ics)
        self.assertIn("DTSTAMP:20260101T000000Z\r\n", ics)
        self.assertIn("DESCRIPTION:Line one\\nLine two\r\n", ics)

    def test_document_parses_as_icalendar(self) -> None:
        long_title = "iRacing Nürburgring 24 Hours, presented by a very long sponsor name; Week 1"
        ics = build_ics_string(_event(title=long_title))

        calendar = Calendar.from_ical(ics)
        events = list(calendar.walk("VEVENT"))
        self.assertEqual(len(events), 1)
        self.assertEqual(str(events[0]["SUMMARY"]), long_title)
        self.assertEqual(events[0].decoded("DTEND"), datetime(2026, 1, 25, 19, 0, tzinfo=timezone.utc))
        self.assertEqual(str(calendar["PRODID"]), "-//Race Team Planner//EN")


class DeepLinkTests(unittest.TestCase):
    def test_google_url(self) -> None:
        url = urlparse(build_google_calendar_url(_event()))
        params = parse_qs(url.query)

        self.assertEqual(f"{url.scheme}://{url.netloc}{url.path}", "https://calendar.google.com/calendar/render")
        self.assertEqual(params["action"], ["TEMPLATE"])
        self.assertEqual(params["text"], ["Daytona 24"])
        self.assertEqual(params["dates"], ["20260124T184000Z/20260125T190000Z"])
        self.assertEqual(params["details"], ["Line one\nLine two"])

    def test_outlook_url(self) -> None:
        params = parse_qs(urlparse(build_outlook_calendar_url(_event())).query)

        self.assertEqual(params["subject"], ["Daytona 24"])
        self.assertEqual(params["startdt"], ["2026-01-24T18:40:00.000Z"])
        self.assertEqual(params["enddt"], ["2026-01-25T19:00:00.000Z"])
        self.assertEqual(params["path"], ["/calendar/action/compose"])
        self.assertEqual(params["rru"], ["addevent"])


class DescriptionTests(unittest.TestCase):
    def test_format_duration(self) -> None:
        self.assertEqual(format_duration(134), "2h 14m")
        self.assertEqual(format_duration(120), "2h")
        self.assertEqual(format_duration(45), "45m")

    def test_full_description(self) -> None:
        description = build_calendar_description(
            event_name="Daytona 24",
            track="Daytona International Speedway",
            track_config="Road Course",
            start_time=datetime(2026, 1, 10, 14, 0, tzinfo=timezone.utc),
            duration_mins=1440,
            temp_value=72.0,
            temp_units=0,
            rel_humidity=55.0,
            car_classes=[{"name": "GT3 Class", "short_name": "GT3"}, {"name": "LMP2 Class", "short_name": None}],
            app_url="https://planner.example.com/events/1",
            discord_url="https://discord.com/channels/1/2",
        )

        self.assertEqual(
            description.split("\n"),
            [
                "Daytona 24",
                "Daytona International Speedway - Road Course",
                "Sat 1/10, 2:00 PM UTC",
                "Duration: 24h | Temp: 72°F | Humidity: 55%",
                "Classes: GT3, LMP2 Class",
                "",
                "Event page: https://planner.example.com/events/1",
                "Discord: https://discord.com/channels/1/2",
            ],
        )

    def test_minimal_description_skips_optional_lines(self) -> None:
        description = build_calendar_description(
            event_name="Sprint",
            track="Spa",
            start_time=datetime(2026, 1, 10, 14, 0, tzinfo=timezone.utc),
            app_url="https://planner.example.com/events/2",
            timezone_name="America/Los_Angeles",
        )

        self.assertEqual(
            description.split("\n"),
            ["Sprint", "Spa", "Sat 1/10, 6:00 AM PST", "", "Event page: https://planner.example.com/events/2"],
        )


if __name__ == "__main__":
    unittest.main()
