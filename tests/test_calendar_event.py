import base64
from datetime import datetime, timezone

from crm_sync.services.calendar_event import (
    BusinessReview, CalendarEvent, CalendarEventDraft, EmailMessage, extract_gmail_body, split_address
)


def b64url(text):
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def test_timed_google_event_is_normalized():
    event = CalendarEvent.from_google({
        "id": "abc",
        "summary": "MOT - Alice",
        "start": {"dateTime": "2026-03-02T10:00:00+01:00"},
        "end": {"dateTime": "2026-03-02T12:00:00+01:00"},
        "updated": "2026-03-01T08:00:00.000Z",
        "htmlLink": "https://calendar.example.com/abc",
        "extendedProperties": {"private": {"crmJobId": "job-1"}},
    }, "primary")

    assert event.provider_id == "abc"
    assert event.start_time == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    assert event.all_day is False
    assert event.crm_job_id == "job-1"
    assert event.to_response()["htmlLink"] == "https://calendar.example.com/abc"


def test_all_day_google_event():
    event = CalendarEvent.from_google({
        "id": "holiday",
        "start": {"date": "2026-03-02"},
        "end": {"date": "2026-03-03"},
    })

    assert event.all_day is True
    assert event.title == "(No title)"
    assert event.end_time == datetime(2026, 3, 3, tzinfo=timezone.utc)


def test_draft_carries_job_marker_and_reminders():
    draft = CalendarEventDraft(
        summary="MOT - Alice",
        start=datetime(2026, 3, 2, 9, tzinfo=timezone.utc),
        end=datetime(2026, 3, 2, 11, tzinfo=timezone.utc),
        job_id="job-1"
    )

    body = draft.to_google()
    assert body["extendedProperties"]["private"]["crmJobId"] == "job-1"
    assert body["start"]["timeZone"] == "Europe/London"
    assert body["reminders"]["useDefault"] is False
    assert "reminders" not in draft.to_google(include_reminders=False)


def test_gmail_message_is_normalized():
    message = EmailMessage.from_gmail({
        "id": "m1",
        "threadId": "t1",
        "labelIds": ["INBOX", "UNREAD"],
        "internalDate": "1767258000000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": "Alice Smith <alice@example.com>"},
                {"name": "To", "value": "shop@example.com, Bob <bob@example.com>"},
                {"name": "Subject", "value": "Booking"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": b64url("Hello there")}},
                {"mimeType": "text/html", "body": {"data": b64url("<p>Hello there</p>")}},
            ],
        },
    })

    assert message.from_name == "Alice Smith"
    assert message.from_email == "alice@example.com"
    assert message.to_emails == ["shop@example.com", "bob@example.com"]
    assert message.body_text == "Hello there"
    assert message.body_html == "<p>Hello there</p>"
    assert message.is_read is False
    assert message.counterpart_email == "alice@example.com"


def test_outlook_sent_message_counterpart_is_recipient():
    message = EmailMessage.from_outlook({
        "id": "o1",
        "conversationId": "c1",
        "from": {"emailAddress": {"address": "Shop@example.com", "name": "Shop"}},
        "toRecipients": [{"emailAddress": {"address": "alice@example.com"}}],
        "body": {"contentType": "html", "content": "<p>Hi</p>"},
        "sentDateTime": "2026-03-01T10:00:00Z",
        "isRead": True,
    }, mailbox="shop@example.com")

    assert message.is_sent is True
    assert message.counterpart_email == "alice@example.com"
    assert message.body_html == "<p>Hi</p>"
    assert message.timestamp == datetime(2026, 3, 1, 10, tzinfo=timezone.utc)


def test_nested_gmail_body_is_found():
    text, html = extract_gmail_body({
        "mimeType": "multipart/mixed",
        "parts": [{
            "mimeType": "multipart/alternative",
            "parts": [{"mimeType": "text/plain", "body": {"data": b64url("Nested")}}],
        }],
    })

    assert (text, html) == ("Nested", "")


def test_split_address_without_name():
    assert split_address("alice@example.com") == (None, "alice@example.com")
    assert split_address(None) == (None, None)


def test_business_review_star_rating():
    review = BusinessReview.from_gmb({
        "reviewId": "r1",
        "starRating": "THREE",
        "reviewReply": {"comment": "Thanks", "updateTime": "2026-02-01T00:00:00Z"},
    })

    assert review.rating == 3
    assert review.reply_text == "Thanks"
    assert BusinessReview.from_gmb({"reviewId": "r2", "starRating": "STAR_RATING_UNSPECIFIED"}).rating == 0
