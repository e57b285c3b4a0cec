from datetime import datetime
from schemas.checkpoints import IncrementalFetchCursor, InitialFetchCursor
from schemas.queue import FailQueueMessage, FetchFailurePayload


def test_initial_cursor_defaults_from_empty_settings():
    cursor = InitialFetchCursor.from_settings({})
    assert cursor == InitialFetchCursor(partition_index=0, resume_partition=None, resume_page=1)


def test_initial_cursor_round_trip_through_settings():
    cursor = InitialFetchCursor(partition_index=20).resume_at("1168010100", 3)

    values = cursor.to_settings()

    assert values == {
        "next_partition_index": "20",
        "initial_fetch_last_partition": "1168010100",
        "initial_fetch_last_page": "3",
    }
    assert InitialFetchCursor.from_settings(values) == cursor


def test_cleared_cursor_serializes_default_page_and_empty_partition():
    values = InitialFetchCursor(partition_index=5).resume_at("P", 4).cleared().to_settings()
    assert values["initial_fetch_last_partition"] == ""
    assert values["initial_fetch_last_page"] == "1"


def test_unparseable_values_fall_back_to_defaults():
    cursor = InitialFetchCursor.from_settings({
        "next_partition_index": "abc",
        "initial_fetch_last_page": "0",
    })
    assert cursor.partition_index == 0
    assert cursor.resume_page == 1

    incremental = IncrementalFetchCursor.from_settings({"last_mod_date": "yesterday"})
    assert incremental.last_modified is None


def test_incremental_cursor_round_trip():
    cursor = IncrementalFetchCursor(last_modified=datetime(2024, 5, 1, 12, 0), resume_page=2)
    assert IncrementalFetchCursor.from_settings(cursor.to_settings()) == cursor


def test_payload_unit_detection():
    assert FetchFailurePayload(type="initial_fetch", partition="P", page=2).has_unit
    assert not FetchFailurePayload(type="initial_fetch").has_unit
    assert FetchFailurePayload(type="incremental_fetch", last_modified="2024-05-01T00:00:00").has_unit


def test_next_attempt_increments_retry_count():
    message = FailQueueMessage(payload=FetchFailurePayload(type="initial_fetch", partition="P"), error="first")

    retried = message.next_attempt("second")

    assert retried.retry_count == 1
    assert retried.error == "second"
    assert retried.payload == message.payload
