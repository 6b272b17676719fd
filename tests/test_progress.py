import threading

from bizdir.core.progress import ProgressTracker


def test_late_subscriber_receives_current_state():
    tracker = ProgressTracker()
    tracker.start_batch(2, total_businesses=20)
    tracker.update_business(7, "Acme Visa", step="Saving")

    received = []
    tracker.subscribe(received.append)

    assert len(received) == 1
    assert received[0].current_business_index == 7
    assert received[0].current_business_name == "Acme Visa"
    assert received[0].batch_number == 2


def test_subscribers_see_every_update_in_order():
    tracker = ProgressTracker()
    first, second = [], []
    tracker.subscribe(first.append)
    tracker.subscribe(second.append)

    tracker.start_batch(1)
    tracker.update_business(1, "Acme")
    tracker.add_success(logo_added=True, photos_added=3)
    tracker.complete_batch()

    assert [state.status for state in first] == ["processing", "processing", "success", "completed"]
    assert first == second
    assert first[-1].logos_added == 1
    assert first[-1].photos_added == 3


def test_raising_subscriber_does_not_block_others(caplog):
    tracker = ProgressTracker()
    received = []

    def broken(_state):
        raise RuntimeError("subscriber exploded")

    tracker.subscribe(broken)
    tracker.subscribe(received.append)
    tracker.start_batch(1)

    assert len(received) == 1
    assert any("subscriber" in message for message in caplog.messages)


def test_unsubscribe_stops_delivery():
    tracker = ProgressTracker()
    received = []
    unsubscribe = tracker.subscribe(received.append)
    tracker.start_batch(1)
    unsubscribe()
    tracker.update_business(1, "Acme")

    assert len(received) == 1


def test_errors_accumulate_and_start_batch_resets():
    tracker = ProgressTracker()
    tracker.start_batch(1)
    tracker.add_error("Acme", "timeout")
    state = tracker.add_error("Beta", "invalid id")

    assert state.status == "failed"
    assert state.errors == ("Acme: timeout", "Beta: invalid id")

    fresh = tracker.start_batch(2)
    assert fresh.errors == ()
    assert fresh.batch_number == 2
    assert fresh.status == "processing"


def test_reset_clears_state():
    tracker = ProgressTracker()
    tracker.start_batch(1)
    tracker.reset()
    assert tracker.current is None


def test_state_dict_uses_api_names():
    tracker = ProgressTracker()
    payload = tracker.start_batch(3, total_businesses=4).to_dict()
    assert payload["batchNumber"] == 3
    assert payload["totalBusinesses"] == 4
    assert payload["errors"] == []


def test_set_total_and_mark():
    tracker = ProgressTracker()
    tracker.start_batch(1)
    tracker.set_total(12)
    state = tracker.mark("failed", step="Searching visa")

    assert state.total_businesses == 12
    assert state.status == "failed"
    assert state.current_step == "Searching visa"
    assert tracker.mark("processing").current_step == "Searching visa"


def test_subscribers_never_see_progress_go_backwards():
    tracker = ProgressTracker()
    tracker.start_batch(1, total_businesses=500)
    streams = [[] for _ in range(20)]

    def writer():
        for index in range(1, 501):
            tracker.update_business(index, f"Business {index}")

    thread = threading.Thread(target=writer)
    thread.start()
    for stream in streams:
        tracker.subscribe(lambda state, stream=stream: stream.append(state.current_business_index))
    thread.join()

    for stream in streams:
        assert stream
        assert stream == sorted(set(stream))
        assert stream[-1] == 500


def test_stale_state_is_dropped_for_a_subscriber():
    tracker = ProgressTracker()
    received = []
    tracker.subscribe(received.append)
    tracker.start_batch(1)
    older = tracker.current
    tracker.update_business(2, "Beta")

    subscription = tracker._subscribers[0]
    subscription.deliver(1, older)

    assert [state.current_business_index for state in received] == [0, 2]
