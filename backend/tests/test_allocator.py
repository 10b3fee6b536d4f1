from coordinator.services.allocator import estimate_wait, next_position, repack
from shared.models.queue import QueueEntry, QueueStatus


def _entry(entry_id, position, wait=None):
    return QueueEntry(
        id=entry_id,
        user_id=f"user-{entry_id}",
        station_id=1,
        status=QueueStatus.WAITING,
        position=position,
        estimated_wait_minutes=wait,
    )


def test_head_waits_only_the_minimum():
    assert estimate_wait(1, 30) == 5
    assert estimate_wait(1, 30, minimum_wait=2) == 2


def test_wait_grows_one_session_per_party_ahead():
    assert estimate_wait(2, 30) == 35
    assert estimate_wait(4, 20) == 65


def test_next_position_on_empty_line():
    assert next_position([]) == 1


def test_next_position_ignores_entries_without_position():
    entries = [_entry(1, 1), _entry(2, 2), _entry(3, None)]
    assert next_position(entries) == 3


def test_repack_closes_gaps_in_order():
    entries = [_entry(5, 4, 95), _entry(1, 1, 5), _entry(3, 3, 65)]
    changes = repack(entries, 30)

    assert [(e.id, pos, wait) for e, pos, wait in changes] == [(3, 2, 35), (5, 3, 65)]


def test_repack_reports_nothing_for_a_dense_line():
    entries = [_entry(1, 1, 5), _entry(2, 2, 35)]
    assert repack(entries, 30) == []


def test_repack_recomputes_waits_when_average_changes():
    entries = [_entry(1, 1, 5), _entry(2, 2, 35)]
    changes = repack(entries, 45)
    assert [(e.id, pos, wait) for e, pos, wait in changes] == [(2, 2, 50)]
