"""
Tests for the hash-chained activity log
"""

import pytest

from retail_ledger.audit import ActivityLog, ActivityType
from retail_ledger.storage import InMemoryStorage


@pytest.fixture
def activity_log(clock):
    return ActivityLog(InMemoryStorage(), clock)


class TestActivityLog:
    """Test chaining and tamper detection"""

    def test_entries_are_chained(self, activity_log):
        first = activity_log.log_activity("user-1", ActivityType.LOGIN, "Logged in")
        second = activity_log.log_activity("user-1", ActivityType.DEPOSIT, "Deposit",
                                           {"amount": "100.00"})

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert second.verify_hash()
        assert activity_log.count_events() == 2

    def test_integrity_of_untouched_chain(self, activity_log):
        for i in range(5):
            activity_log.log_activity("user-1", ActivityType.LOGIN, f"Login {i}")

        result = activity_log.verify_integrity()

        assert result['valid']
        assert result['total_events'] == 5

    def test_tampering_is_detected(self, activity_log):
        """Test editing a stored entry breaks its hash"""
        activity_log.log_activity("user-1", ActivityType.LOGIN, "Logged in")
        entry = activity_log.log_activity("user-1", ActivityType.WITHDRAWAL, "Withdrawal",
                                          {"amount": "50.00"})

        stored = activity_log.storage.load(activity_log.table_name, entry.id)
        stored['metadata']['amount'] = "5000.00"
        activity_log.storage.save(activity_log.table_name, entry.id, stored)

        result = activity_log.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == entry.id

    def test_deleted_entry_breaks_chain(self, activity_log):
        activity_log.log_activity("user-1", ActivityType.LOGIN, "one")
        middle = activity_log.log_activity("user-1", ActivityType.LOGIN, "two")
        activity_log.log_activity("user-1", ActivityType.LOGIN, "three")

        activity_log.storage.delete(activity_log.table_name, middle.id)

        assert activity_log.verify_integrity()['chain_breaks']

    def test_user_activity_newest_first(self, activity_log):
        activity_log.log_activity("user-1", ActivityType.LOGIN, "first")
        activity_log.log_activity("user-2", ActivityType.LOGIN, "other")
        activity_log.log_activity("user-1", ActivityType.LOGOUT, "second")

        entries = activity_log.get_user_activity("user-1")
        assert [e.description for e in entries] == ["second", "first"]
        assert len(activity_log.get_user_activity("user-1", limit=1)) == 1
