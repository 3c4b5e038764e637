"""
Unit tests for MessageStore: ordering, idempotent merge, provisional
reconciliation and moderation removal.
"""

import itertools

import pytest

from chatsync.message_store import MessageStore
from chatsync.models import SendStatus

from conftest import make_message

PROVISIONAL_ID = "local:1700000000000"


def ids(store, channel="general"):
    return [m.id for m in store.messages(channel)]


def provisional(body="hello", offset_ms=0, **kwargs):
    return make_message(
        PROVISIONAL_ID, sender_id="u-me", body=body, offset_ms=offset_ms,
        status=SendStatus.PENDING, **kwargs,
    )


# ---------------------------------------------------------------------------
# Ordering and merge
# ---------------------------------------------------------------------------


class TestMerge:
    def test_sorted_by_created_at(self):
        store = MessageStore()
        store.merge("general", [make_message("3", offset_ms=3000), make_message("1", offset_ms=1000)])
        store.merge("general", [make_message("2", offset_ms=2000)])
        assert ids(store) == ["1", "2", "3"]

    def test_ties_keep_arrival_order(self):
        store = MessageStore()
        store.merge("general", [make_message("b", sender_id="x"), make_message("a", sender_id="y")])
        assert ids(store) == ["b", "a"]

    def test_merge_is_idempotent(self):
        store = MessageStore()
        batch = [make_message(str(i), offset_ms=i * 5000) for i in range(5)]
        first = store.merge("general", batch)
        second = store.merge("general", batch)
        assert len(first) == 5
        assert second == []
        assert store.count("general") == 5

    def test_push_then_poll_same_id(self):
        store = MessageStore()
        store.merge("general", [make_message("42")])
        store.merge("general", [make_message("42")])
        assert ids(store) == ["42"]

    def test_heuristic_duplicate_between_canonical_ids(self):
        store = MessageStore()
        store.merge("general", [make_message("41", body="same")])
        added = store.merge("general", [make_message("42", body="same", offset_ms=1000)])
        assert added == []
        assert ids(store) == ["41"]

    def test_channel_mismatch_dropped(self):
        store = MessageStore()
        added = store.merge("general", [make_message("1", channel_id="other")])
        assert added == []
        assert store.channels() == []

    def test_edit_updates_body(self):
        store = MessageStore()
        store.merge("general", [make_message("7", body="tpyo")])
        store.merge("general", [make_message("7", body="typo", edited=True)])
        assert store.get("7").body == "typo"
        assert store.get("7").edited is True

    def test_redelivery_without_edit_flag_keeps_body(self):
        store = MessageStore()
        store.merge("general", [make_message("7", body="first")])
        store.merge("general", [make_message("7", body="second")])
        assert store.get("7").body == "first"

    def test_seed_goes_through_dedup(self):
        store = MessageStore()
        store.merge("general", [make_message("1")])
        assert store.seed("general", [make_message("1"), make_message("2", offset_ms=9000)]) == 1


# ---------------------------------------------------------------------------
# Provisional messages
# ---------------------------------------------------------------------------


class TestProvisional:
    def test_add_provisional_rejects_canonical_ids(self):
        with pytest.raises(ValueError):
            MessageStore().add_provisional(make_message("42"))

    def test_add_provisional_rejects_reused_id(self):
        store = MessageStore()
        store.add_provisional(provisional())
        with pytest.raises(ValueError):
            store.add_provisional(provisional(body="again"))

    def test_add_provisional_skips_heuristic(self):
        """A viewer may send the same text twice in quick succession."""
        store = MessageStore()
        store.add_provisional(provisional())
        store.add_provisional(make_message("local:1700000000001", sender_id="u-me", body="hello", offset_ms=1))
        assert store.count("general") == 2

    def test_delivery_reconciles_pending_send_over_older_lookalike(self):
        store = MessageStore()
        store.merge("general", [make_message("41", sender_id="u-me", body="hello", offset_ms=-1000)])
        store.add_provisional(provisional())

        store.merge("general", [make_message("42", sender_id="u-me", body="hello", offset_ms=500)])

        assert ids(store) == ["41", "42"]
        assert store.dedup.resolve(PROVISIONAL_ID) == "42"

    def test_replace_keeps_relative_position(self):
        store = MessageStore()
        store.merge("general", [make_message("m1", offset_ms=-1000), make_message("m3", offset_ms=5000)])
        store.add_provisional(provisional())
        assert ids(store) == ["m1", PROVISIONAL_ID, "m3"]

        canonical = make_message("42", sender_id="u-me", body="hello", offset_ms=200)
        result = store.replace(PROVISIONAL_ID, canonical)

        assert result.id == "42"
        assert result.status is SendStatus.SENT
        assert ids(store) == ["m1", "42", "m3"]
        assert store.get(PROVISIONAL_ID) is None

    def test_replace_is_idempotent(self):
        store = MessageStore()
        store.add_provisional(provisional())
        canonical = make_message("42", sender_id="u-me", body="hello")
        store.replace(PROVISIONAL_ID, canonical)
        store.replace(PROVISIONAL_ID, canonical)
        assert ids(store) == ["42"]

    def test_replace_retires_provisional_when_canonical_present(self):
        store = MessageStore()
        store.add_provisional(provisional())
        # Arrives under a body that defeats the heuristic, e.g. server-side trimming.
        store.merge("general", [make_message("42", sender_id="u-me", body="hello ")])
        store.replace(PROVISIONAL_ID, make_message("42", sender_id="u-me", body="hello "))
        assert ids(store) == ["42"]

    def test_push_delivery_reconciles_provisional(self):
        store = MessageStore()
        store.add_provisional(provisional())
        added = store.merge("general", [make_message("42", sender_id="u-me", body="hello", offset_ms=300)])
        assert added == []
        assert ids(store) == ["42"]
        assert store.dedup.resolve(PROVISIONAL_ID) == "42"

    @pytest.mark.parametrize("order", list(itertools.permutations(["push", "poll", "ack"])))
    def test_every_delivery_interleaving_yields_one_message(self, order):
        store = MessageStore()
        store.add_provisional(provisional())
        canonical = make_message("42", sender_id="u-me", body="hello", offset_ms=250)
        for event in order:
            if event == "ack":
                store.replace(PROVISIONAL_ID, canonical)
            else:
                store.merge("general", [canonical])
        assert ids(store) == ["42"]
        assert store.get("42").status is SendStatus.SENT

    def test_status_transitions(self):
        store = MessageStore()
        store.add_provisional(provisional())
        assert store.mark_failed(PROVISIONAL_ID).status is SendStatus.FAILED
        assert store.mark_pending(PROVISIONAL_ID).status is SendStatus.PENDING
        assert store.mark_failed("missing") is None


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestRemove:
    def test_removed_message_stays_removed(self):
        store = MessageStore()
        store.merge("general", [make_message("9")])
        assert store.remove("9") is True
        store.merge("general", [make_message("9")])
        assert ids(store) == []

    def test_remove_by_provisional_id_after_reconcile(self):
        store = MessageStore()
        store.add_provisional(provisional())
        store.replace(PROVISIONAL_ID, make_message("42", sender_id="u-me", body="hello"))
        assert store.remove(PROVISIONAL_ID) is True
        assert ids(store) == []

    def test_remove_before_ack_survives_late_reconcile(self):
        """A message removed while still provisional must not return with its ack."""
        store = MessageStore()
        store.add_provisional(provisional())
        assert store.remove(PROVISIONAL_ID) is True

        canonical = make_message("42", sender_id="u-me", body="hello", offset_ms=100)
        assert store.replace(PROVISIONAL_ID, canonical) is None
        assert ids(store) == []

        store.merge("general", [canonical])
        assert ids(store) == []

    def test_remove_unknown(self):
        assert MessageStore().remove("nope") is False
