"""
Unit tests for DedupEngine: id matching, provisional links and the
same-sender/same-body heuristic window.
"""

from chatsync.dedup import DedupEngine

from conftest import make_message


class TestIdMatch:
    def test_same_id(self):
        engine = DedupEngine()
        stored = make_message("42")
        assert engine.find_match([stored], make_message("42", body="different")) is stored

    def test_linked_provisional_matches_canonical(self):
        engine = DedupEngine()
        provisional = make_message("local:1700000000000", sender_id="u-me", body="a")
        engine.link(provisional.id, "42")
        assert engine.resolve(provisional.id) == "42"
        assert engine.find_match([provisional], make_message("42", offset_ms=60_000)) is provisional

    def test_id_match_beats_earlier_heuristic_match(self):
        engine = DedupEngine()
        lookalike = make_message("41", body="same")
        exact = make_message("42", body="other", offset_ms=10_000)
        candidate = make_message("42", body="same", offset_ms=500)
        assert engine.find_match([lookalike, exact], candidate) is exact


class TestHeuristic:
    def test_within_window(self):
        engine = DedupEngine(window_ms=3000)
        a = make_message("local:1", sender_id="u-me", body="hi")
        b = make_message("42", sender_id="u-me", body="hi", offset_ms=2999)
        assert engine.is_duplicate([a], b)

    def test_window_is_exclusive(self):
        engine = DedupEngine(window_ms=3000)
        a = make_message("1", body="hi")
        b = make_message("2", body="hi", offset_ms=3000)
        assert not engine.is_duplicate([a], b)

    def test_different_sender_or_channel_or_body(self):
        engine = DedupEngine()
        base = make_message("1", body="hi")
        assert not engine.is_duplicate([base], make_message("2", body="hi", sender_id="someone"))
        assert not engine.is_duplicate([base], make_message("2", body="hi", channel_id="other"))
        assert not engine.is_duplicate([base], make_message("2", body="hi!"))

    def test_empty_history(self):
        assert DedupEngine().find_match([], make_message("1")) is None

    def test_canonical_prefers_provisional_lookalike(self):
        engine = DedupEngine()
        older = make_message("41", sender_id="u-me", body="ok")
        pending = make_message("local:1700000001000", sender_id="u-me", body="ok", offset_ms=1000)
        delivery = make_message("42", sender_id="u-me", body="ok", offset_ms=1500)
        assert engine.find_match([older, pending], delivery) is pending

    def test_provisional_candidate_takes_first_lookalike(self):
        engine = DedupEngine()
        older = make_message("41", sender_id="u-me", body="ok")
        pending = make_message("local:1700000001000", sender_id="u-me", body="ok", offset_ms=1000)
        candidate = make_message("local:1700000001500", sender_id="u-me", body="ok", offset_ms=1500)
        assert engine.find_match([older, pending], candidate) is older
