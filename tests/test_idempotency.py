import pytest

from errors import InvalidRewardRequest
from idempotency import Admitted, Replay, admit_or_replay, normalize_key


def test_unknown_key_is_admitted():
    decision = admit_or_replay("grant-1", lambda key: None)
    assert decision == Admitted("grant-1")


def test_known_key_replays_stored_record():
    stored = object()
    decision = admit_or_replay("grant-1", {"grant-1": stored}.get)
    assert isinstance(decision, Replay)
    assert decision.record is stored


def test_key_is_trimmed_before_lookup():
    seen = []
    admit_or_replay("  grant-1 ", lambda key: seen.append(key))
    assert seen == ["grant-1"]


@pytest.mark.parametrize("key", ["", "   ", None, 123])
def test_blank_or_non_string_keys_are_rejected(key):
    with pytest.raises(InvalidRewardRequest):
        normalize_key(key)


def test_lookup_errors_propagate():
    def broken(key):
        raise RuntimeError("storage down")

    with pytest.raises(RuntimeError):
        admit_or_replay("grant-1", broken)
