from dataclasses import dataclass
from typing import Callable, Optional, Union

from errors import InvalidRewardRequest
from models import RewardRecord


@dataclass(frozen=True)
class Admitted:
    key: str


@dataclass(frozen=True)
class Replay:
    record: RewardRecord


def normalize_key(key) -> str:
    if not isinstance(key, str) or not key.strip():
        raise InvalidRewardRequest("idempotency_key must be a non-empty string")
    return key.strip()


def admit_or_replay(
    key: str,
    lookup: Callable[[str], Optional[RewardRecord]],
) -> Union[Admitted, Replay]:
    """
    look up a reward by idempotency key.
      - found     -> Replay(existing record), caller must not do anything else
      - not found -> Admitted, caller may go on and create the reward

    this check alone is racy; the storage insert is still guarded by the
    unique constraint on the key, and a conflict there is turned back into
    a Replay by the engine.
    storage errors from `lookup` propagate unchanged.
    """
    key = normalize_key(key)
    existing = lookup(key)
    if existing is not None:
        return Replay(existing)
    return Admitted(key)
