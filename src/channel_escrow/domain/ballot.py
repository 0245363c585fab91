"""Two-slot ballots and the one-shot finalize guard.

Every agreement between the two parties (fee payer, privacy, channel close)
uses the same shape: each participant casts exactly one vote, and the ballot
finalizes the first time both slots are filled. Finalization is claimed with
a compare-and-swap style ``FinalizeGuard`` *before* any awaited work begins,
so a second concurrent finalize attempt sees the guard taken and no-ops.
"""

from __future__ import annotations

from collections.abc import Hashable
from typing import Generic, TypeVar

from channel_escrow.domain.exceptions import AlreadyVotedError, ValidationError

ChoiceT = TypeVar("ChoiceT", bound=Hashable)


class FinalizeGuard:
    """One-shot claim flag.

    ``claim()`` returns True exactly once until ``release()`` rolls it back.
    There is no await between the check and the set, so within one event
    loop the claim is atomic.
    """

    __slots__ = ("_claimed",)

    def __init__(self) -> None:
        self._claimed = False

    @property
    def claimed(self) -> bool:
        return self._claimed

    def claim(self) -> bool:
        if self._claimed:
            return False
        self._claimed = True
        return True

    def release(self) -> None:
        self._claimed = False


class Ballot(Generic[ChoiceT]):
    """A two-slot, one-vote-per-actor agreement."""

    def __init__(self, name: str, voters: tuple[str, str] | None = None) -> None:
        self.name = name
        self._voters: tuple[str, str] | None = voters
        self._votes: dict[str, ChoiceT] = {}
        self.guard = FinalizeGuard()
        self.rounds = 1

    def bind(self, voters: tuple[str, str]) -> None:
        """Fix the two eligible voters (done once roles are known)."""
        self._voters = voters

    @property
    def voters(self) -> tuple[str, str] | None:
        return self._voters

    @property
    def votes(self) -> dict[str, ChoiceT]:
        return dict(self._votes)

    def cast(self, actor_id: str, choice: ChoiceT) -> None:
        """Record one vote.

        Raises:
            ValidationError: If the actor is not one of the two voters.
            AlreadyVotedError: If the actor has voted in this round.
        """
        if self._voters is None or actor_id not in self._voters:
            raise ValidationError(
                f"Only the two deal participants can vote on the {self.name} ballot.",
                code="NOT_A_VOTER",
            )
        if actor_id in self._votes:
            raise AlreadyVotedError(self.name, actor_id)
        self._votes[actor_id] = choice

    def vote_of(self, actor_id: str) -> ChoiceT | None:
        return self._votes.get(actor_id)

    @property
    def is_full(self) -> bool:
        return self._voters is not None and all(v in self._votes for v in self._voters)

    @property
    def unanimous(self) -> ChoiceT | None:
        """The shared choice if both votes are in and agree, else None."""
        if not self.is_full:
            return None
        first, second = (self._votes[v] for v in self._voters)
        return first if first == second else None

    def try_finalize(self) -> bool:
        """Claim finalization if both slots are filled and nobody claimed it yet."""
        return self.is_full and self.guard.claim()

    def reset(self) -> None:
        """Clear both slots, unlock the guard and start a new round."""
        self._votes.clear()
        self.guard.release()
        self.rounds += 1
