"""
Time-boxed yes/no voting among distinct participants.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple

from config import SKIP_BYPASS_PARTICIPANTS, VOTE_TICK_SECONDS
from errors import VoteInProgressError
from models import VoteChoice, VoteKind, VoteOutcome
from utils import maybe_await

logger = logging.getLogger(__name__)

ResolvedCallback = Callable[[VoteOutcome], Any]
TickCallback = Callable[["VoteSession", float], Any]


def skip_vote_bypassed(participants: int) -> bool:
    """
    Skip votes are waived when exactly two people are in the venue.

    Exact equality, not a threshold: with three or more listeners a vote
    is held again.
    """
    return participants == SKIP_BYPASS_PARTICIPANTS


class VoteSession:
    """One vote. Created by VoteManager.start_vote and discarded once resolved."""

    def __init__(self, kind: VoteKind, duration: float, context: Hashable = None):
        self.kind = kind
        self.context = context
        self.duration = duration
        self.started_at = time.monotonic()
        self.deadline = self.started_at + duration
        self.voters: Set[Hashable] = set()
        self.yes_count = 0
        self.no_count = 0
        self.outcome: Optional[VoteOutcome] = None
        self._done = asyncio.get_running_loop().create_future()

    @property
    def key(self) -> Tuple[VoteKind, Hashable]:
        return self.kind, self.context

    @property
    def resolved(self) -> bool:
        return self.outcome is not None

    @property
    def ballots_cast(self) -> int:
        return len(self.voters)

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def record(self, voter_id: Hashable, choice: VoteChoice) -> bool:
        if self.resolved or voter_id in self.voters:
            return False
        self.voters.add(voter_id)
        if choice is VoteChoice.YES:
            self.yes_count += 1
        else:
            self.no_count += 1
        return True

    def resolve(self, reason: str, passed: Optional[bool] = None) -> VoteOutcome:
        if self.outcome is not None:
            return self.outcome
        if passed is None:
            passed = self.yes_count > self.no_count
        self.outcome = VoteOutcome(
            passed=passed,
            yes_count=self.yes_count,
            no_count=self.no_count,
            reason=reason,
        )
        if not self._done.done():
            self._done.set_result(self.outcome)
        return self.outcome

    async def wait(self) -> VoteOutcome:
        return await asyncio.shield(self._done)


class VoteManager:
    """Runs vote sessions; at most one per (kind, context) at a time."""

    def __init__(self, tick_interval: float = VOTE_TICK_SECONDS):
        self.tick_interval = tick_interval
        self._sessions: Dict[Tuple[VoteKind, Hashable], VoteSession] = {}
        self._callbacks: Dict[int, ResolvedCallback] = {}
        self._timers: Dict[int, List[asyncio.Task]] = {}

    def start_vote(
        self,
        kind: VoteKind,
        duration: float,
        context: Hashable = None,
        on_resolved: Optional[ResolvedCallback] = None,
        on_tick: Optional[TickCallback] = None,
        tick_interval: Optional[float] = None,
    ) -> VoteSession:
        if (kind, context) in self._sessions:
            raise VoteInProgressError(f"A {kind.value} vote is already running")

        session = VoteSession(kind, max(0.0, duration), context)
        self._sessions[session.key] = session
        if on_resolved is not None:
            self._callbacks[id(session)] = on_resolved

        timers = [asyncio.create_task(self._deadline(session))]
        if on_tick is not None:
            interval = tick_interval or self.tick_interval
            timers.append(asyncio.create_task(self._ticker(session, on_tick, interval)))
        self._timers[id(session)] = timers

        logger.info("Vote started: kind=%s context=%s duration=%.1fs", kind.value, context, duration)
        return session

    def cast_ballot(self, session: VoteSession, voter_id: Hashable, choice: VoteChoice) -> bool:
        """Record a ballot. Repeat voters and late ballots are ignored."""
        accepted = session.record(voter_id, choice)
        if accepted:
            logger.debug(
                "Ballot %s from %s on %s (yes=%s no=%s)",
                choice.value, voter_id, session.kind.value, session.yes_count, session.no_count,
            )
        return accepted

    def find(self, kind: VoteKind, context: Hashable = None) -> Optional[VoteSession]:
        return self._sessions.get((kind, context))

    def active_sessions(self) -> List[VoteSession]:
        return list(self._sessions.values())

    async def end_vote(self, session: VoteSession, reason: str = "ended", passed: Optional[bool] = None) -> VoteOutcome:
        """Resolve a session before its deadline."""
        return await self._finish(session, reason, passed)

    async def cancel_all(self) -> None:
        for session in list(self._sessions.values()):
            await self._finish(session, "cancelled", passed=False)

    async def _deadline(self, session: VoteSession) -> None:
        await asyncio.sleep(session.duration)
        await self._finish(session, "deadline")

    async def _ticker(self, session: VoteSession, on_tick: TickCallback, interval: float) -> None:
        while not session.resolved:
            await asyncio.sleep(interval)
            if session.resolved:
                break
            try:
                await maybe_await(on_tick(session, session.remaining()))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("Vote countdown update failed", exc_info=True)

    async def _finish(self, session: VoteSession, reason: str, passed: Optional[bool] = None) -> VoteOutcome:
        if session.resolved:
            return session.outcome

        outcome = session.resolve(reason, passed)
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]

        current = asyncio.current_task()
        for task in self._timers.pop(id(session), []):
            if task is not current and not task.done():
                task.cancel()

        logger.info(
            "Vote resolved: kind=%s passed=%s yes=%s no=%s reason=%s",
            session.kind.value, outcome.passed, outcome.yes_count, outcome.no_count, reason,
        )

        callback = self._callbacks.pop(id(session), None)
        if callback is not None:
            try:
                await maybe_await(callback(outcome))
            except Exception:
                logger.exception("Vote resolution callback failed")
        return outcome
